"""ProcessTask: fluent builder and runner for one external command.

Example:
    ```python
    status = ProcessTask("ls").args(["-la"]).run()

    status, out, err = (
        ProcessTask("cat")
        .args(["data.txt"])
        .pipe(ProcessTask("sort"))
        .run_for_output()
    )
    ```

A task runs at most once. Once piped into, a task can only be started
through the source of its chain.
"""

from __future__ import annotations

import concurrent.futures
import os
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import BinaryIO, Optional, Union

from .errors import TaskMisuseError, exit_msg, exit_on_error
from .runtime.consumers import OutputCollector, print_to_parent, write_to_handle
from .runtime.pipeline import Pipeline
from .runtime.process_runner import TaskSpec, TerminationHandler
from .runtime.pump import Consumer
from .supervisor import Supervisor, get_supervisor

__all__ = ["ProcessTask"]


class ProcessTask:
    """A single external command, optionally the source of a pipeline.

    Attributes:
        command: Command name, resolved through $PATH
        cwd: Working directory (current directory at creation by default)
    """

    def __init__(
        self,
        command: str,
        cwd: Optional[Union[str, Path]] = None,
        *,
        supervisor: Optional[Supervisor] = None,
    ) -> None:
        self.command = command
        self.cwd = Path(cwd) if cwd is not None else Path(os.getcwd())
        self._supervisor = supervisor
        self._args: tuple[str, ...] = ()
        self._env: dict[str, str] = {}
        self._exit_on_failure = False
        self._stdin_bytes: Optional[bytes] = None
        self._consumers: list[Consumer] = []
        self._destination: Optional[ProcessTask] = None
        self._is_pipe_destination = False
        self._did_run = False

    def __repr__(self) -> str:
        return f"ProcessTask({self.pipeline().render()!r}, cwd={str(self.cwd)!r})"

    # =========================================================================
    # Builder
    # =========================================================================

    def args(self, args: Iterable[str]) -> ProcessTask:
        """Set the arguments (replaces previous ones)."""
        self._args = tuple(str(arg) for arg in args)
        return self

    def env(self, env: Mapping[str, str]) -> ProcessTask:
        """Set extra environment variables (replaces previous ones)."""
        self._env = {str(key): str(value) for key, value in env.items()}
        return self

    def exit_on_failure(self, enabled: bool = True) -> ProcessTask:
        """Make a nonzero exit status fatal for the whole script."""
        self._exit_on_failure = enabled
        return self

    def input(self, data: Union[bytes, str]) -> ProcessTask:
        """Feed ``data`` to stdin (ignored when the task is a pipe destination)."""
        self._stdin_bytes = data.encode("utf-8") if isinstance(data, str) else data
        return self

    def output(self, handler: Consumer) -> ProcessTask:
        """Add a consumer called as ``handler(chunk, is_stdout)``.

        Every chunk of both streams is delivered as soon as it is read; each
        stream ends with one empty chunk. For a pipe source the handler sees
        the output of the last stage of the chain.
        """
        self._consumers.append(handler)
        return self

    def output_to_handle(self, handle: BinaryIO) -> ProcessTask:
        """Write both streams to ``handle`` and close it when both ended."""
        return self.output(write_to_handle(handle))

    def pipe(self, to: ProcessTask) -> ProcessTask:
        """Pipe all output of this task (or its chain) into ``to``.

        Output captured from the returned task is the output of the last
        stage. Calling ``pipe`` again appends to the end of the chain.
        """
        with exit_on_error():
            if to is self or to in self.chain() or self in to.chain():
                raise TaskMisuseError(
                    f"'{to.command}' cannot be piped into its own chain"
                )
            if to._is_pipe_destination:
                raise TaskMisuseError(
                    f"'{to.command}' is already the target of a pipe"
                )
            self.chain()[-1]._destination = to
            to._is_pipe_destination = True
        return self

    # =========================================================================
    # Introspection
    # =========================================================================

    def spec(self) -> TaskSpec:
        """Immutable launch description of this task alone."""
        return TaskSpec(
            command=self.command,
            cwd=self.cwd,
            args=self._args,
            env=dict(self._env),
            exit_on_failure=self._exit_on_failure,
            stdin_bytes=self._stdin_bytes,
        )

    def chain(self) -> list[ProcessTask]:
        """This task followed by every downstream task."""
        tasks: list[ProcessTask] = []
        task: Optional[ProcessTask] = self
        while task is not None:
            tasks.append(task)
            task = task._destination
        return tasks

    def pipeline(self) -> Pipeline:
        return Pipeline(tuple(task.spec() for task in self.chain()))

    @property
    def did_run(self) -> bool:
        return self._did_run

    # =========================================================================
    # Running
    # =========================================================================

    def run(self, print_output: bool = True) -> int:
        """Run synchronously.

        Args:
            print_output: Forward output to this process's stdout/stderr

        Returns:
            Exit status of this (the source) task
        """
        extra: list[Consumer] = [print_to_parent] if print_output else []
        with exit_on_error():
            pipeline, consumers = self._prepare_launch(extra)
            return self._get_supervisor().run(pipeline, consumers)

    def run_for_output(self) -> tuple[int, str, str]:
        """Run synchronously, capturing output.

        Returns:
            (status, stdout, stderr), decoded as UTF-8
        """
        collector = OutputCollector()
        with exit_on_error():
            pipeline, consumers = self._prepare_launch([collector])
            status = self._get_supervisor().run(pipeline, consumers)
            stdout, stderr = collector.decode(self.command)
        return status, stdout, stderr

    def run_async(
        self,
        print_output: bool = False,
        completion: Optional[TerminationHandler] = None,
    ) -> concurrent.futures.Future[int]:
        """Run in the background.

        Args:
            print_output: Forward output to this process's stdout/stderr
            completion: Called with the exit status on the orchestration
                thread once the task and its handlers finished

        Returns:
            Future resolving to the exit status
        """
        extra: list[Consumer] = [print_to_parent] if print_output else []
        with exit_on_error():
            pipeline, consumers = self._prepare_launch(extra)
            return self._get_supervisor().run_async(
                pipeline, consumers, completion=completion
            )

    def _prepare_launch(
        self, extra: list[Consumer]
    ) -> tuple[Pipeline, list[Consumer]]:
        if self._did_run:
            exit_msg(f"'{self.command}' attempted to run multiple times!")
        if self._is_pipe_destination:
            exit_msg(
                f"'{self.command}' attempted to run when the target of a pipe! "
                f"Call `run` on the source instead"
            )

        chain = self.chain()
        for task in chain:
            if task._did_run:
                exit_msg(f"'{task.command}' attempted to run multiple times!")
        for task in chain:
            task._did_run = True

        # Last stage's consumers first, then those of the upstream stages
        consumers: list[Consumer] = []
        for task in reversed(chain):
            consumers.extend(task._consumers)
        consumers.extend(extra)
        return self.pipeline(), consumers

    def _get_supervisor(self) -> Supervisor:
        return self._supervisor or get_supervisor()
