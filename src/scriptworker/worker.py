"""ScriptWorker: a path that tasks are launched relative to."""

from __future__ import annotations

import concurrent.futures
import os
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Optional, Union

from .errors import exit_msg
from .runtime.process_runner import TerminationHandler
from .runtime.pump import Consumer
from .supervisor import Supervisor
from .task import ProcessTask

__all__ = ["ScriptWorker"]


class ScriptWorker:
    """A file or directory path with a directory stack and task launchers.

    Tasks created by the worker run in ``path`` when it is a directory,
    otherwise in its parent directory.

    Example:
        ```python
        worker = ScriptWorker("/tmp/project")
        worker.push("build")
        status = worker.launch("make", ["all"], exit_on_failure=True)
        worker.pop()
        ```
    """

    def __init__(
        self,
        path: Optional[Union[str, Path]] = None,
        *,
        supervisor: Optional[Supervisor] = None,
    ) -> None:
        self.path = Path(path) if path is not None else Path(os.getcwd())
        self._supervisor = supervisor
        self._stack: list[Path] = []

    def __repr__(self) -> str:
        return f"ScriptWorker({str(self.path)!r})"

    def directory_exists(self, item: Optional[Union[str, Path]] = None) -> bool:
        """Whether ``item`` (relative to ``path``), or ``path`` itself, is a directory."""
        target = self.path if item is None else self.path / item
        return target.is_dir()

    # Directory stack

    def push(self, path: Union[str, Path]) -> None:
        """Make ``path`` (absolute, or relative to the current one) current."""
        self._stack.append(self.path)
        self.path = Path(os.path.normpath(self.path / path))

    def pop(self) -> None:
        """Return to the path active before the last ``push``."""
        if not self._stack:
            exit_msg("Tried to pop directory with an empty directory stack!")
        self.path = self._stack.pop()

    # Tasks

    def task(self, command: str) -> ProcessTask:
        """Create a task running in ``path`` (or its parent if not a directory)."""
        cwd = self.path if self.directory_exists() else self.path.parent
        return ProcessTask(command, cwd, supervisor=self._supervisor)

    def _configured(
        self,
        command: str,
        arguments: Iterable[str],
        environment: Optional[Mapping[str, str]],
    ) -> ProcessTask:
        return self.task(command).args(arguments).env(environment or {})

    def launch(
        self,
        command: str,
        arguments: Iterable[str] = (),
        environment: Optional[Mapping[str, str]] = None,
        exit_on_failure: bool = False,
        data_handler: Optional[Consumer] = None,
    ) -> int:
        """Run ``command`` and return its status.

        Output goes to ``data_handler`` when given, otherwise to this
        process's stdout/stderr.
        """
        task = self._configured(command, arguments, environment)
        task.exit_on_failure(exit_on_failure)
        if data_handler is not None:
            return task.output(data_handler).run(print_output=False)
        return task.run()

    def launch_for_output(
        self,
        command: str,
        arguments: Iterable[str] = (),
        environment: Optional[Mapping[str, str]] = None,
        exit_on_failure: bool = False,
    ) -> tuple[int, str, str]:
        """Run ``command`` and return (status, stdout, stderr)."""
        task = self._configured(command, arguments, environment)
        return task.exit_on_failure(exit_on_failure).run_for_output()

    def launch_background(
        self,
        command: str,
        arguments: Iterable[str] = (),
        environment: Optional[Mapping[str, str]] = None,
        data_handler: Optional[Consumer] = None,
        termination_handler: Optional[TerminationHandler] = None,
    ) -> concurrent.futures.Future[int]:
        """Start ``command`` without waiting for it."""
        task = self._configured(command, arguments, environment)
        if data_handler is not None:
            task.output(data_handler)
        return task.run_async(print_output=False, completion=termination_handler)
