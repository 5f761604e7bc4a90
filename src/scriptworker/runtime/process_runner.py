"""Process runner: launches one stage and supervises it until it exits.

scriptworker runtime module v0.1.0

This module provides:
- TaskSpec, the immutable description of one process invocation
- ProcessRunner, which spawns a TaskSpec with both output streams pumped
  to consumers
- RunningProcess, the handle of a launched process with its ordered chain
  of termination handlers

Key design points:
- Every command goes through ``env`` so $PATH lookup applies; explicit
  environment variables become ``KEY=VALUE`` arguments of ``env``
- POSIX: start_new_session=True, children live in their own session and
  get signals through the SignalForwarder
- Termination handlers run in registration order after the OS process
  exited: pump shutdowns, failure check, registry removal, then anything
  the caller added
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import shlex
import shutil
import signal
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from ..errors import ScriptWorkerError, TaskFailedError, TaskLaunchError
from ..registry import ChildRegistry
from .pump import Consumer, StreamPump
from .sidecar import WatchdogLauncher

__all__ = [
    "ProcessRunner",
    "RunningProcess",
    "TaskSpec",
    "TerminationHandler",
    "UNBUFFERED_TOKEN",
]

logger = logging.getLogger(__name__)

# Consumed by `env`, asks the child runtime not to buffer its output
UNBUFFERED_TOKEN = "PYTHONUNBUFFERED=1"

DEFAULT_DRAIN_TIMEOUT = 2.0

TerminationHandler = Callable[[int], Union[Awaitable[None], None]]


def _env_launcher() -> str:
    return shutil.which("env") or "/usr/bin/env"


@dataclass(frozen=True)
class TaskSpec:
    """Specification of one process invocation.

    Attributes:
        command: Command name, resolved through $PATH
        cwd: Working directory for the process
        args: Arguments following the command
        env: Extra environment variables (added to the inherited ones)
        exit_on_failure: Treat a nonzero exit status as fatal
        stdin_bytes: Optional bytes written to stdin (ignored for pipe
            destinations, whose stdin is the upstream output)
    """

    command: str
    cwd: Path
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    exit_on_failure: bool = False
    stdin_bytes: Optional[bytes] = None

    def env_tokens(self) -> list[str]:
        return [f"{key}={value}" for key, value in self.env.items()]

    def argv(self) -> list[str]:
        """Full argument vector, launcher first."""
        return [
            _env_launcher(),
            UNBUFFERED_TOKEN,
            *self.env_tokens(),
            self.command,
            *self.args,
        ]

    def render(self) -> str:
        """Human-readable command line."""
        return shlex.join([*self.env_tokens(), self.command, *self.args])


class RunningProcess:
    """Handle of a launched process.

    Attributes:
        spec: What was launched
        pid: OS process ID
        returncode: Exit status once the process exited (negative signal
            number if it was killed by a signal)
        pumps: Output pumps (stdout, stderr)
    """

    def __init__(self, spec: TaskSpec) -> None:
        self.spec = spec
        self.pid: Optional[int] = None
        self.returncode: Optional[int] = None
        self._process: Optional[asyncio.subprocess.Process] = None
        self._handlers: list[tuple[TerminationHandler, bool]] = []
        self._task: Optional[asyncio.Task[int]] = None
        self._stdin_task: Optional[asyncio.Task[None]] = None
        self.pumps: tuple[StreamPump, ...] = ()
        self._finished = False

    def __repr__(self) -> str:
        return (
            f"RunningProcess(command={self.spec.command}, "
            f"pid={self.pid}, returncode={self.returncode})"
        )

    @property
    def finished(self) -> bool:
        """True once every termination handler ran."""
        return self._finished

    def add_termination_handler(
        self,
        handler: TerminationHandler,
        *,
        always: bool = False,
    ) -> None:
        """Append a handler called with the exit status.

        Handlers run in registration order. Once a handler raised a
        ``ScriptWorkerError`` only handlers marked ``always`` still run.
        A handler added after the chain completed runs right away.
        """
        if self._finished:
            self._run_late(handler)
            return
        self._handlers.append((handler, always))

    async def wait(self) -> int:
        """Wait for the process and its termination handlers.

        Raises:
            ScriptWorkerError: Raised by a termination handler (failure check)
        """
        assert self._task is not None, "process not started"
        return await asyncio.shield(self._task)

    def send_signal(self, sig: int) -> None:
        if self._process is not None and self._process.returncode is None:
            try:
                self._process.send_signal(sig)
            except ProcessLookupError:
                pass

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)

    def _attach(self, process: asyncio.subprocess.Process) -> None:
        self._process = process
        self.pid = process.pid
        self._task = asyncio.create_task(
            self._supervise(), name=f"scriptworker-{self.spec.command}-{process.pid}"
        )

    async def _supervise(self) -> int:
        assert self._process is not None
        status = await self._process.wait()
        self.returncode = status
        logger.debug(f"Subprocess completed pid={self.pid} returncode={status}")

        error: Optional[ScriptWorkerError] = None
        index = 0
        # Handlers may be appended while the chain runs
        while index < len(self._handlers):
            handler, always = self._handlers[index]
            index += 1
            if error is not None and not always:
                continue
            try:
                result = handler(status)
                if inspect.isawaitable(result):
                    await result
            except ScriptWorkerError as e:
                if error is None:
                    error = e
            except Exception as e:
                logger.warning(
                    f"Error in termination handler of {self.spec.command}: {e!r}"
                )

        self._finished = True
        if error is not None:
            raise error
        return status

    def _run_late(self, handler: TerminationHandler) -> None:
        assert self.returncode is not None
        try:
            result = handler(self.returncode)
            if inspect.isawaitable(result):
                asyncio.ensure_future(result)
        except Exception as e:
            logger.warning(
                f"Error in termination handler of {self.spec.command}: {e!r}"
            )


@dataclass
class ProcessRunner:
    """Launches TaskSpecs with pumped output and liveness supervision.

    Example:
        runner = ProcessRunner(ChildRegistry())
        spec = TaskSpec(command="echo", cwd=Path("/tmp"), args=("hello",))

        running = await runner.start(spec, [handler])
        status = await running.wait()

    Attributes:
        registry: Registry receiving the PID of every launched child
        watchdog: Watchdog launcher (None = no watchdog)
        drain_timeout: Max wait for end-of-stream after exit
    """

    registry: ChildRegistry
    watchdog: Optional[WatchdogLauncher] = None
    drain_timeout: Optional[float] = DEFAULT_DRAIN_TIMEOUT

    async def start(
        self,
        spec: TaskSpec,
        consumers: Sequence[Consumer],
        *,
        stdin_fd: Optional[int] = None,
    ) -> RunningProcess:
        """Spawn ``spec`` and return its handle.

        Args:
            spec: Process specification
            consumers: Output consumers, called in order for every chunk
            stdin_fd: Read end of a pipe to use as stdin (pipe destinations);
                the runner takes ownership

        Raises:
            TaskLaunchError: If the process could not be spawned
        """
        running = RunningProcess(spec)
        out_read, out_write = os.pipe()
        err_read, err_write = os.pipe()
        pumps = [
            StreamPump(
                out_read, is_stdout=True, consumers=consumers,
                name=f"{spec.command}:stdout",
            ),
            StreamPump(
                err_read, is_stdout=False, consumers=consumers,
                name=f"{spec.command}:stderr",
            ),
        ]
        running.pumps = tuple(pumps)

        if stdin_fd is not None:
            stdin: int = stdin_fd
        elif spec.stdin_bytes is not None:
            stdin = asyncio.subprocess.PIPE
        else:
            stdin = asyncio.subprocess.DEVNULL

        try:
            for pump in pumps:
                await pump.start()
                running.add_termination_handler(
                    self._pump_shutdown(pump), always=True
                )
            if spec.exit_on_failure:
                running.add_termination_handler(_failure_check(spec.command))

            process = await asyncio.create_subprocess_exec(
                *spec.argv(),
                stdin=stdin,
                stdout=out_write,
                stderr=err_write,
                cwd=spec.cwd,
                start_new_session=True,
            )
        except OSError as e:
            for pump in pumps:
                pump.close()
            raise TaskLaunchError(
                f"Failed to launch {spec.command} in {spec.cwd}: {e}"
            ) from e
        finally:
            # The child holds its own copies
            os.close(out_write)
            os.close(err_write)
            if stdin_fd is not None:
                os.close(stdin_fd)

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.command} cwd={spec.cwd}"
        )

        try:
            self.registry.register(process.pid, spec.command)
        except ValueError as e:
            logger.warning(f"Registry out of sync: {e}")
        watchdog_process = (
            await self.watchdog.spawn(process.pid) if self.watchdog else None
        )
        running.add_termination_handler(
            self._deregister(process.pid, watchdog_process), always=True
        )
        running._attach(process)

        if spec.stdin_bytes is not None and process.stdin is not None:
            running._stdin_task = asyncio.create_task(
                _write_stdin(process.stdin, spec.stdin_bytes)
            )

        return running

    def _pump_shutdown(self, pump: StreamPump) -> TerminationHandler:
        async def handler(status: int) -> None:
            await pump.shutdown(self.drain_timeout)

        return handler

    def _deregister(
        self,
        pid: int,
        watchdog_process: Optional[asyncio.subprocess.Process],
    ) -> TerminationHandler:
        async def handler(status: int) -> None:
            self.registry.unregister(pid)
            if self.watchdog is not None:
                await self.watchdog.stop(watchdog_process)

        return handler


def _failure_check(command: str) -> TerminationHandler:
    def handler(status: int) -> None:
        if status != 0:
            raise TaskFailedError(command, status)

    return handler


async def _write_stdin(writer: asyncio.StreamWriter, data: bytes) -> None:
    try:
        writer.write(data)
        await writer.drain()
        writer.close()
        await writer.wait_closed()
    except (BrokenPipeError, ConnectionResetError) as e:
        logger.debug(f"Child closed stdin early: {e}")
