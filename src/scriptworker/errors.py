"""Error taxonomy and program-exit helpers.

Misuse of the task API and exit-on-failure violations are fatal: the
calling script prints one diagnostic line and exits with status 1. The
typed exceptions below let the orchestration core report those conditions
without exiting by itself; the public entry points convert them with
``exit_on_error``.
"""

from __future__ import annotations

import contextlib
import os
import sys
from collections.abc import Iterator
from typing import NoReturn

__all__ = [
    "ScriptWorkerError",
    "TaskMisuseError",
    "TaskLaunchError",
    "TaskFailedError",
    "OutputDecodeError",
    "exit_msg",
    "exit_now",
    "exit_on_error",
]


class ScriptWorkerError(Exception):
    """Base exception for fatal scriptworker conditions."""
    pass


class TaskMisuseError(ScriptWorkerError):
    """The calling script used the task API incorrectly."""
    pass


class TaskLaunchError(ScriptWorkerError):
    """The OS refused to spawn a process (bad cwd, missing launcher)."""
    pass


class TaskFailedError(ScriptWorkerError):
    """A task configured with exit-on-failure exited with nonzero status.

    Attributes:
        command: Command name of the failed task
        status: Exit status reported by the OS
    """

    def __init__(self, command: str, status: int) -> None:
        self.command = command
        self.status = status
        super().__init__(f"Error: {command} failed with exit code {status}")


class OutputDecodeError(ScriptWorkerError):
    """Captured output of a task is not valid UTF-8.

    Attributes:
        command: Command name of the task
    """

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(f"Failed to read output from command {command}")


def exit_msg(message: str) -> NoReturn:
    """Print ``message`` and exit the calling thread's program with status 1."""
    print(message, file=sys.stderr, flush=True)
    raise SystemExit(1)


def exit_now(message: str) -> NoReturn:
    """Print ``message`` and terminate the whole process immediately.

    Used from the orchestration thread, where ``SystemExit`` would only end
    that thread.
    """
    print(message, file=sys.stderr)
    for stream in (sys.stdout, sys.stderr):
        with contextlib.suppress(Exception):
            stream.flush()
    os._exit(1)


@contextlib.contextmanager
def exit_on_error() -> Iterator[None]:
    """Turn any ``ScriptWorkerError`` raised in the block into ``exit_msg``."""
    try:
        yield
    except ScriptWorkerError as e:
        exit_msg(str(e))
