#!/usr/bin/env python3
"""Parent watchdog.

Children are launched in their own session, decoupled from the host. The
signal forwarder relays every signal the host can handle, but nothing runs
when the host dies from one it cannot (SIGKILL, a crash). This small program
is started next to each child with the host PID and the child PID; once the
host is gone it kills the child.

Usage:
    python watchdog.py PARENT_PID CHILD_PID
    python -m scriptworker.watchdog PARENT_PID CHILD_PID

The poll interval (seconds) is read from SW_WATCHDOG_INTERVAL (default 1.0).

This file is executed directly by path, so it only imports the standard
library.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import time
from collections.abc import Callable
from typing import Optional, Sequence

__all__ = ["pid_alive", "watch", "main"]

logger = logging.getLogger("scriptworker.watchdog")

DEFAULT_INTERVAL = 1.0


def pid_alive(pid: int) -> bool:
    """Zero-signal liveness probe."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else
        return True
    return True


def _parent_gone(parent_pid: int) -> bool:
    # A dead but unreaped parent still answers the probe; being re-parented
    # is the earlier sign.
    return os.getppid() != parent_pid or not pid_alive(parent_pid)


def watch(
    parent_pid: int,
    child_pid: int,
    interval: float = DEFAULT_INTERVAL,
    *,
    sleep: Callable[[float], None] = time.sleep,
    parent_gone: Optional[Callable[[int], bool]] = None,
) -> int:
    """Poll until the parent disappears, then kill the child.

    Args:
        parent_pid: PID of the launching (host) process
        child_pid: PID of the child to protect against orphaning
        interval: Poll period in seconds
        sleep: Sleep function (injectable for tests)
        parent_gone: Parent liveness check (injectable for tests)

    Returns:
        Exit code (always 0)
    """
    check_parent = parent_gone or _parent_gone
    while True:
        sleep(interval)
        if check_parent(parent_pid):
            logger.debug(f"Parent {parent_pid} gone, killing child {child_pid}")
            try:
                os.kill(child_pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            return 0
        if not pid_alive(child_pid):
            logger.debug(f"Child {child_pid} gone, watchdog exiting")
            return 0


def _interval_from_env() -> float:
    value = os.environ.get("SW_WATCHDOG_INTERVAL")
    if not value:
        return DEFAULT_INTERVAL
    try:
        return max(0.1, min(float(value), 10.0))
    except ValueError:
        return DEFAULT_INTERVAL


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point: ``watchdog PARENT_PID CHILD_PID``."""
    parser = argparse.ArgumentParser(
        prog="scriptworker-watchdog",
        description="Kill CHILD_PID once PARENT_PID is gone.",
    )
    parser.add_argument("parent_pid", type=int)
    parser.add_argument("child_pid", type=int)
    args = parser.parse_args(argv)

    # The host forwards the signals it cares about to the child itself
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    return watch(args.parent_pid, args.child_pid, _interval_from_env())


if __name__ == "__main__":
    sys.exit(main())
