"""Watchdog sidecar management.

One watchdog process is started per launched child (see
``scriptworker/watchdog.py``). It runs in its own session so terminal
signals aimed at the host do not take it down with it.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Optional

__all__ = ["WatchdogLauncher", "WATCHDOG_SCRIPT"]

logger = logging.getLogger(__name__)

WATCHDOG_SCRIPT = Path(__file__).resolve().parent.parent / "watchdog.py"


class WatchdogLauncher:
    """Starts and stops ParentWatchdog processes.

    Attributes:
        interval: Poll period passed to the watchdog (seconds)
        executable: Python interpreter used to run the watchdog script
    """

    def __init__(
        self,
        interval: float = 1.0,
        executable: Optional[str] = None,
    ) -> None:
        self.interval = interval
        self.executable = executable or sys.executable

    def argv(self, child_pid: int) -> list[str]:
        # -I keeps the package directory off sys.path of the script
        return [
            self.executable,
            "-I",
            str(WATCHDOG_SCRIPT),
            str(os.getpid()),
            str(child_pid),
        ]

    async def spawn(self, child_pid: int) -> Optional[asyncio.subprocess.Process]:
        """Start a watchdog for ``child_pid``.

        Returns:
            The watchdog process, or None if it could not be started
        """
        env = dict(os.environ)
        env["SW_WATCHDOG_INTERVAL"] = str(self.interval)
        try:
            process = await asyncio.create_subprocess_exec(
                *self.argv(child_pid),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            logger.warning(f"Failed to start watchdog for pid={child_pid}: {e}")
            return None

        logger.debug(f"Started watchdog pid={process.pid} for child pid={child_pid}")
        return process

    async def stop(self, process: Optional[asyncio.subprocess.Process]) -> None:
        """Kill and reap a watchdog whose child has exited."""
        if process is None or process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            pass
        await process.wait()
        logger.debug(f"Stopped watchdog pid={process.pid}")
