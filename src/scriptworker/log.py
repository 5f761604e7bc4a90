"""Logging setup and the action sink.

Every top-level launch writes one human-readable line describing what is
about to run. Those lines go through the ``scriptworker.actions`` logger so
applications route them like any other log record.
"""

from __future__ import annotations

import collections
import logging
import sys
import threading
from typing import TextIO

from .config import Config, get_config

__all__ = ["ActionLog", "configure_logging"]

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class ActionLog:
    """Process-wide sink for single-line action descriptions.

    Attributes:
        echo: Also write each line to ``stream``
        lines: Most recent action lines, oldest first
    """

    def __init__(
        self,
        echo: bool = False,
        stream: TextIO | None = None,
        history: int = 256,
    ) -> None:
        self.echo = echo
        self._stream = stream
        self._lines: collections.deque[str] = collections.deque(maxlen=history)
        self._lock = threading.Lock()
        self._logger = logging.getLogger("scriptworker.actions")

    @property
    def lines(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def log(self, action: str) -> None:
        """Record one action line."""
        # Keep it single-line
        action = " ".join(action.splitlines())
        with self._lock:
            self._lines.append(action)
        self._logger.info(action)
        if self.echo:
            stream = self._stream if self._stream is not None else sys.stderr
            print(action, file=stream, flush=True)


def configure_logging(config: Config | None = None) -> None:
    """Configure logging for a script using scriptworker.

    Default: stderr at INFO for the ``scriptworker`` namespace.
    SW_LOG_DEBUG: DEBUG to a temp file (path in ``config.log_file``).
    """
    config = config or get_config()

    handlers: list[logging.Handler] = []
    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(stderr_handler)
        log_level = logging.INFO

    # Third-party loggers stay at WARNING
    logging.basicConfig(level=logging.WARNING, handlers=handlers)
    logging.getLogger("scriptworker").setLevel(log_level)
    logger.debug(f"Logging configured: {config}")
