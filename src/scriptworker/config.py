"""scriptworker environment configuration.

Environment variables:
    SW_WATCHDOG: spawn a parent watchdog next to every launched child
        - true/1/yes = enabled (default)
        - false/0/no = disabled

    SW_WATCHDOG_INTERVAL: watchdog poll period in seconds
        - default 1.0, clamped to 0.1-10

    SW_DRAIN_TIMEOUT: seconds a stream pump waits for end-of-stream after
        its process exited, before forcing the final drain
        - default 2.0
        - "none" = wait forever

    SW_FORWARD_SIGNALS: forward terminal signals to running children
        - true/1/yes = enabled (default)
        - false/0/no = disabled

    SW_ECHO_ACTIONS: echo action lines ("Running ...") to stderr
        - false/0/no = off (default)

    SW_LOG_DEBUG: debug logging to a temporary file
        - false/0/no = off (default, logs go to stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_WATCHDOG_INTERVAL = 1.0
DEFAULT_DRAIN_TIMEOUT = 2.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """Parse a boolean environment variable."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_watchdog_interval(value: str | None) -> float:
    """Parse the watchdog poll interval."""
    if not value:
        return DEFAULT_WATCHDOG_INTERVAL
    try:
        interval = float(value)
        return max(0.1, min(interval, 10.0))
    except ValueError:
        return DEFAULT_WATCHDOG_INTERVAL


def _parse_drain_timeout(value: str | None) -> float | None:
    """Parse the pump drain timeout. ``none`` disables the timeout."""
    if not value:
        return DEFAULT_DRAIN_TIMEOUT
    if value.strip().lower() == "none":
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return DEFAULT_DRAIN_TIMEOUT


def _generate_log_file_path() -> str:
    """Build a timestamped log file path under the system temp directory."""
    log_dir = Path(tempfile.gettempdir()) / "scriptworker"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"sw_debug_{timestamp}.log"

    return str(log_file.resolve())


@dataclass
class Config:
    """scriptworker configuration.

    Attributes:
        watchdog_enabled: Spawn a ParentWatchdog for every launched child
        watchdog_interval: Watchdog poll period (seconds)
        drain_timeout: Max wait for end-of-stream after exit (None = forever)
        forward_signals: Install the signal forwarder on first launch
        echo_actions: Echo action lines to stderr
        log_debug: Debug logging to a temp file
        log_file: Log file path (set when log_debug is True)
    """

    watchdog_enabled: bool = True
    watchdog_interval: float = DEFAULT_WATCHDOG_INTERVAL
    drain_timeout: float | None = DEFAULT_DRAIN_TIMEOUT
    forward_signals: bool = True
    echo_actions: bool = False
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(watchdog_enabled={self.watchdog_enabled}, "
            f"watchdog_interval={self.watchdog_interval}, "
            f"drain_timeout={self.drain_timeout}, "
            f"forward_signals={self.forward_signals}, "
            f"echo_actions={self.echo_actions}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def load_config() -> Config:
    """Load configuration from environment variables."""
    log_debug = _parse_bool(os.environ.get("SW_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        watchdog_enabled=_parse_bool(os.environ.get("SW_WATCHDOG"), default=True),
        watchdog_interval=_parse_watchdog_interval(
            os.environ.get("SW_WATCHDOG_INTERVAL")
        ),
        drain_timeout=_parse_drain_timeout(os.environ.get("SW_DRAIN_TIMEOUT")),
        forward_signals=_parse_bool(
            os.environ.get("SW_FORWARD_SIGNALS"), default=True
        ),
        echo_actions=_parse_bool(os.environ.get("SW_ECHO_ACTIONS"), default=False),
        log_debug=log_debug,
        log_file=log_file,
    )


# Lazily loaded global instance
_config: Config | None = None


def get_config() -> Config:
    """Return the global configuration instance."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """Reload configuration from the environment (used by tests)."""
    global _config
    _config = load_config()
    return _config
