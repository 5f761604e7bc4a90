"""scriptworker - subprocess orchestration for scripts.

Environment variables:
    SW_WATCHDOG: spawn a parent watchdog per child (default true)
    SW_WATCHDOG_INTERVAL: watchdog poll period in seconds (default 1.0)
    SW_DRAIN_TIMEOUT: end-of-stream wait after exit (default 2.0)
    SW_FORWARD_SIGNALS: forward terminal signals to children (default true)
    SW_ECHO_ACTIONS: echo "Running ..." lines to stderr (default false)
    SW_LOG_DEBUG: debug logging to a temp file (default false)

Usage:
    from scriptworker import ProcessTask

    ProcessTask("git").args(["status"]).exit_on_failure().run()
"""

__version__ = "0.1.0"

from .config import Config, get_config, reload_config
from .errors import (
    OutputDecodeError,
    ScriptWorkerError,
    TaskFailedError,
    TaskLaunchError,
    TaskMisuseError,
)
from .log import ActionLog, configure_logging
from .registry import ChildRegistry
from .runtime import Pipeline, TaskSpec
from .supervisor import Supervisor, get_supervisor
from .task import ProcessTask
from .worker import ScriptWorker

__all__ = [
    "__version__",
    "ActionLog",
    "ChildRegistry",
    "Config",
    "OutputDecodeError",
    "Pipeline",
    "ProcessTask",
    "ScriptWorker",
    "ScriptWorkerError",
    "Supervisor",
    "TaskFailedError",
    "TaskLaunchError",
    "TaskMisuseError",
    "TaskSpec",
    "configure_logging",
    "get_config",
    "get_supervisor",
    "reload_config",
]
