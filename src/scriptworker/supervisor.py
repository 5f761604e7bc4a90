"""Top-level orchestration context.

A Supervisor owns everything that used to be process-wide state: the
registry of running children, the signal forwarder, the action log, the
orchestration thread and the process runner. Scripts normally use the
default instance returned by ``get_supervisor()``; tests and embedding
applications create their own.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections.abc import Sequence
from typing import Any, Callable, Optional

from .config import Config, get_config
from .errors import ScriptWorkerError, TaskMisuseError, exit_now
from .log import ActionLog
from .loop import EventLoopThread
from .registry import ChildRegistry
from .runtime.pipeline import Pipeline, launch_pipeline
from .runtime.process_runner import ProcessRunner, TerminationHandler
from .runtime.pump import Consumer
from .runtime.sidecar import WatchdogLauncher
from .signal_manager import SignalForwarder

__all__ = ["Supervisor", "get_supervisor", "set_supervisor", "reset_supervisor"]

logger = logging.getLogger(__name__)


class Supervisor:
    """Runs pipelines on the orchestration thread.

    Example:
        ```python
        supervisor = Supervisor()
        status = supervisor.run(Pipeline.of(spec), [print_to_parent])
        ```

    Attributes:
        config: Active configuration
        registry: Running children, used for signal forwarding
        actions: Sink of action lines
        forwarder: Signal forwarder (installed on first launch if enabled)
        runner: Process runner shared by every launch
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        registry: Optional[ChildRegistry] = None,
        actions: Optional[ActionLog] = None,
    ) -> None:
        self.config = config or get_config()
        self.registry = registry if registry is not None else ChildRegistry()
        self.actions = actions or ActionLog(echo=self.config.echo_actions)
        self.forwarder = SignalForwarder(self.registry, dispatch=self._dispatch)
        self.runner = ProcessRunner(
            registry=self.registry,
            watchdog=(
                WatchdogLauncher(self.config.watchdog_interval)
                if self.config.watchdog_enabled
                else None
            ),
            drain_timeout=self.config.drain_timeout,
        )
        self._loop_thread = EventLoopThread()
        self._pending: set[concurrent.futures.Future[int]] = set()
        self._pending_lock = threading.Lock()
        self._idle = threading.Condition(self._pending_lock)

    def __repr__(self) -> str:
        return (
            f"Supervisor(children={len(self.registry)}, "
            f"pending={len(self._pending)})"
        )

    def run(
        self,
        pipeline: Pipeline,
        consumers: Sequence[Consumer] = (),
        *,
        completion: Optional[TerminationHandler] = None,
    ) -> int:
        """Launch ``pipeline`` and block until every stage finished.

        An exit-on-failure error is raised as soon as its stage failed.

        Args:
            pipeline: Stages to run, source first
            consumers: Consumers of the last stage's output
            completion: Called on the orchestration thread with the source
                stage's status

        Returns:
            Exit status of the source stage

        Raises:
            TaskMisuseError: Called from the orchestration thread
            TaskLaunchError: A stage could not be spawned
            TaskFailedError: An exit-on-failure stage exited nonzero
        """
        if self._loop_thread.in_loop_thread():
            raise TaskMisuseError(
                f"'{pipeline.source.command}' attempted a blocking run "
                f"from the orchestration thread"
            )
        future = self._launch(pipeline, consumers, completion)
        return future.result()

    def run_async(
        self,
        pipeline: Pipeline,
        consumers: Sequence[Consumer] = (),
        *,
        completion: Optional[TerminationHandler] = None,
    ) -> concurrent.futures.Future[int]:
        """Launch ``pipeline`` in the background.

        A fatal condition in the background run (exit-on-failure, spawn
        failure) terminates the host process with status 1.

        Returns:
            Future resolving to the source stage's status
        """
        future = self._launch(pipeline, consumers, completion)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._on_background_done)
        return future

    def wait_all(self, timeout: Optional[float] = None) -> bool:
        """Wait for every background run started with ``run_async``.

        Returns:
            True if nothing is pending anymore
        """
        with self._idle:
            return self._idle.wait_for(lambda: not self._pending, timeout)

    def close(self) -> None:
        """Uninstall signal forwarding and stop the orchestration thread."""
        self.forwarder.uninstall()
        self._loop_thread.stop()

    def _launch(
        self,
        pipeline: Pipeline,
        consumers: Sequence[Consumer],
        completion: Optional[TerminationHandler],
    ) -> concurrent.futures.Future[int]:
        self.actions.log(f"Running {pipeline.render()}")
        self._prepare()

        async def run_pipeline() -> int:
            launched = await launch_pipeline(
                pipeline, self.runner, consumers, completion=completion
            )
            return await launched.wait()

        return self._loop_thread.submit(run_pipeline())

    def _prepare(self) -> None:
        if self.config.forward_signals and not self.forwarder.is_installed:
            self.forwarder.install()
        self._loop_thread.start()

    def _dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        if self._loop_thread.is_running:
            self._loop_thread.call_soon(fn, *args)
        else:
            fn(*args)

    def _on_background_done(self, future: concurrent.futures.Future[int]) -> None:
        with self._idle:
            self._pending.discard(future)
            self._idle.notify_all()
        if future.cancelled():
            return
        error = future.exception()
        if isinstance(error, ScriptWorkerError):
            exit_now(str(error))
        elif error is not None:
            logger.error(f"Background run failed: {error!r}")


# Lazily created default instance
_supervisor: Optional[Supervisor] = None
_supervisor_lock = threading.Lock()


def get_supervisor() -> Supervisor:
    """Return the process-wide default supervisor."""
    global _supervisor
    with _supervisor_lock:
        if _supervisor is None:
            _supervisor = Supervisor()
        return _supervisor


def set_supervisor(supervisor: Optional[Supervisor]) -> None:
    """Replace the default supervisor (embedding, tests)."""
    global _supervisor
    with _supervisor_lock:
        _supervisor = supervisor


def reset_supervisor() -> None:
    """Close and drop the default supervisor."""
    global _supervisor
    with _supervisor_lock:
        supervisor, _supervisor = _supervisor, None
    if supervisor is not None:
        supervisor.close()
