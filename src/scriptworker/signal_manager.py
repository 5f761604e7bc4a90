"""Signal forwarding to running children.

Children are launched in their own session, so a signal delivered to the
host (Ctrl+C in the terminal, ``kill`` from a supervisor) would not reach
them. The forwarder traps the terminal signals, relays them to every child
in the registry, then lets the signal take its normal effect on the host.

The handler itself stays minimal: it restores the previous disposition and
hands the signal number to a dispatch callable (normally the orchestration
loop), where the registry is walked and the signal re-delivered.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Callable
from types import FrameType
from typing import Any, Optional

from .registry import ChildRegistry

__all__ = ["SignalForwarder", "TRAPPED_SIGNALS"]

logger = logging.getLogger(__name__)

# SIGKILL is not in the list: it cannot be trapped, the watchdog covers it.
TRAPPED_SIGNALS: tuple[signal.Signals, ...] = (
    signal.SIGHUP,
    signal.SIGINT,
    signal.SIGQUIT,
    signal.SIGABRT,
    signal.SIGALRM,
    signal.SIGTERM,
)

Dispatch = Callable[..., Any]


def _dispatch_inline(fn: Callable[..., Any], *args: Any) -> None:
    fn(*args)


class SignalForwarder:
    """Forwards terminal signals received by the host to tracked children.

    Example:
        ```python
        registry = ChildRegistry()
        forwarder = SignalForwarder(registry)
        forwarder.install()  # main thread, once per program
        ```

    Attributes:
        registry: Registry of running children
        signals: Signals trapped by ``install``
    """

    def __init__(
        self,
        registry: ChildRegistry,
        dispatch: Optional[Dispatch] = None,
        signals: tuple[signal.Signals, ...] = TRAPPED_SIGNALS,
    ) -> None:
        """Create a forwarder.

        Args:
            registry: Registry of running children
            dispatch: Callable ``dispatch(fn, signum)`` that runs ``fn`` outside
                the signal handler (default: inline)
            signals: Signals to trap
        """
        self.registry = registry
        self.signals = signals
        self._dispatch = dispatch or _dispatch_inline
        self._original_handlers: dict[int, Any] = {}
        self._installed = False
        self._lock = threading.Lock()

    @property
    def is_installed(self) -> bool:
        return self._installed

    def install(self) -> bool:
        """Install handlers for the trapped signals.

        Only the first call has an effect. Must run on the main thread.

        Returns:
            True if handlers are in place after the call
        """
        with self._lock:
            if self._installed:
                return True
            if threading.current_thread() is not threading.main_thread():
                logger.debug("Not on the main thread, signal forwarding disabled")
                return False

            for sig in self.signals:
                try:
                    self._original_handlers[int(sig)] = signal.signal(
                        sig, self._handle_signal
                    )
                except (OSError, ValueError) as e:
                    logger.debug(f"Cannot trap {sig.name}: {e}")

            # Broken pipes surface as I/O errors instead of killing the host
            signal.signal(signal.SIGPIPE, signal.SIG_IGN)

            self._installed = True
            logger.debug(
                f"Signal forwarding installed for "
                f"{', '.join(signal.Signals(s).name for s in self._original_handlers)}"
            )
            return True

    def uninstall(self) -> None:
        """Restore every handler replaced by ``install``."""
        with self._lock:
            if not self._installed:
                return
            for signum, handler in self._original_handlers.items():
                try:
                    signal.signal(signum, handler)
                except (OSError, ValueError) as e:
                    logger.debug(f"Error restoring handler for {signum}: {e}")
            self._original_handlers.clear()
            self._installed = False
            logger.debug("Signal forwarding removed")

    def forward(self, signum: int) -> int:
        """Send ``signum`` to every registered child.

        Returns:
            Number of children the signal was delivered to
        """
        delivered = 0
        for pid in self.registry.snapshot():
            try:
                os.kill(pid, signum)
                delivered += 1
            except ProcessLookupError:
                # Exited between the snapshot and the kill
                pass
            except PermissionError as e:
                logger.debug(f"Cannot signal child pid={pid}: {e}")
        if delivered:
            logger.info(
                f"Forwarded {signal.Signals(signum).name} to {delivered} child(ren)"
            )
        return delivered

    def _handle_signal(self, signum: int, frame: FrameType | None) -> None:
        """Signal handler: restore the previous disposition, defer the work."""
        previous = self._original_handlers.pop(signum, signal.SIG_DFL)
        if previous is None:
            previous = signal.SIG_DFL
        signal.signal(signum, previous)
        self._dispatch(self._forward_and_reraise, signum)

    def _forward_and_reraise(self, signum: int) -> None:
        self.forward(signum)
        # Let the host die (or raise KeyboardInterrupt) the normal way
        os.kill(os.getpid(), signum)
