"""Registry of running child processes.

Tracks which child PIDs are alive so terminal signals received by the host
can be forwarded to them. Membership is used for signal forwarding only,
never for ownership: the launching stage owns its process.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

__all__ = ["ChildRegistry", "ChildInfo"]

logger = logging.getLogger(__name__)


@dataclass
class ChildInfo:
    """Information about one running child.

    Attributes:
        pid: OS process ID
        command: Command name the child was launched with
        created_at: When the child was registered
    """

    pid: int
    command: str
    created_at: datetime = field(default_factory=datetime.now)
    _started: float = field(default_factory=time.monotonic, repr=False)

    def __repr__(self) -> str:
        elapsed = time.monotonic() - self._started
        return (
            f"ChildInfo(pid={self.pid}, "
            f"command={self.command}, "
            f"elapsed={elapsed:.1f}s)"
        )


class ChildRegistry:
    """Set of live child PIDs shared by every task of one supervisor.

    Mutated only by ``register`` (on spawn) and ``unregister`` (when the
    child's termination handlers complete). The signal path reads an
    immutable ``snapshot``; signalling a PID that died in between is a
    harmless no-op failure.

    Example:
        ```python
        registry = ChildRegistry()
        registry.register(process.pid, "make")

        for pid in registry.snapshot():
            os.kill(pid, signal.SIGTERM)

        registry.unregister(process.pid)
        ```
    """

    def __init__(self) -> None:
        self._children: Dict[int, ChildInfo] = {}
        self._lock = threading.Lock()

    def register(self, pid: int, command: str) -> None:
        """Register a freshly spawned child.

        Args:
            pid: OS process ID
            command: Command name (for diagnostics)

        Raises:
            ValueError: If the PID is already registered
        """
        with self._lock:
            if pid in self._children:
                raise ValueError(f"Child {pid} already registered")
            info = ChildInfo(pid=pid, command=command)
            self._children[pid] = info
        logger.debug(f"Registered child: {info}")

    def unregister(self, pid: int) -> bool:
        """Remove a child.

        Returns:
            True if the PID was registered
        """
        with self._lock:
            info = self._children.pop(pid, None)
        if info is None:
            return False
        logger.debug(f"Unregistered child: {info}")
        return True

    def get(self, pid: int) -> Optional[ChildInfo]:
        with self._lock:
            return self._children.get(pid)

    def snapshot(self) -> frozenset[int]:
        """Immutable copy of the registered PIDs."""
        with self._lock:
            return frozenset(self._children)

    def list_active(self) -> list[ChildInfo]:
        """Registered children ordered by registration time."""
        with self._lock:
            children = list(self._children.values())
        return sorted(children, key=lambda x: x._started)

    def has_children(self) -> bool:
        with self._lock:
            return bool(self._children)

    def __len__(self) -> int:
        with self._lock:
            return len(self._children)

    def __contains__(self, pid: object) -> bool:
        with self._lock:
            return pid in self._children
