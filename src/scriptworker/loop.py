"""Orchestration thread.

Scripts call the task API synchronously; child supervision, stream pumps
and termination handlers run on one asyncio loop owned by a daemon thread.
Async completions are invoked on that thread.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from collections.abc import Callable, Coroutine
from typing import Any, Optional, TypeVar

__all__ = ["EventLoopThread"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventLoopThread:
    """An asyncio event loop running forever on a daemon thread.

    Example:
        ```python
        loop_thread = EventLoopThread()
        loop_thread.start()
        future = loop_thread.submit(some_coroutine())
        result = future.result()
        loop_thread.stop()
        ```
    """

    def __init__(self, name: str = "scriptworker-loop") -> None:
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError("Event loop thread not started")
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> asyncio.AbstractEventLoop:
        """Start the thread (idempotent) and return its loop."""
        with self._lock:
            if self._loop is not None and self.is_running:
                return self._loop

            loop = asyncio.new_event_loop()
            ready = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(loop, ready),
                daemon=True,
                name=self.name,
            )
            thread.start()
            ready.wait()

            self._loop = loop
            self._thread = thread
            logger.debug(f"Event loop thread {self.name} started")
            return loop

    def _run(self, loop: asyncio.AbstractEventLoop, ready: threading.Event) -> None:
        asyncio.set_event_loop(loop)
        loop.call_soon(ready.set)
        try:
            loop.run_forever()
        finally:
            try:
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                loop.close()

    def submit(
        self, coro: Coroutine[Any, Any, T]
    ) -> concurrent.futures.Future[T]:
        """Schedule ``coro`` on the loop, return a thread-safe future."""
        return asyncio.run_coroutine_threadsafe(coro, self.start())

    def call_soon(self, fn: Callable[..., Any], *args: Any) -> None:
        """Run ``fn(*args)`` on the loop thread."""
        self.start().call_soon_threadsafe(fn, *args)

    def in_loop_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the loop and join the thread."""
        with self._lock:
            loop, thread = self._loop, self._thread
            self._loop = None
            self._thread = None
        if loop is None or thread is None:
            return
        if thread.is_alive():
            loop.call_soon_threadsafe(loop.stop)
            if threading.current_thread() is not thread:
                thread.join(timeout)
        logger.debug(f"Event loop thread {self.name} stopped")
