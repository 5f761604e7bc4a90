"""Stream pump: delivers one output stream of a child to its consumers.

scriptworker runtime module v0.1.0

A pump wraps the read end of the pipe connected to a child's stdout or
stderr. Reading is readiness driven (``loop.connect_read_pipe``): every
chunk is handed to each consumer as soon as it is readable.

End-of-stream is reported with an empty chunk, the sentinel. The pump
manufactures it in ``shutdown`` after the process exited, because a
grandchild holding the pipe open means EOF may never arrive:
- wait (bounded) for EOF
- stop readiness delivery and drain whatever is still buffered
- deliver the drained chunk (empty when nothing was left)
- if it was not empty, deliver one more empty sentinel

Exactly one sentinel is delivered per stream, always last.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from collections.abc import Callable, Sequence
from typing import Optional

import anyio

__all__ = ["Consumer", "StreamPump"]

logger = logging.getLogger(__name__)

# (chunk, is_stdout). An empty chunk is the end-of-stream sentinel.
Consumer = Callable[[bytes, bool], None]

DRAIN_CHUNK_SIZE = 65536


class _PumpProtocol(asyncio.Protocol):
    """Read-pipe protocol forwarding transport events to the pump."""

    def __init__(self, pump: StreamPump) -> None:
        self._pump = pump

    def data_received(self, data: bytes) -> None:
        self._pump._on_data(data)

    def connection_lost(self, exc: Optional[Exception]) -> None:
        if exc is not None:
            logger.debug(f"Pipe error on {self._pump.name}: {exc}")
        self._pump._on_eof()


class StreamPump:
    """Asynchronous reader for one output stream of a child process.

    Example:
        ```python
        read_fd, write_fd = os.pipe()
        pump = StreamPump(read_fd, is_stdout=True, consumers=[handler])
        await pump.start()
        # ... spawn the child with stdout=write_fd, wait for it to exit ...
        await pump.shutdown(timeout=2.0)
        ```

    Attributes:
        is_stdout: True for stdout, False for stderr
        name: Label used in log messages
    """

    def __init__(
        self,
        fd: int,
        *,
        is_stdout: bool,
        consumers: Sequence[Consumer],
        name: str = "",
    ) -> None:
        """Create a pump.

        Args:
            fd: Read end of the pipe; the pump takes ownership
            is_stdout: Stream tag passed to consumers
            consumers: Consumers, called in order for every chunk
            name: Label used in log messages
        """
        self.is_stdout = is_stdout
        self.name = name or ("stdout" if is_stdout else "stderr")
        self._fd = fd
        self._consumers = consumers
        self._lock = threading.Lock()
        self._pipe = None
        self._transport: Optional[asyncio.ReadTransport] = None
        self._eof: Optional[anyio.Event] = None
        self._closed = False
        self._finished = False

    @property
    def finished(self) -> bool:
        """True once the sentinel has been delivered."""
        return self._finished

    async def start(self) -> None:
        """Start readiness-driven reading on the running loop."""
        loop = asyncio.get_running_loop()
        self._eof = anyio.Event()
        self._pipe = os.fdopen(self._fd, "rb", buffering=0)
        self._transport, _ = await loop.connect_read_pipe(
            lambda: _PumpProtocol(self), self._pipe
        )

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Finalize the stream. Call once the process has exited.

        Args:
            timeout: Max seconds to wait for EOF before forcing the drain
                (None = wait forever)
        """
        if self._finished:
            return

        if self._eof is not None:
            with anyio.move_on_after(timeout):
                await self._eof.wait()

        with self._lock:
            if self._finished:
                return
            self._closed = True
            drained = b""
            if self._eof is not None and not self._eof.is_set():
                logger.debug(f"No EOF on {self.name} after {timeout}s, draining")
                drained = self._drain()
            self._deliver(drained)
            if drained:
                self._deliver(b"")
            self._finished = True

    def pause_reading(self) -> None:
        """Stop readiness delivery until ``resume_reading`` (downstream full).

        Called from inside a consumer, so it must not take the lock.
        """
        if self._transport is not None and not self._closed:
            self._transport.pause_reading()

    def resume_reading(self) -> None:
        if self._transport is not None and not self._closed:
            self._transport.resume_reading()

    def close(self) -> None:
        """Release the pipe without delivering anything (launch failure)."""
        with self._lock:
            self._closed = True
            self._finished = True
            if self._transport is not None:
                self._transport.close()
            elif self._pipe is not None:
                self._pipe.close()
            else:
                os.close(self._fd)

    def _drain(self) -> bytes:
        """Stop readiness delivery and read what is left without blocking."""
        assert self._transport is not None and self._pipe is not None
        self._transport.pause_reading()
        chunks: list[bytes] = []
        fd = self._pipe.fileno()
        while True:
            try:
                data = os.read(fd, DRAIN_CHUNK_SIZE)
            except BlockingIOError:
                break
            except OSError as e:
                logger.debug(f"Drain of {self.name} stopped: {e}")
                break
            if not data:
                break
            chunks.append(data)
        self._transport.close()
        return b"".join(chunks)

    def _on_data(self, data: bytes) -> None:
        with self._lock:
            if self._closed:
                return
            self._deliver(data)

    def _on_eof(self) -> None:
        if self._eof is not None:
            self._eof.set()

    def _deliver(self, chunk: bytes) -> None:
        for consumer in self._consumers:
            try:
                consumer(chunk, self.is_stdout)
            except Exception as e:
                logger.warning(f"Error in {self.name} consumer: {e!r}")
