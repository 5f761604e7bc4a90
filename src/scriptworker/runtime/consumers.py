"""Standard output consumers.

A consumer is called as ``consumer(chunk, is_stdout)`` for every chunk of
either stream, and once per stream with an empty chunk at end-of-stream.
"""

from __future__ import annotations

import sys
from typing import BinaryIO, TextIO

from ..errors import OutputDecodeError
from .pump import Consumer

__all__ = ["print_to_parent", "OutputCollector", "write_to_handle"]


def _write(stream: TextIO, data: bytes) -> None:
    buffer = getattr(stream, "buffer", None)
    if buffer is not None:
        stream.flush()
        buffer.write(data)
        buffer.flush()
    else:
        stream.write(data.decode("utf-8", errors="replace"))
        stream.flush()


def print_to_parent(chunk: bytes, is_stdout: bool) -> None:
    """Copy stdout chunks to our stdout and stderr chunks to our stderr."""
    if not chunk:
        return
    _write(sys.stdout if is_stdout else sys.stderr, chunk)


class OutputCollector:
    """Accumulates every byte of both streams.

    Example:
        ```python
        collector = OutputCollector()
        task.output(collector)
        task.run(print_output=False)
        out, err = collector.decode("ls")
        ```
    """

    def __init__(self) -> None:
        self.stdout = bytearray()
        self.stderr = bytearray()

    def __call__(self, chunk: bytes, is_stdout: bool) -> None:
        if is_stdout:
            self.stdout += chunk
        else:
            self.stderr += chunk

    def decode(self, command: str) -> tuple[str, str]:
        """Decode both streams as UTF-8.

        Raises:
            OutputDecodeError: If either stream is not valid UTF-8
        """
        try:
            return self.stdout.decode("utf-8"), self.stderr.decode("utf-8")
        except UnicodeDecodeError as e:
            raise OutputDecodeError(command) from e


def write_to_handle(handle: BinaryIO) -> Consumer:
    """Consumer writing both streams to ``handle``.

    The handle is closed once both streams reached end-of-stream.
    """
    finished = 0

    def consumer(chunk: bytes, is_stdout: bool) -> None:
        nonlocal finished
        if chunk:
            handle.write(chunk)
            return
        finished += 1
        if finished == 2:
            handle.close()

    return consumer
