"""Pipeline composition.

scriptworker runtime module v0.1.0

A pipeline is an ordered sequence of TaskSpecs. Stage i's output (both
streams) is forwarded into stage i+1's stdin; the caller's consumers see
only the last stage's output. Stages are launched in order, the source
first.

Forwarding tolerates the downstream closing its stdin early: broken pipe
errors on that write path are suppressed and later chunks dropped.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass, replace
from typing import Optional

from ..errors import TaskMisuseError
from .process_runner import ProcessRunner, RunningProcess, TaskSpec, TerminationHandler
from .pump import Consumer, StreamPump

__all__ = ["Pipeline", "LaunchedPipeline", "StdinFeeder", "launch_pipeline"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Pipeline:
    """Ordered stages of a pipeline. A single stage is a plain task.

    Attributes:
        stages: Stage specifications, source first
    """

    stages: tuple[TaskSpec, ...]

    def __post_init__(self) -> None:
        if not self.stages:
            raise TaskMisuseError("A pipeline needs at least one stage")

    @classmethod
    def of(cls, *stages: TaskSpec) -> Pipeline:
        return cls(tuple(stages))

    @property
    def source(self) -> TaskSpec:
        return self.stages[0]

    def render(self) -> str:
        return " | ".join(stage.render() for stage in self.stages)


class _FeedProtocol(asyncio.Protocol):
    """Write-pipe protocol relaying flow control to the owning feeder."""

    def __init__(self) -> None:
        self.lost = False
        self.feeder: Optional[StdinFeeder] = None

    def pause_writing(self) -> None:
        if self.feeder is not None:
            self.feeder._pause_sources()

    def resume_writing(self) -> None:
        if self.feeder is not None:
            self.feeder._resume_sources()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self.lost = True
        if exc is not None:
            logger.debug(f"Downstream stdin closed: {exc}")
        # Nothing will drain the buffer anymore
        if self.feeder is not None:
            self.feeder._resume_sources()


class StdinFeeder:
    """Consumer writing every chunk into a downstream stage's stdin.

    The write end is closed after both upstream streams sent their
    end-of-stream sentinel. While the write buffer is above its high-water
    mark the upstream pumps stop reading, so a slow downstream stage holds
    back the upstream process instead of filling host memory.
    """

    def __init__(
        self,
        transport: asyncio.WriteTransport,
        protocol: _FeedProtocol,
        name: str = "",
    ) -> None:
        self.name = name
        self._transport = transport
        self._protocol = protocol
        self._protocol.feeder = self
        self._sources: tuple[StreamPump, ...] = ()
        self._paused = False
        self._finished_streams = 0
        self.dropped = 0

    @classmethod
    async def open(cls, write_fd: int, name: str = "") -> StdinFeeder:
        loop = asyncio.get_running_loop()
        pipe = os.fdopen(write_fd, "wb", buffering=0)
        transport, protocol = await loop.connect_write_pipe(_FeedProtocol, pipe)
        return cls(transport, protocol, name)

    @property
    def closed(self) -> bool:
        return self._protocol.lost or self._transport.is_closing()

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def buffer_size(self) -> int:
        """Bytes accepted but not yet written to the downstream stdin."""
        return self._transport.get_write_buffer_size()

    def throttle(self, sources: Sequence[StreamPump]) -> None:
        """Pump ``sources`` (the upstream stage's output) at the downstream pace."""
        self._sources = tuple(sources)
        if self._paused:
            for pump in self._sources:
                pump.pause_reading()

    def __call__(self, chunk: bytes, is_stdout: bool) -> None:
        if not chunk:
            self._finished_streams += 1
            if self._finished_streams == 2:
                self.close()
            return
        if self.closed:
            self.dropped += len(chunk)
            return
        try:
            self._transport.write(chunk)
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Downstream {self.name} closed stdin: {e}")
            self.dropped += len(chunk)

    def close(self) -> None:
        if not self._transport.is_closing():
            self._transport.close()
        if self.dropped:
            logger.debug(f"Dropped {self.dropped} bytes for {self.name}")

    def _pause_sources(self) -> None:
        if self._paused:
            return
        self._paused = True
        logger.debug(f"Downstream {self.name} is full, pausing upstream")
        for pump in self._sources:
            pump.pause_reading()

    def _resume_sources(self) -> None:
        if not self._paused:
            return
        self._paused = False
        for pump in self._sources:
            pump.resume_reading()


class LaunchedPipeline:
    """Handle of a launched pipeline.

    Attributes:
        pipeline: What was launched
        processes: Running stages, source first
        feeders: Stdin feeders of stages 1..n-1
    """

    def __init__(
        self,
        pipeline: Pipeline,
        processes: Sequence[RunningProcess],
        feeders: Sequence[StdinFeeder] = (),
    ) -> None:
        self.pipeline = pipeline
        self.processes = tuple(processes)
        self.feeders = tuple(feeders)

    def __repr__(self) -> str:
        return f"LaunchedPipeline({self.pipeline.render()!r}, pids={self.pids})"

    @property
    def source(self) -> RunningProcess:
        return self.processes[0]

    @property
    def pids(self) -> list[Optional[int]]:
        return [process.pid for process in self.processes]

    @property
    def pipe_status(self) -> list[Optional[int]]:
        """Exit status of every stage, source first (None while running)."""
        return [process.returncode for process in self.processes]

    async def wait(self) -> int:
        """Wait for every stage and return the source stage's status.

        A fatal stage error is raised as soon as it happens; stages still
        running at that point are sent SIGTERM.

        Raises:
            ScriptWorkerError: A stage configured with exit-on-failure failed
        """
        waiters = [asyncio.ensure_future(process.wait()) for process in self.processes]
        try:
            done, pending = await asyncio.wait(
                waiters, return_when=asyncio.FIRST_EXCEPTION
            )
        except asyncio.CancelledError:
            for waiter in waiters:
                waiter.cancel()
            raise

        for waiter in waiters:
            if waiter in done and not waiter.cancelled() and waiter.exception():
                error = waiter.exception()
                for other in pending:
                    other.cancel()
                for process in self.processes:
                    if process.returncode is None:
                        process.terminate()
                logger.debug(f"Aborting {self.pipeline.render()}: {error}")
                raise error

        status = self.source.returncode
        assert status is not None
        return status

    def send_signal(self, sig: int) -> None:
        for process in self.processes:
            process.send_signal(sig)


async def launch_pipeline(
    pipeline: Pipeline,
    runner: ProcessRunner,
    consumers: Sequence[Consumer] = (),
    *,
    completion: Optional[TerminationHandler] = None,
) -> LaunchedPipeline:
    """Launch every stage of ``pipeline``.

    Args:
        pipeline: Stages to launch
        runner: Runner spawning each stage
        consumers: Consumers of the last stage's output
        completion: Called with the source stage's status after its own
            termination handlers

    Returns:
        Handle of the launched pipeline

    Raises:
        TaskLaunchError: If a stage could not be spawned
    """
    stages = pipeline.stages
    # stdin pipes of stages 1..n-1, read end for the child, write end fed
    stdin_pipes = [os.pipe() for _ in stages[1:]]
    feeders: list[StdinFeeder] = []
    processes: list[RunningProcess] = []
    launched_read_ends: set[int] = set()

    try:
        for index, (read_fd, write_fd) in enumerate(stdin_pipes):
            feeders.append(
                await StdinFeeder.open(write_fd, name=stages[index + 1].command)
            )

        for index, spec in enumerate(stages):
            last = index == len(stages) - 1
            stage_consumers: Sequence[Consumer] = (
                consumers if last else [feeders[index]]
            )
            stdin_fd = stdin_pipes[index - 1][0] if index > 0 else None
            if stdin_fd is not None:
                launched_read_ends.add(stdin_fd)
            if index > 0 and spec.stdin_bytes is not None:
                logger.warning(f"Ignoring stdin bytes of pipe destination {spec.command}")
                spec = replace(spec, stdin_bytes=None)
            process = await runner.start(spec, stage_consumers, stdin_fd=stdin_fd)
            processes.append(process)
            if not last:
                feeders[index].throttle(process.pumps)
            if index == 0 and completion is not None:
                process.add_termination_handler(completion)
    except BaseException:
        # Kill the stages launched so far
        for process in processes:
            process.kill()
        for feeder in feeders:
            feeder.close()
        for read_fd, _ in stdin_pipes:
            if read_fd not in launched_read_ends:
                os.close(read_fd)
        raise

    return LaunchedPipeline(pipeline, processes, feeders)
