"""Pipeline tests.

Test coverage:
- Output of each stage feeds the next stage's stdin
- Caller consumers only see the last stage
- Source status is returned, pipe_status lists every stage
- Downstream closing stdin early does not break the source
- A failing exit-on-failure stage aborts the pipeline at once
- A slow destination throttles the source (bounded buffering)
- A failed launch kills the stages already started
"""

from __future__ import annotations

import asyncio
import signal
import sys
import time
from pathlib import Path
from unittest import mock

import pytest

from scriptworker.errors import TaskFailedError, TaskLaunchError, TaskMisuseError
from scriptworker.registry import ChildRegistry
from scriptworker.runtime.consumers import OutputCollector
from scriptworker.runtime.pipeline import (
    Pipeline,
    StdinFeeder,
    _FeedProtocol,
    launch_pipeline,
)
from scriptworker.runtime.process_runner import ProcessRunner, TaskSpec

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX only")


@pytest.fixture
def registry() -> ChildRegistry:
    return ChildRegistry()


@pytest.fixture
def runner(registry: ChildRegistry) -> ProcessRunner:
    return ProcessRunner(registry=registry, drain_timeout=1.0)


def sh(workspace: Path, script: str) -> TaskSpec:
    return TaskSpec(command="sh", cwd=workspace, args=("-c", script))


# =============================================================================
# Pipeline value
# =============================================================================


class TestPipelineValue:
    """Pipeline dataclass."""

    def test_empty_pipeline_rejected(self):
        with pytest.raises(TaskMisuseError):
            Pipeline(())

    def test_render(self, workspace: Path):
        pipeline = Pipeline.of(
            TaskSpec(command="cat", cwd=workspace, args=("a.txt",)),
            TaskSpec(command="sort", cwd=workspace),
        )
        assert pipeline.render() == "cat a.txt | sort"
        assert pipeline.source.command == "cat"


# =============================================================================
# Launch
# =============================================================================


class TestLaunch:
    """launch_pipeline()."""

    @pytest.mark.asyncio
    async def test_single_stage(self, workspace: Path, runner: ProcessRunner):
        collector = OutputCollector()
        launched = await launch_pipeline(
            Pipeline.of(sh(workspace, "printf one")), runner, [collector]
        )

        assert await launched.wait() == 0
        assert collector.decode("sh") == ("one", "")

    @pytest.mark.asyncio
    async def test_two_stages(self, workspace: Path, runner: ProcessRunner):
        collector = OutputCollector()
        pipeline = Pipeline.of(
            sh(workspace, "printf 'b\\na\\nc\\n'"),
            TaskSpec(command="sort", cwd=workspace),
        )

        launched = await launch_pipeline(pipeline, runner, [collector])

        assert await launched.wait() == 0
        assert collector.decode("sort") == ("a\nb\nc\n", "")

    @pytest.mark.asyncio
    async def test_three_stages(self, workspace: Path, runner: ProcessRunner):
        collector = OutputCollector()
        pipeline = Pipeline.of(
            sh(workspace, "printf 'x\\ny\\nx\\n'"),
            TaskSpec(command="sort", cwd=workspace),
            TaskSpec(command="uniq", cwd=workspace, args=("-c",)),
        )

        launched = await launch_pipeline(pipeline, runner, [collector])
        await launched.wait()

        out, _ = collector.decode("uniq")
        assert [line.split() for line in out.splitlines()] == [["2", "x"], ["1", "y"]]

    @pytest.mark.asyncio
    async def test_upstream_stderr_is_forwarded(
        self, workspace: Path, runner: ProcessRunner
    ):
        collector = OutputCollector()
        pipeline = Pipeline.of(
            sh(workspace, "printf out; printf err >&2"),
            TaskSpec(command="cat", cwd=workspace),
        )

        launched = await launch_pipeline(pipeline, runner, [collector])
        await launched.wait()

        out, err = collector.decode("cat")
        assert sorted(out) == sorted("outerr")
        assert err == ""

    @pytest.mark.asyncio
    async def test_returns_source_status(self, workspace: Path, runner: ProcessRunner):
        pipeline = Pipeline.of(
            sh(workspace, "echo data; exit 3"),
            sh(workspace, "cat >/dev/null; exit 5"),
        )

        launched = await launch_pipeline(pipeline, runner)

        assert await launched.wait() == 3
        assert launched.pipe_status == [3, 5]

    @pytest.mark.asyncio
    async def test_destination_closes_stdin_early(
        self, workspace: Path, runner: ProcessRunner
    ):
        collector = OutputCollector()
        pipeline = Pipeline.of(
            sh(workspace, "i=0; while [ $i -lt 20000 ]; do echo line$i; i=$((i+1)); done"),
            TaskSpec(command="head", cwd=workspace, args=("-n", "1")),
        )

        launched = await launch_pipeline(pipeline, runner, [collector])

        assert await launched.wait() == 0
        assert collector.decode("head")[0] == "line0\n"

    @pytest.mark.asyncio
    async def test_completion_called_with_source_status(
        self, workspace: Path, runner: ProcessRunner
    ):
        seen: list[int] = []
        pipeline = Pipeline.of(
            sh(workspace, "exit 4"),
            TaskSpec(command="cat", cwd=workspace),
        )

        launched = await launch_pipeline(pipeline, runner, completion=seen.append)
        await launched.wait()

        assert seen == [4]

    @pytest.mark.asyncio
    async def test_registry_empty_after_run(
        self, workspace: Path, runner: ProcessRunner, registry: ChildRegistry
    ):
        pipeline = Pipeline.of(
            sh(workspace, "echo hi"),
            TaskSpec(command="cat", cwd=workspace),
        )

        launched = await launch_pipeline(pipeline, runner)
        assert len(launched.pids) == 2
        await launched.wait()

        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_destination_stdin_bytes_ignored(
        self, workspace: Path, runner: ProcessRunner
    ):
        collector = OutputCollector()
        pipeline = Pipeline.of(
            sh(workspace, "printf piped"),
            TaskSpec(command="cat", cwd=workspace, stdin_bytes=b"ignored"),
        )

        launched = await launch_pipeline(pipeline, runner, [collector])
        await launched.wait()

        assert collector.decode("cat")[0] == "piped"


# =============================================================================
# Failure handling
# =============================================================================


class TestFailure:
    """Fatal stages and launch failures."""

    @pytest.mark.asyncio
    async def test_exit_on_failure_aborts_without_waiting(
        self, workspace: Path, runner: ProcessRunner
    ):
        pipeline = Pipeline.of(
            TaskSpec(command="false", cwd=workspace, exit_on_failure=True),
            TaskSpec(command="sleep", cwd=workspace, args=("30",)),
        )
        launched = await launch_pipeline(pipeline, runner)

        started = time.monotonic()
        with pytest.raises(TaskFailedError):
            await launched.wait()
        assert time.monotonic() - started < 5

        status = await asyncio.wait_for(launched.processes[1].wait(), 5)
        assert status == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_failing_destination_aborts_source(
        self, workspace: Path, runner: ProcessRunner
    ):
        pipeline = Pipeline.of(
            TaskSpec(command="sleep", cwd=workspace, args=("30",)),
            TaskSpec(
                command="sh", cwd=workspace, args=("-c", "exit 2"), exit_on_failure=True
            ),
        )
        launched = await launch_pipeline(pipeline, runner)

        started = time.monotonic()
        with pytest.raises(TaskFailedError):
            await launched.wait()
        assert time.monotonic() - started < 5

        status = await asyncio.wait_for(launched.source.wait(), 5)
        assert status == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_launch_failure_kills_started_stages(
        self,
        workspace: Path,
        tmp_path: Path,
        runner: ProcessRunner,
        registry: ChildRegistry,
    ):
        pipeline = Pipeline.of(
            TaskSpec(command="sleep", cwd=workspace, args=("30",)),
            TaskSpec(command="cat", cwd=tmp_path / "missing"),
        )

        with pytest.raises(TaskLaunchError):
            await launch_pipeline(pipeline, runner)

        async def until_empty() -> None:
            while len(registry):
                await asyncio.sleep(0.05)

        await asyncio.wait_for(until_empty(), 5)
        assert len(registry) == 0


# =============================================================================
# Flow control
# =============================================================================


class TestFlowControl:
    """Upstream reading follows the destination's pace."""

    def test_feeder_pauses_and_resumes_sources(self):
        transport = mock.Mock()
        protocol = _FeedProtocol()
        feeder = StdinFeeder(transport, protocol, name="cat")
        stdout_pump, stderr_pump = mock.Mock(), mock.Mock()
        feeder.throttle([stdout_pump, stderr_pump])

        protocol.pause_writing()
        protocol.pause_writing()
        assert feeder.paused
        stdout_pump.pause_reading.assert_called_once_with()
        stderr_pump.pause_reading.assert_called_once_with()

        protocol.resume_writing()
        assert not feeder.paused
        stdout_pump.resume_reading.assert_called_once_with()
        stderr_pump.resume_reading.assert_called_once_with()

    def test_sources_added_while_paused_start_paused(self):
        protocol = _FeedProtocol()
        feeder = StdinFeeder(mock.Mock(), protocol)
        protocol.pause_writing()

        pump = mock.Mock()
        feeder.throttle([pump])

        pump.pause_reading.assert_called_once_with()

    def test_lost_destination_resumes_sources(self):
        protocol = _FeedProtocol()
        feeder = StdinFeeder(mock.Mock(), protocol)
        pump = mock.Mock()
        feeder.throttle([pump])
        protocol.pause_writing()

        protocol.connection_lost(BrokenPipeError())

        assert not feeder.paused
        pump.resume_reading.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_slow_destination_bounds_buffering(
        self, workspace: Path, runner: ProcessRunner
    ):
        size = 20_000_000
        collector = OutputCollector()
        pipeline = Pipeline.of(
            TaskSpec(command="head", cwd=workspace, args=("-c", str(size), "/dev/zero")),
            sh(workspace, "sleep 1; wc -c"),
        )
        launched = await launch_pipeline(pipeline, runner, [collector])
        peak = 0

        async def sample() -> None:
            nonlocal peak
            while True:
                peak = max(peak, sum(f.buffer_size for f in launched.feeders))
                await asyncio.sleep(0.01)

        sampler = asyncio.create_task(sample())
        try:
            assert await asyncio.wait_for(launched.wait(), 60) == 0
        finally:
            sampler.cancel()

        assert peak < 4 * 1024 * 1024
        assert collector.decode("wc")[0].strip() == str(size)
