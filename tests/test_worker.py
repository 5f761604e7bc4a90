"""ScriptWorker tests."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from scriptworker.supervisor import Supervisor
from scriptworker.worker import ScriptWorker

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX only")


@pytest.fixture
def worker(supervisor: Supervisor, workspace: Path) -> ScriptWorker:
    return ScriptWorker(workspace, supervisor=supervisor)


class TestPaths:
    """Path attributes and the directory stack."""

    def test_default_path_is_cwd(self, workspace: Path, monkeypatch):
        monkeypatch.chdir(workspace)
        assert ScriptWorker().path.resolve() == workspace.resolve()

    def test_directory_exists(self, worker: ScriptWorker, workspace: Path):
        (workspace / "sub").mkdir()
        (workspace / "file.txt").write_text("x")

        assert worker.directory_exists()
        assert worker.directory_exists("sub")
        assert not worker.directory_exists("file.txt")
        assert not worker.directory_exists("missing")

    def test_push_relative_and_pop(self, worker: ScriptWorker, workspace: Path):
        worker.push("sub/../other")
        assert worker.path == workspace / "other"

        worker.pop()
        assert worker.path == workspace

    def test_push_absolute(self, worker: ScriptWorker, tmp_path: Path):
        worker.push(tmp_path)
        assert worker.path == tmp_path

    def test_pop_empty_stack(self, worker: ScriptWorker, capsys):
        with pytest.raises(SystemExit) as exc_info:
            worker.pop()

        assert exc_info.value.code == 1
        assert (
            "Tried to pop directory with an empty directory stack!"
            in capsys.readouterr().err
        )


class TestTasks:
    """Tasks created and launched by the worker."""

    def test_task_runs_in_directory(self, worker: ScriptWorker, workspace: Path):
        status, out, _ = worker.task("pwd").run_for_output()

        assert status == 0
        assert Path(out.strip()).resolve() == workspace.resolve()

    def test_task_runs_in_parent_of_file(self, supervisor: Supervisor, workspace: Path):
        script = workspace / "script.sh"
        script.write_text("")
        worker = ScriptWorker(script, supervisor=supervisor)

        assert worker.task("pwd").cwd == workspace

    def test_launch(self, worker: ScriptWorker):
        assert worker.launch("sh", ["-c", "exit 2"], data_handler=lambda c, o: None) == 2

    def test_launch_prints_by_default(self, worker: ScriptWorker, capsys):
        worker.launch("echo", ["printed"])
        assert capsys.readouterr().out == "printed\n"

    def test_launch_exit_on_failure(self, worker: ScriptWorker):
        with pytest.raises(SystemExit):
            worker.launch("false", exit_on_failure=True)

    def test_launch_for_output(self, worker: ScriptWorker):
        result = worker.launch_for_output(
            "sh", ["-c", 'printf "$NAME"'], environment={"NAME": "worker"}
        )
        assert result == (0, "worker", "")

    def test_launch_background(self, worker: ScriptWorker):
        chunks: list[bytes] = []
        statuses: list[int] = []

        future = worker.launch_background(
            "echo",
            ["bg"],
            data_handler=lambda chunk, is_stdout: chunks.append(chunk),
            termination_handler=statuses.append,
        )

        assert future.result(timeout=10) == 0
        assert b"".join(chunks) == b"bg\n"
        assert statuses == [0]
