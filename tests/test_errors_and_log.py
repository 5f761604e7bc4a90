"""Error helpers and action log tests."""

from __future__ import annotations

import io
import logging

import pytest

from scriptworker.config import Config
from scriptworker.errors import (
    OutputDecodeError,
    ScriptWorkerError,
    TaskFailedError,
    TaskMisuseError,
    exit_msg,
    exit_on_error,
)
from scriptworker.log import ActionLog, configure_logging


class TestErrors:
    """Error taxonomy."""

    def test_task_failed_message(self):
        error = TaskFailedError("make", 2)

        assert str(error) == "Error: make failed with exit code 2"
        assert error.command == "make"
        assert error.status == 2
        assert isinstance(error, ScriptWorkerError)

    def test_output_decode_message(self):
        assert str(OutputDecodeError("ls")) == "Failed to read output from command ls"

    def test_exit_msg(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            exit_msg("bad things")

        assert exc_info.value.code == 1
        assert capsys.readouterr().err == "bad things\n"

    def test_exit_on_error_converts(self, capsys):
        with pytest.raises(SystemExit):
            with exit_on_error():
                raise TaskMisuseError("misused")

        assert "misused" in capsys.readouterr().err

    def test_exit_on_error_passes_other_exceptions(self):
        with pytest.raises(KeyError):
            with exit_on_error():
                raise KeyError("x")


class TestActionLog:
    """ActionLog."""

    def test_lines_recorded(self):
        actions = ActionLog()
        actions.log("Running ls")
        actions.log("Running make\nall")

        assert actions.lines == ["Running ls", "Running make all"]

    def test_history_bounded(self):
        actions = ActionLog(history=2)
        for i in range(5):
            actions.log(f"Running {i}")

        assert actions.lines == ["Running 3", "Running 4"]

    def test_echo(self):
        stream = io.StringIO()
        ActionLog(echo=True, stream=stream).log("Running ls")

        assert stream.getvalue() == "Running ls\n"

    def test_emits_log_record(self, caplog):
        with caplog.at_level(logging.INFO, logger="scriptworker.actions"):
            ActionLog().log("Running ls")

        assert [r.getMessage() for r in caplog.records] == ["Running ls"]


class TestConfigureLogging:
    """configure_logging()."""

    def test_default_level(self):
        configure_logging(Config())
        assert logging.getLogger("scriptworker").level == logging.INFO

    def test_debug_file(self, tmp_path):
        log_file = tmp_path / "debug.log"
        configure_logging(Config(log_debug=True, log_file=str(log_file)))
        try:
            assert logging.getLogger("scriptworker").level == logging.DEBUG
        finally:
            logging.getLogger("scriptworker").setLevel(logging.NOTSET)
