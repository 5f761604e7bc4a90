"""Integration tests driving real host processes.

Test coverage:
- Children die when the host is SIGKILLed (parent watchdog)
- Terminal signals received by the host reach its children
- A background exit-on-failure violation ends the host with status 1
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import pytest

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(sys.platform != "linux", reason="uses /proc"),
]


def _alive(pid: int) -> bool:
    """Exists and is not a zombie."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except OSError:
        return False
    # State follows the parenthesised command name
    return stat.rsplit(")", 1)[1].split()[0] != "Z"


def _wait_dead(pid: int, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not _alive(pid):
            return True
        time.sleep(0.05)
    return not _alive(pid)


def _start_host(fixtures_dir: Path, mode: str) -> subprocess.Popen:
    env = dict(os.environ)
    env["SW_WATCHDOG_INTERVAL"] = "0.2"
    env.pop("SW_WATCHDOG", None)
    env.pop("SW_FORWARD_SIGNALS", None)
    return subprocess.Popen(
        [sys.executable, str(fixtures_dir / "host_script.py"), mode],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        env=env,
    )


def _read_child_pid(host: subprocess.Popen) -> int:
    assert host.stdout is not None
    line = host.stdout.readline()
    assert line, "host exited before reporting its child"
    return int(line)


class TestOrphanProtection:
    """Host death by SIGKILL."""

    def test_child_killed_after_host_sigkill(self, fixtures_dir: Path):
        host = _start_host(fixtures_dir, "orphan")
        child_pid = None
        try:
            child_pid = _read_child_pid(host)
            assert _alive(child_pid)

            host.kill()
            host.wait(timeout=5)

            assert _wait_dead(child_pid, timeout=5)
        finally:
            if host.poll() is None:
                host.kill()
                host.wait()
            if child_pid is not None and _alive(child_pid):
                os.kill(child_pid, signal.SIGKILL)


class TestSignalForwarding:
    """Signals received by the host."""

    def test_sigterm_forwarded_to_child(self, fixtures_dir: Path):
        host = _start_host(fixtures_dir, "forward")
        child_pid = None
        try:
            child_pid = _read_child_pid(host)

            host.send_signal(signal.SIGTERM)

            assert host.wait(timeout=5) == -signal.SIGTERM
            assert _wait_dead(child_pid, timeout=5)
        finally:
            if host.poll() is None:
                host.kill()
                host.wait()
            if child_pid is not None and _alive(child_pid):
                os.kill(child_pid, signal.SIGKILL)


class TestAsyncExitOnFailure:
    """Background exit-on-failure."""

    def test_host_exits_with_status_1(self, fixtures_dir: Path):
        host = _start_host(fixtures_dir, "async-fail")
        try:
            _, stderr = host.communicate(timeout=10)
        finally:
            if host.poll() is None:
                host.kill()
                host.wait()

        assert host.returncode == 1
        assert b"Error: false failed with exit code 1" in stderr
