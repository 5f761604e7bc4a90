#!/usr/bin/env python3
"""Host script driven by the integration tests.

Usage:
    python host_script.py orphan      # start `sleep 60` in the background, print its PID, hang
    python host_script.py forward     # run `sleep 60` in the foreground, print its PID
    python host_script.py async-fail  # background `false` with exit-on-failure, then hang

The child PID is printed on its own line as soon as the child is registered.
"""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from scriptworker import ProcessTask, get_supervisor  # noqa: E402


def print_child_pid() -> None:
    registry = get_supervisor().registry
    while not registry.has_children():
        time.sleep(0.01)
    print(next(iter(registry.snapshot())), flush=True)


def main() -> int:
    mode = sys.argv[1]

    if mode == "orphan":
        ProcessTask("sleep").args(["60"]).run_async()
        print_child_pid()
        time.sleep(60)
    elif mode == "forward":
        threading.Thread(target=print_child_pid, daemon=True).start()
        ProcessTask("sleep").args(["60"]).run()
    elif mode == "async-fail":
        ProcessTask("false").exit_on_failure().run_async()
        time.sleep(10)
    else:
        print(f"unknown mode {mode}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
