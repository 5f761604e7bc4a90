"""Runtime module for child process orchestration.

This module provides process launching with streamed output, pipelines
between stages, and the watchdog sidecar that keeps children from
outliving their host.
"""

from __future__ import annotations

from .consumers import OutputCollector, print_to_parent, write_to_handle
from .pipeline import LaunchedPipeline, Pipeline, StdinFeeder, launch_pipeline
from .process_runner import ProcessRunner, RunningProcess, TaskSpec
from .pump import Consumer, StreamPump
from .sidecar import WatchdogLauncher

__all__ = [
    "Consumer",
    "LaunchedPipeline",
    "OutputCollector",
    "Pipeline",
    "ProcessRunner",
    "RunningProcess",
    "StdinFeeder",
    "StreamPump",
    "TaskSpec",
    "WatchdogLauncher",
    "launch_pipeline",
    "print_to_parent",
    "write_to_handle",
]
