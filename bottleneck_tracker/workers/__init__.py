"""
Stage Workers

One worker per pipeline stage. Each can run as its own process
(--worker mode) or next to the others on one in-memory bus.
"""

from bottleneck_tracker.workers.base import StageWorker, WorkerConfig, WorkerState

__all__ = ["StageWorker", "WorkerConfig", "WorkerState"]
