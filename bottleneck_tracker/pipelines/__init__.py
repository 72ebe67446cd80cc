"""
Analysis Pipelines

Pure data processing logic. No knowledge of the bus, metrics, or infrastructure.
Each pipeline takes data in, returns results out.
"""

from bottleneck_tracker.pipelines.models import (
    AggregateStatistics,
    AlertMessage,
    Detection,
    MachineStatus,
    Observation,
    Severity,
    TelemetryRecord,
    TriggerReason,
)
from bottleneck_tracker.pipelines.ingestion import decode_record
from bottleneck_tracker.pipelines.aggregation import Aggregator, compute_statistics
from bottleneck_tracker.pipelines.detection import Thresholds, detect, evaluate, evaluate_record, evaluate_stats
from bottleneck_tracker.pipelines.alerting import DedupCache, build_alert

__all__ = [
    "AggregateStatistics",
    "AlertMessage",
    "Detection",
    "MachineStatus",
    "Observation",
    "Severity",
    "TelemetryRecord",
    "TriggerReason",
    "decode_record",
    "Aggregator",
    "compute_statistics",
    "Thresholds",
    "detect",
    "evaluate",
    "evaluate_record",
    "evaluate_stats",
    "DedupCache",
    "build_alert",
]
