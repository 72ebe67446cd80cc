"""
Bottleneck Detection

Two rule tiers, evaluated independently and unioned:
- record tier: per telemetry record, low latency
- aggregate tier: per closed window

No infrastructure dependencies - pure functions.
"""

from dataclasses import dataclass
from typing import Optional

from bottleneck_tracker.core.config import PipelineConfig
from bottleneck_tracker.pipelines.models import (
    AggregateStatistics,
    Detection,
    Observation,
    Severity,
    TelemetryRecord,
    TriggerReason,
)


@dataclass(frozen=True)
class Thresholds:
    downtime: float = 20.0
    runtime: float = 30.0
    ratio: float = 0.8
    score: float = 1.0

    @classmethod
    def from_config(cls, config: PipelineConfig) -> "Thresholds":
        return cls(
            downtime=config.downtime_threshold,
            runtime=config.runtime_threshold,
            ratio=config.ratio_threshold,
            score=config.score_threshold,
        )


DEFAULT_THRESHOLDS = Thresholds()


def evaluate_record(record: TelemetryRecord, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> frozenset:
    """Record tier: too much downtime or not enough runtime."""
    reasons = set()
    if record.downtime_minutes > thresholds.downtime:
        reasons.add(TriggerReason.HIGH_DOWNTIME.value)
    if record.runtime_minutes < thresholds.runtime:
        reasons.add(TriggerReason.LOW_RUNTIME.value)
    return frozenset(reasons)


def evaluate_stats(stats: AggregateStatistics, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> frozenset:
    """Aggregate tier: runtimes bunched near the peak, or a high average."""
    reasons = set()
    if stats.bottleneck_ratio > thresholds.ratio:
        reasons.add(TriggerReason.RATIO_EXCEEDED.value)
    if stats.bottleneck_score > thresholds.score:
        reasons.add(TriggerReason.SCORE_EXCEEDED.value)
    return frozenset(reasons)


def evaluate(observation: Observation, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> frozenset:
    """Every matching reason from both tiers. Empty when nothing fires."""
    reasons = frozenset()
    if observation.record is not None:
        reasons = evaluate_record(observation.record, thresholds)
    if observation.aggregate is not None:
        reasons = reasons | evaluate_stats(observation.aggregate, thresholds)
    return reasons


def detect(observation: Observation, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> Optional[Detection]:
    """Build a Detection keyed by the record, or None when no rule fires."""
    reasons = evaluate(observation, thresholds)
    if not reasons:
        return None
    return Detection(
        machine_id=observation.machine_id,
        timestamp=observation.timestamp,
        reasons=reasons,
    )


def severity_for(reasons: frozenset) -> Severity:
    """Several simultaneous conditions escalate to critical."""
    return Severity.CRITICAL if len(reasons) >= 2 else Severity.WARNING
