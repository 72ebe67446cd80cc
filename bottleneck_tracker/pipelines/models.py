"""
Pipeline Data Model

Immutable values passed between stages. Each type converts to and from
the camelCase wire form used on the bus.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class MachineStatus(str, Enum):
    NORMAL = "normal"
    SLOW = "slow"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> "MachineStatus":
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class TriggerReason(str, Enum):
    HIGH_DOWNTIME = "high-downtime"
    LOW_RUNTIME = "low-runtime"
    RATIO_EXCEEDED = "ratio-exceeded"
    SCORE_EXCEEDED = "score-exceeded"


@dataclass(frozen=True)
class TelemetryRecord:
    machine_id: str
    timestamp: int
    runtime_minutes: float
    downtime_minutes: float = 0.0
    production_count: int = 0
    status: MachineStatus = MachineStatus.UNKNOWN

    def to_dict(self) -> dict:
        return {
            "machineId": self.machine_id,
            "timestamp": self.timestamp,
            "runtime": self.runtime_minutes,
            "downtime": self.downtime_minutes,
            "productionCount": self.production_count,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TelemetryRecord":
        """Rebuild a record that was already validated upstream."""
        return cls(
            machine_id=data["machineId"],
            timestamp=int(data["timestamp"]),
            runtime_minutes=float(data["runtime"]),
            downtime_minutes=float(data.get("downtime", 0.0)),
            production_count=int(data.get("productionCount", 0)),
            status=MachineStatus.parse(data.get("status", "unknown")),
        )


@dataclass(frozen=True)
class AggregateStatistics:
    """
    Statistics for one closed window.

    computed_at is the timestamp of the record that closed the window,
    so recomputing after a redelivery yields the same value.
    """
    machine_id: str
    sample_count: int
    avg_runtime: float
    max_runtime: float
    bottleneck_ratio: float
    bottleneck_score: float
    alert: bool
    computed_at: int

    def to_dict(self) -> dict:
        return {
            "machineId": self.machine_id,
            "sampleCount": self.sample_count,
            "avgRuntime": self.avg_runtime,
            "maxRuntime": self.max_runtime,
            "bottleneckRatio": self.bottleneck_ratio,
            "bottleneckScore": self.bottleneck_score,
            "alert": self.alert,
            "computedAt": self.computed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AggregateStatistics":
        return cls(
            machine_id=data["machineId"],
            sample_count=int(data["sampleCount"]),
            avg_runtime=float(data["avgRuntime"]),
            max_runtime=float(data["maxRuntime"]),
            bottleneck_ratio=float(data["bottleneckRatio"]),
            bottleneck_score=float(data["bottleneckScore"]),
            alert=bool(data["alert"]),
            computed_at=int(data["computedAt"]),
        )

    def to_sink_row(self) -> dict:
        """Row shape expected by the aggregate sinks."""
        return {
            "machineId": self.machine_id,
            "avgRuntime": self.avg_runtime,
            "maxRuntime": self.max_runtime,
            "bottleneckRatio": self.bottleneck_ratio,
            "bottleneckScore": self.bottleneck_score,
            "alert": self.alert,
            "timestamp": self.computed_at,
        }


@dataclass(frozen=True)
class Observation:
    """
    What the Aggregator hands the Detector.

    Normally a record plus the window statistics it closed, if any.
    A flushed window arrives with statistics only.
    """
    record: Optional[TelemetryRecord] = None
    aggregate: Optional[AggregateStatistics] = None

    def __post_init__(self):
        if self.record is None and self.aggregate is None:
            raise ValueError("Observation needs a record or an aggregate")

    @property
    def machine_id(self) -> str:
        return self.record.machine_id if self.record else self.aggregate.machine_id

    @property
    def timestamp(self) -> int:
        return self.record.timestamp if self.record else self.aggregate.computed_at

    def to_dict(self) -> dict:
        return {
            "record": self.record.to_dict() if self.record else None,
            "aggregate": self.aggregate.to_dict() if self.aggregate else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Observation":
        record = data.get("record")
        aggregate = data.get("aggregate")
        return cls(
            record=TelemetryRecord.from_dict(record) if record else None,
            aggregate=AggregateStatistics.from_dict(aggregate) if aggregate else None,
        )


@dataclass(frozen=True)
class Detection:
    machine_id: str
    timestamp: int
    reasons: frozenset

    def to_dict(self) -> dict:
        return {
            "machineId": self.machine_id,
            "timestamp": self.timestamp,
            "reasons": sorted(self.reasons),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Detection":
        return cls(
            machine_id=data["machineId"],
            timestamp=int(data["timestamp"]),
            reasons=frozenset(data["reasons"]),
        )


@dataclass(frozen=True)
class AlertMessage:
    machine_id: str
    timestamp: int
    reasons: frozenset
    severity: Severity = Severity.WARNING

    def __post_init__(self):
        if not self.reasons:
            raise ValueError("AlertMessage requires at least one reason")

    @property
    def dedup_key(self) -> tuple[str, int]:
        return (self.machine_id, self.timestamp)

    def to_dict(self) -> dict:
        reasons = sorted(self.reasons)
        return {
            "type": "bottleneck",
            "machineId": self.machine_id,
            "timestamp": self.timestamp,
            "reason": ", ".join(reasons),
            "reasons": reasons,
            "severity": self.severity.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AlertMessage":
        reasons = data.get("reasons")
        if not reasons and data.get("reason"):
            reasons = [data["reason"]]
        return cls(
            machine_id=data["machineId"],
            timestamp=int(data["timestamp"]),
            reasons=frozenset(reasons or ()),
            severity=Severity(data.get("severity", Severity.WARNING.value)),
        )
