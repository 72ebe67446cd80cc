"""
Warehouse Loader

Loads a JSONL aggregate export into a SQL table with a fixed schema.
Unknown fields are ignored; the whole job fails once more than
max_bad_records rows are malformed.
"""

import json
import math
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Float, Integer, String, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from bottleneck_tracker.core.errors import PipelineError
from bottleneck_tracker.core.logging import get_logger

logger = get_logger("sinks.warehouse", labels={"component": "warehouse-loader"})

Base = declarative_base()


class MachineMetric(Base):
    __tablename__ = "machine_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    machine_id = Column(String(128), nullable=False, index=True)
    avg_runtime = Column(Float, nullable=False)
    max_runtime = Column(Float, nullable=False)
    bottleneck_ratio = Column(Float, nullable=False)
    bottleneck_score = Column(Float, nullable=False)
    alert = Column(Boolean, nullable=False)
    timestamp_ms = Column(BigInteger, nullable=False)
    recorded_at = Column(DateTime(timezone=True), nullable=False)


class LoadError(PipelineError):
    def __init__(self, path: str, bad_rows: int, allowed: int):
        self.path = path
        self.bad_rows = bad_rows
        self.allowed = allowed
        super().__init__(f"load of {path} failed: {bad_rows} bad row(s), {allowed} allowed")


def _number(row: dict, field: str) -> float:
    value = row[field]
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValueError(f"{field} must be a finite number")
    return float(value)


def row_to_metric(row: dict) -> MachineMetric:
    """Map one JSONL row onto the table. Raises KeyError/ValueError on bad rows."""
    machine_id = row["machineId"]
    if not isinstance(machine_id, str) or not machine_id:
        raise ValueError("machineId must be a non-empty string")
    alert = row["alert"]
    if not isinstance(alert, bool):
        raise ValueError("alert must be a boolean")
    timestamp = row["timestamp"]
    if isinstance(timestamp, bool) or not isinstance(timestamp, int) or timestamp <= 0:
        raise ValueError("timestamp must be a positive integer")

    return MachineMetric(
        machine_id=machine_id,
        avg_runtime=_number(row, "avgRuntime"),
        max_runtime=_number(row, "maxRuntime"),
        bottleneck_ratio=_number(row, "bottleneckRatio"),
        bottleneck_score=_number(row, "bottleneckScore"),
        alert=alert,
        timestamp_ms=timestamp,
        recorded_at=datetime.fromtimestamp(timestamp / 1000, tz=timezone.utc),
    )


class WarehouseLoader:
    """
    Example:
        loader = WarehouseLoader("sqlite:///metrics.db")
        loaded = loader.load_jsonl("exports/aggregates.jsonl")
    """

    def __init__(self, url: str, max_bad_records: int = 1):
        self.engine = create_engine(url)
        self.Session = sessionmaker(bind=self.engine)
        self.max_bad_records = max_bad_records
        Base.metadata.create_all(self.engine, tables=[MachineMetric.__table__])

    def load_jsonl(self, path: str) -> int:
        """Insert every valid row of path in one transaction. Returns rows loaded."""
        metrics_rows: list[MachineMetric] = []
        bad_rows = 0

        with open(path, encoding="utf-8") as source:
            for line_no, line in enumerate(source, start=1):
                if not line.strip():
                    continue
                try:
                    row = json.loads(line)
                    if not isinstance(row, dict):
                        raise ValueError("row must be an object")
                    metrics_rows.append(row_to_metric(row))
                except (KeyError, ValueError) as e:
                    bad_rows += 1
                    logger.warning(f"Bad row {line_no} in {path}: {e}", extra={"labels": {"path": path}})
                    if bad_rows > self.max_bad_records:
                        raise LoadError(path, bad_rows, self.max_bad_records)

        # One transaction: rolled back as a whole if any insert fails
        with self.Session() as session, session.begin():
            session.add_all(metrics_rows)

        logger.info(f"Loaded {len(metrics_rows)} rows from {path} ({bad_rows} skipped)")
        return len(metrics_rows)

    def count(self, machine_id: Optional[str] = None) -> int:
        with self.Session() as session:
            query = session.query(MachineMetric)
            if machine_id is not None:
                query = query.filter(MachineMetric.machine_id == machine_id)
            return query.count()
