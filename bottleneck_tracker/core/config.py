"""
Configuration

Infrastructure settings come from environment variables (Config).
Detection tuning is an explicit value object (PipelineConfig) handed to
each stage at construction.
"""

import os
from dataclasses import dataclass, asdict

from bottleneck_tracker.core.errors import ConfigurationError


class Config:
    # Bus backend: "memory" (single process) or "kafka"
    BUS_BACKEND = os.getenv("BUS_BACKEND", "memory")

    # Kafka
    KAFKA_BOOTSTRAP_SERVERS = os.getenv("KAFKA_BOOTSTRAP_SERVERS")
    KAFKA_GROUP_PREFIX = os.getenv("KAFKA_GROUP_PREFIX", "bottleneck")

    # Topics
    RAW_TOPIC = os.getenv("RAW_TOPIC", "telemetry.raw")
    RECORDS_TOPIC = os.getenv("RECORDS_TOPIC", "telemetry.records")
    OBSERVATIONS_TOPIC = os.getenv("OBSERVATIONS_TOPIC", "telemetry.observations")
    AGGREGATES_TOPIC = os.getenv("AGGREGATES_TOPIC", "telemetry.aggregates")
    DETECTIONS_TOPIC = os.getenv("DETECTIONS_TOPIC", "bottleneck.detections")
    ALERTS_TOPIC = os.getenv("ALERTS_TOPIC", "bottleneck.alerts")

    # Aggregate export
    EXPORT_JSONL_PATH = os.getenv("EXPORT_JSONL_PATH", "machine_data.jsonl")
    EXPORT_CSV_PATH = os.getenv("EXPORT_CSV_PATH", "machine_data.csv")
    WAREHOUSE_URL = os.getenv("WAREHOUSE_URL")

    # Metrics
    METRICS_PORT = int(os.getenv("METRICS_PORT", "9090"))

    @classmethod
    def require(cls, name: str) -> str:
        """Return a setting or raise ConfigurationError naming it."""
        value = getattr(cls, name, None)
        if value in (None, ""):
            raise ConfigurationError(name)
        return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(name, f"invalid number {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(name, f"invalid integer {raw!r}")


@dataclass(frozen=True)
class PipelineConfig:
    """Tuning shared by the pipeline stages."""
    window_size: int = 10

    # Record tier
    downtime_threshold: float = 20.0
    runtime_threshold: float = 30.0

    # Aggregate tier
    ratio_threshold: float = 0.8
    score_threshold: float = 1.0

    # Publish retry
    retry_budget: int = 3
    retry_backoff: float = 0.5

    # Dispatcher de-duplication
    dedup_ttl: float = 600.0
    dedup_max_size: int = 10_000

    # Receive loop
    handler_timeout: float = 30.0
    heartbeat_interval: float = 10.0
    max_deliveries: int = 10

    def validate(self) -> "PipelineConfig":
        if self.window_size < 1:
            raise ConfigurationError("window_size", "must be >= 1")
        if self.retry_budget < 1:
            raise ConfigurationError("retry_budget", "must be >= 1")
        if self.dedup_max_size < 1:
            raise ConfigurationError("dedup_max_size", "must be >= 1")
        if self.handler_timeout <= 0:
            raise ConfigurationError("handler_timeout", "must be > 0")
        if self.max_deliveries < 1:
            raise ConfigurationError("max_deliveries", "must be >= 1")
        return self

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        defaults = cls()
        return cls(
            window_size=_env_int("WINDOW_SIZE", defaults.window_size),
            downtime_threshold=_env_float("DOWNTIME_THRESHOLD", defaults.downtime_threshold),
            runtime_threshold=_env_float("RUNTIME_THRESHOLD", defaults.runtime_threshold),
            ratio_threshold=_env_float("RATIO_THRESHOLD", defaults.ratio_threshold),
            score_threshold=_env_float("SCORE_THRESHOLD", defaults.score_threshold),
            retry_budget=_env_int("RETRY_BUDGET", defaults.retry_budget),
            retry_backoff=_env_float("RETRY_BACKOFF", defaults.retry_backoff),
            dedup_ttl=_env_float("DEDUP_TTL", defaults.dedup_ttl),
            dedup_max_size=_env_int("DEDUP_MAX_SIZE", defaults.dedup_max_size),
            handler_timeout=_env_float("HANDLER_TIMEOUT", defaults.handler_timeout),
            heartbeat_interval=_env_float("HEARTBEAT_INTERVAL", defaults.heartbeat_interval),
            max_deliveries=_env_int("MAX_DELIVERIES", defaults.max_deliveries),
        ).validate()

    def to_dict(self) -> dict:
        return asdict(self)
