"""
Notifier Worker

Terminal consumer of the alert topic. Renders each alert to the log,
calls any registered forwarders, and emits a periodic heartbeat.
Rendering the same alert twice is harmless.
"""

from collections import deque
from datetime import datetime, timezone
from typing import Callable, Optional

from bottleneck_tracker.core.bus import ACK, Envelope, MessageBus
from bottleneck_tracker.core.config import Config, PipelineConfig
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.core.metrics import metrics
from bottleneck_tracker.pipelines.models import AlertMessage
from bottleneck_tracker.workers.base import StageWorker, WorkerConfig

logger = get_logger("worker.notifier", labels={"component": "notifier-worker"})


def render_alert(alert: AlertMessage) -> str:
    when = datetime.fromtimestamp(alert.timestamp / 1000, tz=timezone.utc).isoformat()
    return (
        f"Bottleneck alert [{alert.severity.value.upper()}] "
        f"machine={alert.machine_id} at={when} reasons={', '.join(sorted(alert.reasons))}"
    )


class NotifierWorker(StageWorker):
    """
    Alert notifier.

    Forwarders registered with on_alert() run inside the handler; if one
    raises, the envelope is nacked and redelivered, so forwarders must be
    idempotent too.
    """

    def __init__(self, bus: MessageBus, pipeline_config: Optional[PipelineConfig] = None, history: int = 100):
        pipeline_config = pipeline_config or PipelineConfig()
        super().__init__(bus, WorkerConfig(
            name="notifier",
            topic=Config.ALERTS_TOPIC,
            recipient="notifier",
            heartbeat_interval=pipeline_config.heartbeat_interval,
        ), pipeline_config)
        self.recent: deque = deque(maxlen=history)
        self._forwarders: list[Callable[[AlertMessage], None]] = []

    def on_alert(self, forwarder: Callable[[AlertMessage], None]):
        """Register a callback invoked for every received alert."""
        self._forwarders.append(forwarder)

    async def handle(self, envelope: Envelope):
        payload = envelope.payload
        if not isinstance(payload, dict) or str(payload.get("type", "")).lower() != "bottleneck":
            logger.warning(f"Unknown alert type received: {payload!r}", extra={"labels": {"worker": self.name}})
            return ACK

        alert = AlertMessage.from_dict(payload)
        for forwarder in self._forwarders:
            forwarder(alert)

        self.recent.append(alert)
        metrics.alerts_rendered.labels(severity=alert.severity.value).inc()
        logger.warning(render_alert(alert), extra={"labels": {"worker": self.name, "machine_id": alert.machine_id, "severity": alert.severity.value}})
        return ACK
