"""
Alert Dispatch Worker

Packages detections into AlertMessages and publishes them to the alert
topic, at most once per (machineId, timestamp) within the dedup window.
"""

from typing import Optional

from bottleneck_tracker.core.bus import ACK, Envelope, MessageBus
from bottleneck_tracker.core.config import Config, PipelineConfig
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.core.metrics import metrics
from bottleneck_tracker.pipelines.alerting import DedupCache, build_alert
from bottleneck_tracker.pipelines.models import Detection
from bottleneck_tracker.workers.base import StageWorker, WorkerConfig

logger = get_logger("worker.dispatch", labels={"component": "dispatch-worker"})


class DispatchWorker(StageWorker):
    """
    Alert dispatcher.

    The dedup key is recorded only after the publish succeeds. When the
    retry budget runs out the envelope is nacked, so the bus redelivers the
    detection and the publish is attempted again from scratch.
    """

    def __init__(self, bus: MessageBus, pipeline_config: Optional[PipelineConfig] = None):
        super().__init__(bus, WorkerConfig(
            name="dispatcher",
            topic=Config.DETECTIONS_TOPIC,
            recipient="dispatcher",
        ), pipeline_config)
        self.dedup = DedupCache(
            ttl=self.pipeline_config.dedup_ttl,
            max_size=self.pipeline_config.dedup_max_size,
        )

    async def handle(self, envelope: Envelope):
        alert = build_alert(Detection.from_dict(envelope.payload))

        if self.dedup.seen(alert.dedup_key):
            metrics.alerts_deduplicated.inc()
            logger.info(
                f"Duplicate alert suppressed for {alert.machine_id} at {alert.timestamp}",
                extra={"labels": {"worker": self.name, "machine_id": alert.machine_id, "attempt": envelope.attempt}},
            )
            return ACK

        await self.publish(
            Config.ALERTS_TOPIC,
            alert.to_dict(),
            key=alert.machine_id,
            message_id=f"{alert.machine_id}:{alert.timestamp}",
        )
        self.dedup.add(alert.dedup_key)

        metrics.alerts_dispatched.labels(severity=alert.severity.value).inc()
        logger.warning(
            f"[ALERT] [{alert.severity.value.upper()}] {alert.machine_id}: {', '.join(sorted(alert.reasons))}",
            extra={"labels": {"worker": self.name, "machine_id": alert.machine_id, "severity": alert.severity.value}},
        )
        return ACK
