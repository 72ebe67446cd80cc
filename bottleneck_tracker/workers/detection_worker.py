"""
Detection Worker

Evaluates both rule tiers on each Observation and hands triggered
detections to the Dispatcher. Nothing is emitted when no rule fires.
"""

from typing import Optional

from bottleneck_tracker.core.bus import ACK, Envelope, MessageBus
from bottleneck_tracker.core.config import Config, PipelineConfig
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.core.metrics import metrics
from bottleneck_tracker.pipelines.detection import Thresholds, detect
from bottleneck_tracker.pipelines.models import Observation
from bottleneck_tracker.workers.base import StageWorker, WorkerConfig

logger = get_logger("worker.detection", labels={"component": "detection-worker"})


class DetectionWorker(StageWorker):
    def __init__(self, bus: MessageBus, pipeline_config: Optional[PipelineConfig] = None):
        super().__init__(bus, WorkerConfig(
            name="detector",
            topic=Config.OBSERVATIONS_TOPIC,
            recipient="detector",
        ), pipeline_config)
        self.thresholds = Thresholds.from_config(self.pipeline_config)

    async def handle(self, envelope: Envelope):
        observation = Observation.from_dict(envelope.payload)
        detection = detect(observation, self.thresholds)
        if detection is None:
            return ACK

        for reason in detection.reasons:
            metrics.detections.labels(reason=reason).inc()
        logger.info(
            f"Bottleneck detected on {detection.machine_id}: {', '.join(sorted(detection.reasons))}",
            extra={"labels": {"worker": self.name, "machine_id": detection.machine_id}},
        )
        await self.publish(
            Config.DETECTIONS_TOPIC,
            detection.to_dict(),
            key=detection.machine_id,
            message_id=f"{detection.machine_id}:{detection.timestamp}",
        )
        return ACK
