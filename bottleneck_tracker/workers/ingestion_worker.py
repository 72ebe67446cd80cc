"""
Ingestion Worker

Decodes raw telemetry into TelemetryRecords and hands them to the
Aggregator, keyed by machine id. Malformed payloads are dropped.
"""

from typing import Optional

from bottleneck_tracker.core.bus import ACK, Envelope, MessageBus
from bottleneck_tracker.core.config import Config, PipelineConfig
from bottleneck_tracker.core.errors import DecodeError
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.core.metrics import metrics
from bottleneck_tracker.pipelines.ingestion import decode_record
from bottleneck_tracker.workers.base import StageWorker, WorkerConfig

logger = get_logger("worker.ingestion", labels={"component": "ingestion-worker"})


def record_message_id(machine_id: str, timestamp: int) -> str:
    return f"{machine_id}:{timestamp}"


class IngestionWorker(StageWorker):
    """
    Ingestion adapter.

    A payload that fails validation will not become valid on retry,
    so it is logged and acknowledged rather than redelivered.
    """

    def __init__(self, bus: MessageBus, pipeline_config: Optional[PipelineConfig] = None, recipient: Optional[str] = None):
        super().__init__(bus, WorkerConfig(
            name="ingestion",
            topic=Config.RAW_TOPIC,
            recipient=recipient,
        ), pipeline_config)
        self.output_topic = Config.RECORDS_TOPIC

    async def handle(self, envelope: Envelope):
        try:
            record = decode_record(envelope.payload)
        except DecodeError as e:
            metrics.decode_failures.labels(field=e.field or "payload").inc()
            logger.warning(
                f"Dropping malformed payload: {e}",
                extra={"labels": {"worker": self.name, "envelope": envelope.id, "payload": repr(envelope.payload)[:500]}},
            )
            return ACK

        await self.publish(
            self.output_topic,
            record.to_dict(),
            key=record.machine_id,
            message_id=record_message_id(record.machine_id, record.timestamp),
        )
        logger.debug(f"Accepted record for {record.machine_id}", extra={"labels": {"worker": self.name, "machine_id": record.machine_id}})
        return ACK
