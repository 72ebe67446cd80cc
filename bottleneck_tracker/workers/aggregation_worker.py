"""
Aggregation Worker

Owns the per-machine sample windows. For every record it forwards an
Observation to the Detector; when a window closes it also publishes the
statistics for the aggregate sinks.
"""

import time
from typing import Optional

from bottleneck_tracker.core.bus import ACK, Envelope, MessageBus
from bottleneck_tracker.core.config import Config, PipelineConfig
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.core.metrics import metrics
from bottleneck_tracker.pipelines.aggregation import Aggregator
from bottleneck_tracker.pipelines.detection import Thresholds, evaluate_stats
from bottleneck_tracker.pipelines.models import AggregateStatistics, Observation, TelemetryRecord
from bottleneck_tracker.workers.base import StageWorker, WorkerConfig

logger = get_logger("worker.aggregation", labels={"component": "aggregation-worker"})


class AggregationWorker(StageWorker):
    """
    Aggregation worker.

    Consumes point-to-point so each machine's records reach exactly one
    aggregator, in order. The window map is only touched from handle()
    and flush().
    """

    def __init__(self, bus: MessageBus, pipeline_config: Optional[PipelineConfig] = None):
        super().__init__(bus, WorkerConfig(
            name="aggregator",
            topic=Config.RECORDS_TOPIC,
            recipient="aggregator",
        ), pipeline_config)

        thresholds = Thresholds.from_config(self.pipeline_config)
        self.aggregator = Aggregator(
            window_size=self.pipeline_config.window_size,
            alert_rule=lambda stats: bool(evaluate_stats(stats, thresholds)),
        )

    async def handle(self, envelope: Envelope):
        record = TelemetryRecord.from_dict(envelope.payload)
        stats = self.aggregator.observe(record, message_id=envelope.id)

        if stats is not None:
            await self._emit_aggregate(stats)

        observation = Observation(record=record, aggregate=stats)
        await self.publish(
            Config.OBSERVATIONS_TOPIC,
            observation.to_dict(),
            key=record.machine_id,
            message_id=envelope.id,
        )
        return ACK

    async def _emit_aggregate(self, stats: AggregateStatistics, suffix: str = "aggregate") -> None:
        metrics.windows_closed.labels(machine_id=stats.machine_id).inc()
        metrics.bottleneck_ratio.labels(machine_id=stats.machine_id).set(stats.bottleneck_ratio)
        logger.info(
            f"Window closed for {stats.machine_id}: avg={stats.avg_runtime:.2f} max={stats.max_runtime:.2f} "
            f"ratio={stats.bottleneck_ratio:.2f} score={stats.bottleneck_score:.2f}",
            extra={"labels": {"worker": self.name, "machine_id": stats.machine_id, "alert": stats.alert}},
        )
        await self.publish(
            Config.AGGREGATES_TOPIC,
            stats.to_dict(),
            key=stats.machine_id,
            message_id=f"{stats.machine_id}:{stats.computed_at}:{suffix}",
        )

    async def flush(self, computed_at: Optional[int] = None) -> list[AggregateStatistics]:
        """
        Close every partial window and publish it (end of a batch).

        Call once the record stream is quiet; a flushed window still goes
        through detection, as statistics without a record.
        """
        computed_at = computed_at or int(time.time() * 1000)
        closed = self.aggregator.flush(computed_at)
        for stats in closed:
            await self._emit_aggregate(stats, suffix="flush-aggregate")
            await self.publish(
                Config.OBSERVATIONS_TOPIC,
                Observation(aggregate=stats).to_dict(),
                key=stats.machine_id,
                message_id=f"{stats.machine_id}:{stats.computed_at}:flush-observation",
            )
        return closed
