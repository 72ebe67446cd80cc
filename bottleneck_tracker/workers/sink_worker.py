"""
Aggregate Sink Worker

Broadcast subscriber that appends every closed-window row to an
aggregate sink (line-delimited JSON by default).
"""

from typing import Optional

from bottleneck_tracker.core.bus import ACK, Envelope, MessageBus
from bottleneck_tracker.core.config import Config, PipelineConfig
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.pipelines.models import AggregateStatistics
from bottleneck_tracker.sinks.jsonl import AggregateSink
from bottleneck_tracker.workers.base import StageWorker, WorkerConfig

logger = get_logger("worker.sink", labels={"component": "sink-worker"})


class SinkWorker(StageWorker):
    def __init__(self, bus: MessageBus, sink: AggregateSink, pipeline_config: Optional[PipelineConfig] = None):
        super().__init__(bus, WorkerConfig(
            name="sink",
            topic=Config.AGGREGATES_TOPIC,
        ), pipeline_config)
        self.sink = sink

    async def handle(self, envelope: Envelope):
        stats = AggregateStatistics.from_dict(envelope.payload)
        self.sink.write(stats.to_sink_row(), row_id=envelope.id)
        return ACK

    async def teardown(self) -> None:
        self.sink.close()
