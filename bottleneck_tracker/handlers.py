"""
Pipeline Wiring

Connects the stage workers on one bus (combined mode).
In worker mode each stage runs alone; see main.py.
"""

import asyncio
from typing import Callable, Optional

from bottleneck_tracker.core.bus import InMemoryBus, MessageBus
from bottleneck_tracker.core.config import Config, PipelineConfig
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.pipelines.models import AggregateStatistics, AlertMessage
from bottleneck_tracker.sinks.jsonl import AggregateSink, JsonlAggregateSink
from bottleneck_tracker.workers.aggregation_worker import AggregationWorker
from bottleneck_tracker.workers.base import StageWorker
from bottleneck_tracker.workers.detection_worker import DetectionWorker
from bottleneck_tracker.workers.dispatch_worker import DispatchWorker
from bottleneck_tracker.workers.ingestion_worker import IngestionWorker
from bottleneck_tracker.workers.notifier_worker import NotifierWorker
from bottleneck_tracker.workers.sink_worker import SinkWorker

logger = get_logger("handlers", labels={"component": "handlers"})


class PipelineRunner:
    """
    Runs every stage against one bus.

    Example:
        runner = create_default_runner()
        runner.on_alert(lambda alert: print(alert.machine_id))
        await runner.start()
        await runner.ingest({"machineId": "M-1", "timestamp": 1718000000000, "runtime": 42.0, "status": "normal"})
        await runner.drain()
        await runner.stop()
    """

    def __init__(self, bus: MessageBus, pipeline_config: Optional[PipelineConfig] = None, sink: Optional[AggregateSink] = None):
        self.bus = bus
        self.pipeline_config = (pipeline_config or PipelineConfig()).validate()

        self.ingestion = IngestionWorker(bus, self.pipeline_config)
        self.aggregator = AggregationWorker(bus, self.pipeline_config)
        self.detector = DetectionWorker(bus, self.pipeline_config)
        self.dispatcher = DispatchWorker(bus, self.pipeline_config)
        self.notifier = NotifierWorker(bus, self.pipeline_config)
        self.workers: list[StageWorker] = [self.ingestion, self.aggregator, self.detector, self.dispatcher, self.notifier]

        self.sink_worker: Optional[SinkWorker] = None
        if sink is not None:
            self.sink_worker = SinkWorker(bus, sink, self.pipeline_config)
            self.workers.append(self.sink_worker)

    def on_alert(self, handler: Callable[[AlertMessage], None]):
        """Register a callback for every alert the notifier receives."""
        self.notifier.on_alert(handler)

    async def start(self):
        # Downstream first so no stage publishes into a topic nobody listens on yet
        for worker in reversed(self.workers):
            await worker.start()
        logger.info(f"Started {len(self.workers)} stages: {[w.name for w in self.workers]}")

    async def stop(self):
        for worker in self.workers:
            await worker.stop()

    @property
    def failure(self) -> Optional[BaseException]:
        """First error that stopped a stage, if any."""
        for worker in self.workers:
            if worker.failure is not None:
                return worker.failure
        return None

    async def wait_for_failure(self):
        """Block until any stage stops on its own."""
        waits = [asyncio.ensure_future(w.wait_for_shutdown()) for w in self.workers]
        try:
            await asyncio.wait(waits, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waits:
                waiter.cancel()

    async def ingest(self, payload) -> str:
        """Publish one raw payload as if it came from a collector."""
        return await self.bus.publish(Config.RAW_TOPIC, payload)

    async def drain(self):
        """Wait until every in-memory queue is empty. No-op on other buses."""
        if isinstance(self.bus, InMemoryBus):
            await self.bus.join()

    async def flush(self, computed_at: Optional[int] = None) -> list[AggregateStatistics]:
        """Drain, close all partial windows, then drain what they produced."""
        await self.drain()
        closed = await self.aggregator.flush(computed_at)
        await self.drain()
        return closed


def create_default_runner(
    bus: Optional[MessageBus] = None,
    pipeline_config: Optional[PipelineConfig] = None,
    export_path: Optional[str] = None,
) -> PipelineRunner:
    """
    Create a runner on an in-memory bus with a JSONL aggregate sink.

    Customize this for your use case.
    """
    pipeline_config = pipeline_config or PipelineConfig()
    bus = bus or InMemoryBus(
        max_deliveries=pipeline_config.max_deliveries,
        handler_timeout=pipeline_config.handler_timeout,
    )
    sink = JsonlAggregateSink(export_path or Config.EXPORT_JSONL_PATH)
    return PipelineRunner(bus, pipeline_config, sink=sink)
