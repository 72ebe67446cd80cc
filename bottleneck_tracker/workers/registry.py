# bottleneck_tracker/workers/registry.py
from bottleneck_tracker.core.config import Config
from bottleneck_tracker.sinks.jsonl import JsonlAggregateSink
from bottleneck_tracker.workers.aggregation_worker import AggregationWorker
from bottleneck_tracker.workers.detection_worker import DetectionWorker
from bottleneck_tracker.workers.dispatch_worker import DispatchWorker
from bottleneck_tracker.workers.ingestion_worker import IngestionWorker
from bottleneck_tracker.workers.notifier_worker import NotifierWorker
from bottleneck_tracker.workers.sink_worker import SinkWorker

WORKER_REGISTRY = {
    "ingestion": lambda bus, config: IngestionWorker(bus, config),
    "aggregator": lambda bus, config: AggregationWorker(bus, config),
    "detector": lambda bus, config: DetectionWorker(bus, config),
    "dispatcher": lambda bus, config: DispatchWorker(bus, config),
    "notifier": lambda bus, config: NotifierWorker(bus, config),
    "sink": lambda bus, config: SinkWorker(bus, JsonlAggregateSink(Config.EXPORT_JSONL_PATH), config),
}
