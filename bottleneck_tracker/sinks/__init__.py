"""
Aggregate Sinks

Where closed-window rows go once they leave the core pipeline.
"""

from bottleneck_tracker.sinks.jsonl import AggregateSink, JsonlAggregateSink, jsonl_to_csv
from bottleneck_tracker.sinks.warehouse import LoadError, WarehouseLoader

__all__ = ["AggregateSink", "JsonlAggregateSink", "jsonl_to_csv", "LoadError", "WarehouseLoader"]
