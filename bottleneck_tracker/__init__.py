"""
Bottleneck Tracker

Machine telemetry aggregation, bottleneck detection and alert dispatch.
"""

__version__ = "0.1.0"
