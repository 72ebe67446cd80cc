#!/usr/bin/env python3
"""
Machine Telemetry Simulator - Generates synthetic runtime records

Cycles through three machines (M-0, M-1, M-2) with a uniformly random
runtime in [0, 150) minutes; anything above 100 is reported as "slow".

Usage:
    python -m bottleneck_tracker.simulator --count 30
    SIM_INTERVAL_MS=500 python -m bottleneck_tracker.simulator --count 0   # forever
"""

import argparse
import asyncio
import os
import random
import time
from typing import Iterator, Optional

from bottleneck_tracker.core.bus import MessageBus
from bottleneck_tracker.core.config import Config
from bottleneck_tracker.core.errors import ConfigurationError
from bottleneck_tracker.core.logging import get_logger

logger = get_logger("simulator", labels={"component": "simulator"})

MACHINE_COUNT = 3
MAX_RUNTIME = 150.0
SLOW_RUNTIME = 100.0
INTERVAL_MS = int(os.getenv("SIM_INTERVAL_MS", "100"))


class Simulator:
    def __init__(self, machines: int = MACHINE_COUNT, rng: Optional[random.Random] = None, start_ms: Optional[int] = None):
        self.machines = machines
        self.rng = rng or random.Random()
        self._last_ts = (start_ms or int(time.time() * 1000)) - 1
        self.count = 0

    def _next_timestamp(self) -> int:
        # Strictly increasing: two records with the same (machine, ts) collapse downstream
        self._last_ts = max(self._last_ts + 1, int(time.time() * 1000))
        return self._last_ts

    def next_record(self) -> dict:
        runtime = self.rng.random() * MAX_RUNTIME
        record = {
            "machineId": f"M-{self.count % self.machines}",
            "timestamp": self._next_timestamp(),
            "runtime": runtime,
            "status": "slow" if runtime > SLOW_RUNTIME else "normal",
        }
        self.count += 1
        return record

    def records(self, count: int) -> Iterator[dict]:
        """Yield `count` records, or forever when count is 0."""
        produced = 0
        while count == 0 or produced < count:
            yield self.next_record()
            produced += 1


async def publish_records(
    bus: MessageBus,
    count: int,
    interval: float = INTERVAL_MS / 1000.0,
    topic: Optional[str] = None,
    simulator: Optional[Simulator] = None,
) -> int:
    """Publish simulated records to the raw topic. Returns how many were sent."""
    topic = topic or Config.RAW_TOPIC
    simulator = simulator or Simulator()
    sent = 0
    for record in simulator.records(count):
        await bus.publish(topic, record)
        sent += 1
        if sent % 20 == 0:
            logger.info(f"Sent {sent} records | {record['machineId']} runtime={record['runtime']:.1f}")
        if interval:
            await asyncio.sleep(interval)
    return sent


def main():
    from bottleneck_tracker.core.broker import KafkaBus

    parser = argparse.ArgumentParser(description="Machine telemetry simulator")
    parser.add_argument("--count", "-n", type=int, default=30, help="Records to send (0 = run forever)")
    parser.add_argument("--interval", type=float, default=INTERVAL_MS / 1000.0, help="Seconds between records")
    args = parser.parse_args()

    async def run():
        bus = KafkaBus(Config.require("KAFKA_BOOTSTRAP_SERVERS"), group_prefix=Config.KAFKA_GROUP_PREFIX)
        await bus.connect()
        try:
            sent = await publish_records(bus, args.count, args.interval)
            logger.info(f"Simulator finished, {sent} records sent to {Config.RAW_TOPIC}")
        finally:
            await bus.close()

    try:
        asyncio.run(run())
    except ConfigurationError as e:
        logger.error(f"Cannot start simulator: {e}", extra={"labels": {"parameter": e.parameter}})
        raise SystemExit(2)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
