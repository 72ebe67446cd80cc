"""
Bottleneck Tracker Entry Point

Can run in two modes:
1. Combined mode (default): All stages in one process
2. Worker mode: Run a single stage (one process per stage)

Usage:
    # Combined mode on the in-memory bus, fed by the simulator
    python -m bottleneck_tracker.main --simulate 30

    # Worker mode (BUS_BACKEND=kafka)
    python -m bottleneck_tracker.main --worker aggregator
    python -m bottleneck_tracker.main --worker dispatcher

    # Batch jobs on the aggregate export
    python -m bottleneck_tracker.main --export-csv
    python -m bottleneck_tracker.main --load-warehouse
"""

import argparse
import asyncio
import signal
import sys

from bottleneck_tracker.core.bus import InMemoryBus, MessageBus
from bottleneck_tracker.core.config import Config, PipelineConfig
from bottleneck_tracker.core.errors import ConfigurationError
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.core.metrics import MetricsServer
from bottleneck_tracker.workers.registry import WORKER_REGISTRY

logger = get_logger("main", labels={"component": "main"})


def build_bus(pipeline_config: PipelineConfig) -> MessageBus:
    """Pick the bus from BUS_BACKEND. Raises ConfigurationError."""
    if Config.BUS_BACKEND == "memory":
        return InMemoryBus(
            max_deliveries=pipeline_config.max_deliveries,
            handler_timeout=pipeline_config.handler_timeout,
        )
    if Config.BUS_BACKEND == "kafka":
        from bottleneck_tracker.core.broker import KafkaBus

        return KafkaBus(
            Config.require("KAFKA_BOOTSTRAP_SERVERS"),
            group_prefix=Config.KAFKA_GROUP_PREFIX,
            handler_timeout=pipeline_config.handler_timeout,
            max_deliveries=pipeline_config.max_deliveries,
        )
    raise ConfigurationError("BUS_BACKEND", f"unknown backend {Config.BUS_BACKEND!r}")


def run_combined(pipeline_config: PipelineConfig, simulate: int, interval: float):
    """Run every stage in a single process."""
    from bottleneck_tracker.handlers import create_default_runner
    from bottleneck_tracker.simulator import publish_records

    async def main():
        bus = build_bus(pipeline_config)
        runner = create_default_runner(bus, pipeline_config)
        metrics_server = MetricsServer(Config.METRICS_PORT, health_check=lambda: runner.failure is None)
        metrics_server.start()

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop.set)

        await bus.connect()
        try:
            await runner.start()
            logger.info(f"Bottleneck tracker started (combined mode, {Config.BUS_BACKEND} bus). Consuming from {Config.RAW_TOPIC}...")

            if simulate:
                await publish_records(bus, simulate, interval)
                closed = await runner.flush()
                logger.info(f"Simulation done, flushed {len(closed)} partial window(s)")
            else:
                stopped = asyncio.ensure_future(stop.wait())
                failed = asyncio.ensure_future(runner.wait_for_failure())
                await asyncio.wait([stopped, failed], return_when=asyncio.FIRST_COMPLETED)
                stopped.cancel()
                failed.cancel()
        finally:
            await runner.stop()
            await bus.close()
            metrics_server.stop()

        if runner.failure is not None:
            raise runner.failure

    asyncio.run(main())


def run_worker(worker_name: str, pipeline_config: PipelineConfig):
    """Run a single stage (production mode)."""
    bus = build_bus(pipeline_config)
    worker = WORKER_REGISTRY[worker_name](bus, pipeline_config)
    logger.info(f"Starting worker: {worker_name}")
    asyncio.run(worker.run(Config.METRICS_PORT))


def export_csv():
    from bottleneck_tracker.sinks.jsonl import jsonl_to_csv

    jsonl_to_csv(Config.EXPORT_JSONL_PATH, Config.EXPORT_CSV_PATH)


def load_warehouse():
    from bottleneck_tracker.sinks.warehouse import WarehouseLoader

    loader = WarehouseLoader(Config.require("WAREHOUSE_URL"))
    loader.load_jsonl(Config.EXPORT_JSONL_PATH)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Bottleneck Tracker")
    parser.add_argument(
        "--worker", "-w",
        type=str,
        choices=sorted(WORKER_REGISTRY),
        help="Run a single stage. If not specified, runs combined mode."
    )
    parser.add_argument("--simulate", type=int, default=0, help="Combined mode: feed N simulated records, flush, and exit")
    parser.add_argument("--interval", type=float, default=0.0, help="Seconds between simulated records")
    parser.add_argument("--export-csv", action="store_true", help="Convert the JSONL aggregate export to CSV and exit")
    parser.add_argument("--load-warehouse", action="store_true", help="Load the JSONL aggregate export into WAREHOUSE_URL and exit")

    args = parser.parse_args(argv)

    try:
        pipeline_config = PipelineConfig.from_env()
        if args.export_csv:
            export_csv()
        elif args.load_warehouse:
            load_warehouse()
        elif args.worker:
            run_worker(args.worker, pipeline_config)
        else:
            run_combined(pipeline_config, args.simulate, args.interval)
    except ConfigurationError as e:
        logger.error(f"Refusing to start: {e}", extra={"labels": {"parameter": e.parameter}})
        sys.exit(2)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
