"""
Stage Worker Base

Each pipeline stage runs as an independent worker that:
- Subscribes to one topic (broadcast or as a named recipient)
- Runs a receive loop: IDLE -> RECEIVING -> PROCESSING -> IDLE
- Settles every envelope with Ack / Nack / Retry
- Can run alone (one process per stage) or next to the other stages

Lifecycle is plain task spawn/cancel: start() subscribes and spawns the
loop, stop() cancels it.
"""

import asyncio
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from bottleneck_tracker.core.bus import NACK, Envelope, HandlerResult, MessageBus, Subscription
from bottleneck_tracker.core.config import Config, PipelineConfig
from bottleneck_tracker.core.errors import PublishError
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.core.metrics import MetricsServer, metrics
from bottleneck_tracker.core.retry import publish_with_retry

logger = get_logger("worker.base", labels={"component": "worker-base"})


class WorkerState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    IDLE = "idle"
    RECEIVING = "receiving"
    PROCESSING = "processing"
    STOPPING = "stopping"


@dataclass
class WorkerConfig:
    """Wiring for a stage worker."""
    name: str
    topic: str

    # None = broadcast; a name = point-to-point, shared by replicas
    recipient: Optional[str] = None

    # Parallel receive loops; the bus still serializes each partition key
    concurrency: int = 1

    # Liveness log interval in seconds; None disables the heartbeat
    heartbeat_interval: Optional[float] = None


class StageWorker(ABC):
    """
    Base class for stage workers.

    Each stage extends this and implements:
    - handle(): process one envelope, return Ack / Nack / Retry
    - Optional: setup(), teardown() for init/cleanup

    Example:
        class DetectionWorker(StageWorker):
            def __init__(self, bus, config):
                super().__init__(bus, WorkerConfig(
                    name="detector",
                    topic="telemetry.observations",
                    recipient="detector",
                ), config)

            async def handle(self, envelope):
                detection = detect(Observation.from_dict(envelope.payload))
                if detection:
                    await self.publish("bottleneck.detections", detection.to_dict())
                return ACK
    """

    def __init__(self, bus: MessageBus, config: WorkerConfig, pipeline_config: Optional[PipelineConfig] = None):
        self.bus = bus
        self.config = config
        self.pipeline_config = pipeline_config or PipelineConfig()
        self.state = WorkerState.STOPPED
        self.subscription: Optional[Subscription] = None
        self._tasks: list[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()
        self._failure: Optional[BaseException] = None

    @property
    def name(self) -> str:
        return self.config.name

    @abstractmethod
    async def handle(self, envelope: Envelope) -> HandlerResult:
        """
        Process a single envelope. Override this.

        Must be safe to run twice for the same envelope: delivery is
        at-least-once. Mutate stage state before returning Ack.
        """

    async def setup(self) -> None:
        """Optional: Called once before the receive loop starts."""
        pass

    async def teardown(self) -> None:
        """Optional: Called once after the receive loop stops."""
        pass

    async def publish(self, topic: str, payload: Any, key: Optional[str] = None, message_id: Optional[str] = None) -> str:
        """Publish downstream with the configured retry budget."""
        return await publish_with_retry(
            self.bus,
            topic,
            payload,
            key=key,
            message_id=message_id,
            attempts=self.pipeline_config.retry_budget,
            backoff_base=self.pipeline_config.retry_backoff,
        )

    async def _handle(self, envelope: Envelope) -> Optional[HandlerResult]:
        """Internal handler wrapper with metrics and publish escalation."""
        try:
            result = await self.handle(envelope)
        except PublishError as e:
            logger.error(
                f"Giving up on envelope {envelope.id}: {e}",
                extra={"labels": {"worker": self.name, "topic": e.topic, "attempt": envelope.attempt}},
            )
            result = NACK
        outcome = type(result).__name__.lower() if result is not None else "ack"
        metrics.messages_processed.labels(stage=self.name, outcome=outcome).inc()
        return result

    @property
    def failure(self) -> Optional[BaseException]:
        """The error that stopped a receive loop, if any."""
        return self._failure

    def _fail(self, error: BaseException, action: str) -> None:
        logger.error(f"{action} failed, stopping: {error}", exc_info=error, extra={"labels": {"worker": self.name}})
        if self._failure is None:
            self._failure = error
        self._shutdown_event.set()

    async def _receive_loop(self) -> None:
        while True:
            self.state = WorkerState.RECEIVING
            try:
                envelope = await self.subscription.receive()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._fail(e, "Receive")
                return

            self.state = WorkerState.PROCESSING
            try:
                await self.subscription.dispatch(envelope)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Settle failed, so the envelope is still unacknowledged
                self._fail(e, f"Settling {envelope.id}")
                return
            self.state = WorkerState.IDLE

    async def _heartbeat(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._failure is not None:
                return
            metrics.heartbeats.labels(stage=self.name).inc()
            logger.info(f"{self.name} is alive ({self.state.value})", extra={"labels": {"worker": self.name}})

    async def start(self) -> None:
        """Subscribe and spawn the receive loop(s)."""
        if self.state != WorkerState.STOPPED:
            return
        self.state = WorkerState.STARTING
        self._shutdown_event.clear()
        self._failure = None
        await self.setup()

        self.subscription = await self.bus.subscribe(self.config.topic, self._handle, recipient=self.config.recipient)
        for i in range(max(1, self.config.concurrency)):
            self._tasks.append(asyncio.create_task(self._receive_loop(), name=f"{self.name}-receive-{i}"))
        if self.config.heartbeat_interval:
            self._tasks.append(asyncio.create_task(self._heartbeat(self.config.heartbeat_interval), name=f"{self.name}-heartbeat"))

        self.state = WorkerState.IDLE
        mode = f"recipient {self.config.recipient}" if self.config.recipient else "broadcast"
        logger.info(f"Started {self.name} on {self.config.topic} ({mode})", extra={"labels": {"worker": self.name, "topic": self.config.topic}})

    async def stop(self) -> None:
        """Cancel the loops and release the subscription."""
        if self.state in (WorkerState.STOPPED, WorkerState.STOPPING):
            return
        self.state = WorkerState.STOPPING
        logger.info("Shutting down...", extra={"labels": {"worker": self.name}})

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.subscription:
            await self.subscription.close()
            self.subscription = None

        await self.teardown()
        self.state = WorkerState.STOPPED
        logger.info("Stopped", extra={"labels": {"worker": self.name}})

    async def wait_for_shutdown(self) -> None:
        """Block until a signal or a failed receive loop asks the worker to stop."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Handle shutdown signals."""
        logger.warning("Shutdown signal received", extra={"labels": {"worker": self.name}})
        self._shutdown_event.set()

    async def run(self, metrics_port: Optional[int] = None) -> None:
        """Standalone entry point: serve metrics, run until signalled."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        port = Config.METRICS_PORT if metrics_port is None else metrics_port
        metrics_server = MetricsServer(port, health_check=lambda: self._failure is None)
        metrics_server.start()

        await self.bus.connect()
        try:
            await self.start()
            await self.wait_for_shutdown()
        finally:
            await self.stop()
            await self.bus.close()
            metrics_server.stop()

        if self._failure is not None:
            raise self._failure
