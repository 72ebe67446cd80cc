"""
Message Bus

Publish/subscribe contract shared by every stage, plus an in-process
implementation used for combined mode and tests.

Delivery is at-least-once. Handlers return Ack, Nack or Retry(delay);
exceptions and timeouts count as Nack. Messages sharing a partition key
are handed out one at a time, in arrival order. Different keys flow
concurrently.

Addressing:
    subscribe(topic, handler)                     # broadcast, sees every message
    subscribe(topic, handler, recipient="name")   # point-to-point, competing consumers
"""

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Optional, Union

from bottleneck_tracker.core.errors import HandlerFault, PublishError
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.core.metrics import metrics

logger = get_logger("core.bus", labels={"component": "bus"})


@dataclass(frozen=True)
class Envelope:
    """Transport wrapper around a payload. Owned by the bus."""
    id: str
    topic: str
    payload: Any
    key: Optional[str] = None
    attempt: int = 1
    ack_token: Any = None


@dataclass(frozen=True)
class Ack:
    pass


@dataclass(frozen=True)
class Nack:
    pass


@dataclass(frozen=True)
class Retry:
    delay: float = 1.0


ACK = Ack()
NACK = Nack()

HandlerResult = Union[Ack, Nack, Retry]
Handler = Callable[[Envelope], Awaitable[Optional[HandlerResult]]]


class Subscription(ABC):
    """
    Handle returned by MessageBus.subscribe().

    receive() blocks until an envelope is available and is cancellable.
    dispatch() runs the handler and settles the envelope.
    """

    def __init__(
        self,
        topic: str,
        handler: Handler,
        recipient: Optional[str] = None,
        handler_timeout: float = 30.0,
    ):
        self.topic = topic
        self.handler = handler
        self.recipient = recipient
        self.handler_timeout = handler_timeout

    @property
    def name(self) -> str:
        return self.recipient or f"{self.topic}:broadcast"

    @abstractmethod
    async def receive(self) -> Envelope:
        """Wait for the next deliverable envelope."""

    @abstractmethod
    async def settle(self, envelope: Envelope, result: HandlerResult) -> None:
        """Apply the handler outcome to the transport."""

    @abstractmethod
    async def close(self) -> None:
        pass

    async def dispatch(self, envelope: Envelope) -> HandlerResult:
        """Run the handler with a timeout, then ack/nack/retry the envelope."""
        try:
            result = await asyncio.wait_for(self.handler(envelope), self.handler_timeout)
        except asyncio.CancelledError:
            # Shutdown mid-handler: give the envelope back before unwinding
            await self.settle(envelope, NACK)
            raise
        except asyncio.TimeoutError:
            metrics.handler_faults.labels(stage=self.name).inc()
            logger.error(
                f"Handler timed out after {self.handler_timeout}s on {envelope.id}",
                extra={"labels": {"topic": envelope.topic, "attempt": envelope.attempt}},
            )
            result = NACK
        except Exception as e:
            fault = HandlerFault(self.name, envelope.id, e)
            metrics.handler_faults.labels(stage=self.name).inc()
            logger.error(str(fault), exc_info=True, extra={"labels": {"topic": envelope.topic, "attempt": envelope.attempt}})
            result = NACK

        if result is None:
            result = ACK
        await self.settle(envelope, result)
        return result


class MessageBus(ABC):
    """Transport contract used for external topics and stage hand-off."""

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    @abstractmethod
    async def publish(
        self,
        topic: str,
        payload: Any,
        key: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> str:
        """
        Publish a payload. Returns the message id.

        Raises PublishError when the transport rejects the message.
        The caller must not mutate the payload afterwards.
        """

    @abstractmethod
    async def subscribe(
        self,
        topic: str,
        handler: Handler,
        recipient: Optional[str] = None,
    ) -> Subscription:
        """Attach a handler. recipient=None means broadcast."""


class _DeliveryQueue:
    """
    Pending and in-flight envelopes for one consumer group.

    A slot is a partition key (or a private slot for unkeyed messages).
    At most one envelope per slot is in flight.
    """

    def __init__(self, topic: str, group: str, max_deliveries: int):
        self.topic = topic
        self.group = group
        self.max_deliveries = max_deliveries
        self.members = 0
        self.dead_letters: list[Envelope] = []

        self._seq = 0
        self._pending: dict[Any, deque] = {}
        self._in_flight: set = set()
        self._cond = asyncio.Condition()
        self._idle = asyncio.Event()
        self._idle.set()
        self._timers: set[asyncio.Task] = set()

    @property
    def idle(self) -> asyncio.Event:
        return self._idle

    def _refresh_idle(self):
        if self._pending or self._in_flight:
            self._idle.clear()
        else:
            self._idle.set()

    async def put(self, envelope: Envelope, raw: str) -> None:
        async with self._cond:
            self._seq += 1
            slot = envelope.key if envelope.key is not None else ("", self._seq)
            self._pending.setdefault(slot, deque()).append((self._seq, envelope, raw))
            self._refresh_idle()
            self._cond.notify_all()

    def _next_slot(self):
        best = None
        for slot, items in self._pending.items():
            if slot in self._in_flight:
                continue
            if best is None or items[0][0] < self._pending[best][0][0]:
                best = slot
        return best

    async def get(self) -> Envelope:
        async with self._cond:
            slot = self._next_slot()
            while slot is None:
                await self._cond.wait()
                slot = self._next_slot()

            items = self._pending[slot]
            seq, envelope, raw = items.popleft()
            if not items:
                del self._pending[slot]
            self._in_flight.add(slot)
            self._refresh_idle()
            # Fresh decode per delivery so a handler cannot alter a redelivery
            return replace(envelope, payload=json.loads(raw), ack_token=(slot, seq, raw))

    async def settle(self, envelope: Envelope, result: HandlerResult) -> None:
        slot, seq, raw = envelope.ack_token
        async with self._cond:
            if slot not in self._in_flight:
                logger.warning(f"Settle for envelope {envelope.id} that is not in flight", extra={"labels": {"topic": self.topic}})
                return

            if isinstance(result, Retry):
                # Slot stays blocked until the delay elapses to keep key order
                task = asyncio.create_task(self._requeue_later(envelope, slot, seq, raw, result.delay))
                self._timers.add(task)
                task.add_done_callback(self._timers.discard)
                return

            if isinstance(result, Nack):
                self._requeue(envelope, slot, seq, raw)
            self._in_flight.discard(slot)
            self._refresh_idle()
            self._cond.notify_all()

    def _requeue(self, envelope: Envelope, slot, seq: int, raw: str) -> None:
        if envelope.attempt >= self.max_deliveries:
            self.dead_letters.append(envelope)
            metrics.dead_letters.labels(topic=self.topic).inc()
            logger.error(
                f"Dead-lettered {envelope.id} after {envelope.attempt} deliveries",
                extra={"labels": {"topic": self.topic, "group": self.group, "key": envelope.key}},
            )
            return
        metrics.redeliveries.labels(topic=self.topic).inc()
        redelivery = replace(envelope, attempt=envelope.attempt + 1, ack_token=None)
        self._pending.setdefault(slot, deque()).appendleft((seq, redelivery, raw))

    async def _requeue_later(self, envelope: Envelope, slot, seq: int, raw: str, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._cond:
            self._requeue(envelope, slot, seq, raw)
            self._in_flight.discard(slot)
            self._refresh_idle()
            self._cond.notify_all()

    def cancel_timers(self) -> None:
        for task in list(self._timers):
            task.cancel()


class InMemorySubscription(Subscription):
    def __init__(self, bus: "InMemoryBus", queue: _DeliveryQueue, **kwargs):
        super().__init__(**kwargs)
        self._bus = bus
        self._queue = queue
        self._closed = False

    @property
    def dead_letters(self) -> list[Envelope]:
        return self._queue.dead_letters

    async def receive(self) -> Envelope:
        return await self._queue.get()

    async def settle(self, envelope: Envelope, result: HandlerResult) -> None:
        await self._queue.settle(envelope, result)

    async def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._bus._detach(self._queue)


class InMemoryBus(MessageBus):
    """
    In-process bus.

    Each consumer group gets its own copy of every message published to
    its topic. Messages published to a topic with no subscribers are dropped.
    """

    def __init__(self, max_deliveries: int = 10, handler_timeout: float = 30.0):
        self.max_deliveries = max_deliveries
        self.handler_timeout = handler_timeout
        self._groups: dict[str, dict[str, _DeliveryQueue]] = {}
        self._closed = False

    async def publish(self, topic, payload, key=None, message_id=None) -> str:
        if self._closed:
            raise PublishError(topic, "bus is closed")
        try:
            raw = json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise PublishError(topic, f"payload is not serializable: {e}")

        message_id = message_id or uuid.uuid4().hex
        envelope = Envelope(id=message_id, topic=topic, payload=None, key=key)
        for queue in list(self._groups.get(topic, {}).values()):
            await queue.put(envelope, raw)
        return message_id

    async def subscribe(self, topic, handler, recipient=None) -> InMemorySubscription:
        group = recipient or f"broadcast-{uuid.uuid4().hex[:8]}"
        groups = self._groups.setdefault(topic, {})
        queue = groups.get(group)
        if queue is None:
            queue = groups[group] = _DeliveryQueue(topic, group, self.max_deliveries)
        queue.members += 1
        return InMemorySubscription(
            self,
            queue,
            topic=topic,
            handler=handler,
            recipient=recipient,
            handler_timeout=self.handler_timeout,
        )

    def _detach(self, queue: _DeliveryQueue) -> None:
        queue.members -= 1
        if queue.members <= 0:
            queue.cancel_timers()
            self._groups.get(queue.topic, {}).pop(queue.group, None)

    async def join(self) -> None:
        """Wait until every group has nothing pending or in flight."""
        while True:
            queues = [q for groups in self._groups.values() for q in groups.values()]
            if all(q.idle.is_set() for q in queues):
                return
            await asyncio.gather(*(q.idle.wait() for q in queues))

    async def close(self) -> None:
        self._closed = True
        for groups in self._groups.values():
            for queue in groups.values():
                queue.cancel_timers()
