"""
Kafka Message Bus

aiokafka-backed MessageBus for running stages as separate processes.

- Broadcast subscription: its own consumer group, sees every message
- Point-to-point subscription: shared consumer group named after the recipient
- Partition key = machine id, so one machine's messages stay ordered
- Ack commits the offset; Nack/Retry seek back so the message is fetched again
"""

import json
import asyncio
import uuid
from enum import Enum
from typing import Any, Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError

from bottleneck_tracker.core.bus import (
    Ack,
    Envelope,
    HandlerResult,
    MessageBus,
    Nack,
    Retry,
    Subscription,
)
from bottleneck_tracker.core.errors import PublishError
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.core.metrics import metrics

logger = get_logger("core.broker", labels={"component": "broker"})

MESSAGE_ID_HEADER = "message-id"


class StartFrom(Enum):
    """Where a new consumer group starts."""
    EARLIEST = "earliest"  # replay from beginning
    LATEST = "latest"      # only new messages


def decode_value(value: Optional[bytes]) -> Any:
    """JSON when possible, raw text otherwise (the ingestion adapter rejects it)."""
    if value is None:
        return None
    text = value.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


class KafkaSubscription(Subscription):
    """
    One consumer, one envelope in flight at a time.

    Serial handling keeps per-partition order; scale out by adding
    processes to the same recipient group.
    """

    def __init__(
        self,
        servers: str,
        group_id: str,
        start_from: StartFrom,
        max_deliveries: int,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.servers = servers
        self.group_id = group_id
        self.start_from = start_from
        self.max_deliveries = max_deliveries
        self.consumer: Optional[AIOKafkaConsumer] = None
        self._slot = asyncio.Semaphore(1)
        self._attempts: dict[tuple[TopicPartition, int], int] = {}

    async def start(self) -> None:
        self.consumer = AIOKafkaConsumer(
            self.topic,
            bootstrap_servers=self.servers,
            group_id=self.group_id,
            auto_offset_reset=self.start_from.value,
            enable_auto_commit=False,
        )
        await self.consumer.start()
        logger.info(f"Subscribed to {self.topic} (group: {self.group_id})", extra={"labels": {"topic": self.topic, "group": self.group_id}})

    async def receive(self) -> Envelope:
        await self._slot.acquire()
        try:
            msg = await self.consumer.getone()
        except BaseException:
            self._slot.release()
            raise

        tp = TopicPartition(msg.topic, msg.partition)
        headers = dict(msg.headers or ())
        message_id = headers.get(MESSAGE_ID_HEADER)
        message_id = message_id.decode() if message_id else f"{msg.topic}:{msg.partition}:{msg.offset}"
        return Envelope(
            id=message_id,
            topic=msg.topic,
            payload=decode_value(msg.value),
            key=msg.key.decode() if msg.key else None,
            attempt=self._attempts.get((tp, msg.offset), 0) + 1,
            ack_token=(tp, msg.offset),
        )

    async def settle(self, envelope: Envelope, result: HandlerResult) -> None:
        tp, offset = envelope.ack_token
        try:
            if isinstance(result, Ack):
                await self._commit(tp, offset)
                return

            if isinstance(result, Retry):
                await asyncio.sleep(result.delay)

            if envelope.attempt >= self.max_deliveries:
                metrics.dead_letters.labels(topic=self.topic).inc()
                logger.error(
                    f"Dead-lettered {envelope.id} after {envelope.attempt} deliveries",
                    extra={"labels": {"topic": self.topic, "group": self.group_id, "key": envelope.key}},
                )
                await self._commit(tp, offset)
                return

            self._attempts[(tp, offset)] = envelope.attempt
            metrics.redeliveries.labels(topic=self.topic).inc()
            self.consumer.seek(tp, offset)
        finally:
            self._slot.release()

    async def _commit(self, tp: TopicPartition, offset: int) -> None:
        self._attempts.pop((tp, offset), None)
        await self.consumer.commit({tp: offset + 1})

    async def close(self) -> None:
        if self.consumer:
            await self.consumer.stop()


class KafkaBus(MessageBus):
    def __init__(
        self,
        bootstrap_servers: str,
        group_prefix: str = "bottleneck",
        start_from: StartFrom = StartFrom.EARLIEST,
        handler_timeout: float = 30.0,
        max_deliveries: int = 10,
    ):
        self.servers = bootstrap_servers
        self.group_prefix = group_prefix
        self.start_from = start_from
        self.handler_timeout = handler_timeout
        self.max_deliveries = max_deliveries
        self.producer: Optional[AIOKafkaProducer] = None
        self._subscriptions: list[KafkaSubscription] = []

    async def connect(self):
        """Connect producer for publishing messages."""
        self.producer = AIOKafkaProducer(
            bootstrap_servers=self.servers,
            value_serializer=lambda v: json.dumps(v).encode(),
            acks="all",
        )
        await self.producer.start()

    async def close(self):
        """Close all connections."""
        for subscription in self._subscriptions:
            await subscription.close()
        if self.producer:
            await self.producer.stop()

    async def publish(self, topic, payload, key=None, message_id=None) -> str:
        """
        Publish message to topic.

        Args:
            topic: Topic name
            payload: Message body (JSON serialized)
            key: Optional partition key (same key = same partition = ordering)
            message_id: Optional stable id carried in a header
        """
        if self.producer is None:
            raise PublishError(topic, "producer not connected")
        message_id = message_id or uuid.uuid4().hex
        key_bytes = key.encode() if key else None
        try:
            await self.producer.send_and_wait(
                topic,
                value=payload,
                key=key_bytes,
                headers=[(MESSAGE_ID_HEADER, message_id.encode())],
            )
        except (KafkaError, TypeError, ValueError) as e:
            raise PublishError(topic, str(e))
        return message_id

    async def subscribe(self, topic, handler, recipient=None) -> KafkaSubscription:
        if recipient:
            group_id = f"{self.group_prefix}.{recipient}"
        else:
            group_id = f"{self.group_prefix}.{topic}.{uuid.uuid4().hex[:8]}"
        subscription = KafkaSubscription(
            self.servers,
            group_id,
            self.start_from,
            self.max_deliveries,
            topic=topic,
            handler=handler,
            recipient=recipient,
            handler_timeout=self.handler_timeout,
        )
        await subscription.start()
        self._subscriptions.append(subscription)
        return subscription
