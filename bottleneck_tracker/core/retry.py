"""
Publish retry with exponential backoff and jitter.

The caller owns idempotence: a retried publish may reach the broker twice,
so publishers pass a deterministic message id where duplicates matter.
"""

import asyncio
import random
from typing import Any, Optional

from bottleneck_tracker.core.bus import MessageBus
from bottleneck_tracker.core.errors import PublishError
from bottleneck_tracker.core.logging import get_logger
from bottleneck_tracker.core.metrics import metrics

logger = get_logger("core.retry", labels={"component": "retry"})

MAX_DELAY = 30.0


def backoff_delay(attempt: int, base: float, jitter: bool = True) -> float:
    """Delay before retry number `attempt` (1-based)."""
    delay = base * (2 ** (attempt - 1))
    if jitter:
        delay = delay * (0.5 + random.random())
    return min(delay, MAX_DELAY)


async def publish_with_retry(
    bus: MessageBus,
    topic: str,
    payload: Any,
    key: Optional[str] = None,
    message_id: Optional[str] = None,
    attempts: int = 3,
    backoff_base: float = 0.5,
    jitter: bool = True,
) -> str:
    """
    Publish, retrying PublishError up to `attempts` total tries.

    Raises:
        PublishError with the total attempt count once the budget is spent.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await bus.publish(topic, payload, key=key, message_id=message_id)
        except PublishError as e:
            if attempt == attempts:
                metrics.publish_failures.labels(topic=topic).inc()
                logger.warning(
                    f"Publish to {topic} failed: attempt {attempt}/{attempts}, exhausted retries ({e.reason})",
                    extra={"labels": {"topic": topic, "key": key}},
                )
                raise PublishError(topic, e.reason, attempts=attempts) from e

            delay = backoff_delay(attempt, backoff_base, jitter)
            metrics.publish_retries.labels(topic=topic).inc()
            logger.info(
                f"Publish to {topic} failed ({e.reason}), retrying in {delay:.2f}s",
                extra={"labels": {"topic": topic, "attempt": attempt}},
            )
            await asyncio.sleep(delay)

    raise PublishError(topic, "no publish attempts configured", attempts=0)
