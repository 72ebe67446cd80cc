"""
Alert Building and De-duplication

Turns Detections into AlertMessages and remembers which
(machineId, timestamp) keys were already dispatched.
No infrastructure dependencies - pure data processing.
"""

import time
from collections import OrderedDict
from typing import Callable, Hashable

from bottleneck_tracker.pipelines.detection import severity_for
from bottleneck_tracker.pipelines.models import AlertMessage, Detection


def build_alert(detection: Detection) -> AlertMessage:
    """Package a detection. Detections always carry at least one reason."""
    return AlertMessage(
        machine_id=detection.machine_id,
        timestamp=detection.timestamp,
        reasons=frozenset(detection.reasons),
        severity=severity_for(detection.reasons),
    )


class DedupCache:
    """
    Recently seen keys, bounded by size and age.

    Oldest entries are evicted first once max_size is reached; entries
    older than ttl seconds are treated as unseen.

    Example:
        cache = DedupCache(ttl=600, max_size=10_000)
        if not cache.seen(alert.dedup_key):
            publish(alert)
            cache.add(alert.dedup_key)
    """

    def __init__(self, ttl: float = 600.0, max_size: int = 10_000, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[Hashable, float]" = OrderedDict()

    def _prune(self, now: float):
        cutoff = now - self.ttl
        while self._entries:
            key, added = next(iter(self._entries.items()))
            if added > cutoff:
                break
            self._entries.popitem(last=False)

    def seen(self, key: Hashable) -> bool:
        self._prune(self._clock())
        return key in self._entries

    def add(self, key: Hashable) -> None:
        now = self._clock()
        self._prune(now)
        self._entries.pop(key, None)
        self._entries[key] = now
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        self._prune(self._clock())
        return len(self._entries)

    def clear(self):
        self._entries.clear()
