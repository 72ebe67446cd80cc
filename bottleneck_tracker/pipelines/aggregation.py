"""
Aggregation Pipeline

Per-machine running statistics over a bounded sample window.
No infrastructure dependencies - pure data processing.
"""

from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from bottleneck_tracker.pipelines.models import AggregateStatistics, TelemetryRecord


@dataclass
class SampleWindow:
    """Runtime samples observed since the window opened, in arrival order."""
    size: int
    values: list = field(default_factory=list)

    def add(self, value: float):
        self.values.append(value)

    @property
    def count(self) -> int:
        return len(self.values)

    @property
    def full(self) -> bool:
        return self.count >= self.size

    @property
    def mean(self) -> float:
        return sum(self.values) / self.count if self.count > 0 else 0.0

    @property
    def max(self) -> float:
        # 1 for an empty window so the ratio never divides by zero
        return max(self.values) if self.values else 1.0

    def reset(self):
        self.values.clear()


def compute_statistics(
    machine_id: str,
    values: list,
    computed_at: int,
    alert_rule: Optional[Callable[[AggregateStatistics], bool]] = None,
) -> AggregateStatistics:
    """
    Compute AggregateStatistics for a list of runtimes.

    ratio = avg / max, score = avg / 100. With no samples max is 1,
    so ratio equals avg.
    """
    window = SampleWindow(size=len(values), values=list(values))
    avg = window.mean
    peak = window.max
    ratio = avg / peak if peak else avg
    stats = AggregateStatistics(
        machine_id=machine_id,
        sample_count=window.count,
        avg_runtime=avg,
        max_runtime=peak,
        bottleneck_ratio=ratio,
        bottleneck_score=avg / 100.0,
        alert=False,
        computed_at=computed_at,
    )
    if alert_rule and alert_rule(stats):
        stats = replace(stats, alert=True)
    return stats


class Aggregator:
    """
    Keyed store of sample windows, one per machine.

    A window closes after `window_size` samples; its statistics are
    returned and the window starts over. Samples arriving after a close
    belong to the next window.

    Redelivery of the last applied message for a machine (same message id)
    replays the earlier outcome instead of counting the sample again.

    Example:
        aggregator = Aggregator(window_size=10)
        for record in records:
            stats = aggregator.observe(record)
            if stats:
                print(f"{stats.machine_id} ratio={stats.bottleneck_ratio:.2f}")
    """

    def __init__(
        self,
        window_size: int = 10,
        alert_rule: Optional[Callable[[AggregateStatistics], bool]] = None,
    ):
        """
        Args:
            window_size: Samples per machine before the window closes
            alert_rule: Predicate that sets AggregateStatistics.alert
        """
        self.window_size = window_size
        self.alert_rule = alert_rule
        self._windows: dict[str, SampleWindow] = {}
        self._last_applied: dict[str, tuple[str, Optional[AggregateStatistics]]] = {}
        self._latest_ts: dict[str, int] = {}
        self._windows_closed = 0

    @property
    def name(self) -> str:
        return "aggregator"

    def _window(self, machine_id: str) -> SampleWindow:
        window = self._windows.get(machine_id)
        if window is None:
            window = self._windows[machine_id] = SampleWindow(self.window_size)
        return window

    def observe(self, record: TelemetryRecord, message_id: Optional[str] = None) -> Optional[AggregateStatistics]:
        """Add one sample. Returns statistics when this sample closes the window."""
        machine_id = record.machine_id
        if message_id is not None:
            last = self._last_applied.get(machine_id)
            if last and last[0] == message_id:
                return last[1]

        window = self._window(machine_id)
        window.add(record.runtime_minutes)
        self._latest_ts[machine_id] = max(record.timestamp, self._latest_ts.get(machine_id, 0))

        stats = None
        if window.full:
            stats = self._close(machine_id, window, record.timestamp)

        if message_id is not None:
            self._last_applied[machine_id] = (message_id, stats)
        return stats

    def _close(self, machine_id: str, window: SampleWindow, computed_at: int) -> AggregateStatistics:
        stats = compute_statistics(machine_id, window.values, computed_at, self.alert_rule)
        window.reset()
        self._windows_closed += 1
        return stats

    def flush(self, computed_at: int) -> list[AggregateStatistics]:
        """
        Close every non-empty window early (end of a batch).

        A flushed window is stamped after the newest sample its machine has
        sent, so it never shares a (machine, timestamp) key with a record.
        """
        closed = []
        for machine_id, window in self._windows.items():
            if window.count:
                stamp = max(computed_at, self._latest_ts.get(machine_id, 0) + 1)
                closed.append(self._close(machine_id, window, stamp))
        self._last_applied.clear()
        return closed

    def pending(self, machine_id: str) -> int:
        """Samples waiting in a machine's open window."""
        window = self._windows.get(machine_id)
        return window.count if window else 0

    def get_summary(self) -> dict:
        return {
            "window_size": self.window_size,
            "machines": len(self._windows),
            "windows_closed": self._windows_closed,
            "pending": {m: w.count for m, w in self._windows.items() if w.count},
        }

    def reset(self):
        """Clear all accumulated data."""
        self._windows.clear()
        self._last_applied.clear()
        self._latest_ts.clear()
        self._windows_closed = 0
