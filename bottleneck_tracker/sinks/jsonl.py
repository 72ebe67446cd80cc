"""
Line-delimited JSON aggregate sink.

Rows are appended, one JSON object per line, in the fixed column order
machineId, avgRuntime, maxRuntime, bottleneckRatio, bottleneckScore,
alert, timestamp.
"""

import csv
import json
from abc import ABC, abstractmethod
from collections import deque
from pathlib import Path
from typing import Optional

from bottleneck_tracker.core.logging import get_logger

logger = get_logger("sinks.jsonl", labels={"component": "jsonl-sink"})

ROW_FIELDS = ("machineId", "avgRuntime", "maxRuntime", "bottleneckRatio", "bottleneckScore", "alert", "timestamp")


class AggregateSink(ABC):
    @abstractmethod
    def write(self, row: dict, row_id: Optional[str] = None) -> bool:
        """Append one row. Returns False when row_id was already written."""

    def close(self) -> None:
        pass


class JsonlAggregateSink(AggregateSink):
    """
    Append-only JSONL file.

    Remembers the last `remember` row ids so a redelivered aggregate is
    not written twice.
    """

    def __init__(self, path: str, remember: int = 1000):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._recent_ids: deque = deque(maxlen=remember)
        self._file = None
        self.rows_written = 0

    def _handle(self):
        if self._file is None:
            self._file = self.path.open("a", encoding="utf-8")
        return self._file

    def write(self, row: dict, row_id: Optional[str] = None) -> bool:
        if row_id is not None and row_id in self._recent_ids:
            logger.info(f"Skipping duplicate aggregate row {row_id}")
            return False

        ordered = {field: row[field] for field in ROW_FIELDS}
        handle = self._handle()
        handle.write(json.dumps(ordered) + "\n")
        handle.flush()

        if row_id is not None:
            self._recent_ids.append(row_id)
        self.rows_written += 1
        return True

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
        logger.info(f"Closed {self.path} ({self.rows_written} rows)")


def jsonl_to_csv(jsonl_path: str, csv_path: str) -> int:
    """
    Convert a JSONL file to CSV. The header is the union of keys in
    first-seen order; missing values are left empty. Returns the row count.
    """
    headers: list[str] = []
    rows: list[dict] = []
    with open(jsonl_path, encoding="utf-8") as source:
        for line in source:
            line = line.strip()
            if not line:
                continue
            row = json.loads(line)
            for key in row:
                if key not in headers:
                    headers.append(key)
            rows.append(row)

    with open(csv_path, "w", newline="", encoding="utf-8") as target:
        writer = csv.DictWriter(target, fieldnames=headers, restval="")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: "" if v is None else v for k, v in row.items()})

    logger.info(f"Converted {jsonl_path} to {csv_path} ({len(rows)} rows)")
    return len(rows)
