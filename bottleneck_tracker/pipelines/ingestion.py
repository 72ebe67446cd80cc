"""
Ingestion Adapter

Turns raw transport payloads into TelemetryRecords.
No infrastructure dependencies - pure data processing.

Accepted inputs:
    {"machineId": "M-1", "timestamp": 1718000000000, "runtime": 42.0, "status": "normal"}
    '{"machineId": "M-1", ...}'              # JSON text or bytes
    'M-1,1718000000000,42.0,normal'          # collector CSV line
"""

import json
import math
from typing import Any

from bottleneck_tracker.core.errors import DecodeError
from bottleneck_tracker.pipelines.models import MachineStatus, TelemetryRecord

CSV_FIELDS = ("machineId", "timestamp", "runtime", "status")


def _require(data: dict, field: str) -> Any:
    if field not in data or data[field] is None:
        raise DecodeError(f"missing field '{field}'", payload=data, field=field)
    return data[field]


def _finite(data: dict, field: str, default=None) -> float:
    if default is not None and data.get(field) is None:
        return float(default)
    value = _require(data, field)
    # bool is an int subclass; "true" is not a runtime
    if isinstance(value, bool):
        raise DecodeError(f"field '{field}' must be numeric", payload=data, field=field)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise DecodeError(f"field '{field}' must be numeric, got {value!r}", payload=data, field=field)
    if not math.isfinite(number):
        raise DecodeError(f"field '{field}' must be finite", payload=data, field=field)
    return number


def _non_negative(data: dict, field: str, default=None) -> float:
    number = _finite(data, field, default=default)
    if number < 0:
        raise DecodeError(f"field '{field}' must not be negative", payload=data, field=field)
    return number


def _timestamp(data: dict) -> int:
    value = _require(data, "timestamp")
    if isinstance(value, str):
        try:
            value = int(value.strip())
        except ValueError:
            pass
    # Exact path for integers; int64 epoch values do not survive float()
    if isinstance(value, int) and not isinstance(value, bool):
        if value <= 0:
            raise DecodeError(f"field 'timestamp' must be a positive integer, got {value!r}", payload=data, field="timestamp")
        return value

    number = _finite(data, "timestamp")
    if number != int(number) or number <= 0:
        raise DecodeError(f"field 'timestamp' must be a positive integer, got {data['timestamp']!r}", payload=data, field="timestamp")
    return int(number)


def _count(data: dict, field: str) -> int:
    number = _finite(data, field, default=0)
    if number != int(number) or number < 0:
        raise DecodeError(f"field '{field}' must be a non-negative integer", payload=data, field=field)
    return int(number)


def parse_csv_line(line: str) -> dict:
    """Split a collector CSV line into a payload dict."""
    tokens = [t.strip() for t in line.split(",")]
    if len(tokens) != len(CSV_FIELDS):
        raise DecodeError(f"expected {len(CSV_FIELDS)} CSV columns, got {len(tokens)}", payload=line)
    return dict(zip(CSV_FIELDS, tokens))


def coerce_payload(raw: Any) -> dict:
    """Normalize dict / JSON text / bytes / CSV line into a dict."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise DecodeError("payload is not valid UTF-8", payload=raw)

    if isinstance(raw, str):
        text = raw.strip()
        if text.startswith("{"):
            try:
                raw = json.loads(text)
            except ValueError as e:
                raise DecodeError(f"invalid JSON: {e}", payload=raw)
        else:
            raw = parse_csv_line(text)

    if not isinstance(raw, dict):
        raise DecodeError(f"payload must be an object, got {type(raw).__name__}", payload=raw)
    return raw


def decode_record(raw: Any) -> TelemetryRecord:
    """
    Validate a raw payload and build a TelemetryRecord.

    Raises:
        DecodeError: missing field, wrong type, non-finite number or
            non-positive timestamp.
    """
    data = coerce_payload(raw)

    machine_id = _require(data, "machineId")
    if not isinstance(machine_id, str) or not machine_id.strip():
        raise DecodeError("field 'machineId' must be a non-empty string", payload=data, field="machineId")

    status = _require(data, "status")
    if not isinstance(status, str):
        raise DecodeError("field 'status' must be a string", payload=data, field="status")

    return TelemetryRecord(
        machine_id=machine_id.strip(),
        timestamp=_timestamp(data),
        runtime_minutes=_non_negative(data, "runtime"),
        downtime_minutes=_non_negative(data, "downtime", default=0.0),
        production_count=_count(data, "productionCount"),
        status=MachineStatus.parse(status),
    )
