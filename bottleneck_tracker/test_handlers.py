import asyncio
import json
import random

import pytest

from bottleneck_tracker.core.bus import InMemorySubscription
from bottleneck_tracker.core.config import PipelineConfig
from bottleneck_tracker.handlers import create_default_runner
from bottleneck_tracker.simulator import Simulator, publish_records

CONFIG = PipelineConfig(retry_backoff=0.0, heartbeat_interval=60.0)


def raw_record(machine_id, timestamp, runtime, **extra):
    return {"machineId": machine_id, "timestamp": timestamp, "runtime": runtime, "status": "normal", **extra}


def read_rows(path):
    with open(path) as f:
        return [json.loads(line) for line in f if line.strip()]


class TestPipelineEndToEnd:
    @pytest.mark.asyncio
    async def test_flush_emits_one_aggregate_per_machine(self, tmp_path):
        export = tmp_path / "aggregates.jsonl"
        runner = create_default_runner(pipeline_config=CONFIG, export_path=str(export))
        alerts = []
        runner.on_alert(alerts.append)
        await runner.start()

        for i in range(10):
            await runner.ingest(raw_record(f"M-{i % 3}", 1_718_000_000_000 + i, 50.0))
        closed = await runner.flush(computed_at=1_718_000_001_000)
        await runner.stop()

        assert sorted(s.machine_id for s in closed) == ["M-0", "M-1", "M-2"]
        assert {s.machine_id: s.sample_count for s in closed} == {"M-0": 4, "M-1": 3, "M-2": 3}

        rows = read_rows(export)
        assert len(rows) == 3
        assert list(rows[0]) == ["machineId", "avgRuntime", "maxRuntime", "bottleneckRatio", "bottleneckScore", "alert", "timestamp"]
        assert all(row["bottleneckRatio"] == 1.0 and row["alert"] is True for row in rows)

        # identical runtimes put every window at ratio 1.0
        assert sorted(a.machine_id for a in alerts) == ["M-0", "M-1", "M-2"]
        assert all(a.reasons == {"ratio-exceeded"} for a in alerts)

    @pytest.mark.asyncio
    async def test_low_runtime_record_alerts_once(self, tmp_path):
        runner = create_default_runner(pipeline_config=CONFIG, export_path=str(tmp_path / "a.jsonl"))
        alerts = []
        runner.on_alert(alerts.append)
        await runner.start()

        slow = raw_record("M-1", 1_718_000_000_000, 5.0, downtime=45)
        await runner.ingest(slow)
        await runner.ingest(slow)
        await runner.drain()
        await runner.stop()

        assert len(alerts) == 1
        assert alerts[0].reasons == {"low-runtime", "high-downtime"}
        assert alerts[0].severity.value == "critical"
        assert runner.aggregator.aggregator.pending("M-1") == 1

    @pytest.mark.asyncio
    async def test_malformed_payload_does_not_stop_pipeline(self, tmp_path):
        runner = create_default_runner(pipeline_config=CONFIG, export_path=str(tmp_path / "a.jsonl"))
        alerts = []
        runner.on_alert(alerts.append)
        await runner.start()

        await runner.ingest({"machineId": "M-1", "timestamp": "bad"})
        await runner.ingest(raw_record("M-1", 1_718_000_000_000, 10.0))
        await runner.drain()
        await runner.stop()

        assert [a.machine_id for a in alerts] == ["M-1"]

    @pytest.mark.asyncio
    async def test_simulated_batch(self, tmp_path):
        export = tmp_path / "sim.jsonl"
        runner = create_default_runner(pipeline_config=CONFIG, export_path=str(export))
        await runner.start()

        sent = await publish_records(runner.bus, 9, interval=0, simulator=Simulator(rng=random.Random(7)))
        closed = await runner.flush()
        await runner.stop()

        assert sent == 9
        assert len(closed) == 3
        assert len(read_rows(export)) == 3

    @pytest.mark.asyncio
    async def test_stage_failure_surfaces_on_runner(self, tmp_path, monkeypatch):
        async def broken_settle(self, envelope, result):
            raise ConnectionError("broker gone")

        runner = create_default_runner(pipeline_config=CONFIG, export_path=str(tmp_path / "a.jsonl"))
        await runner.start()
        assert runner.failure is None

        monkeypatch.setattr(InMemorySubscription, "settle", broken_settle)
        await runner.ingest(raw_record("M-1", 1_718_000_000_000, 50.0))
        await asyncio.wait_for(runner.wait_for_failure(), 1)
        monkeypatch.undo()

        assert isinstance(runner.failure, ConnectionError)
        assert runner.ingestion.failure is runner.failure
        await runner.stop()


class TestSimulator:
    def test_records(self):
        records = list(Simulator(rng=random.Random(3)).records(9))
        assert [r["machineId"] for r in records[:4]] == ["M-0", "M-1", "M-2", "M-0"]
        timestamps = [r["timestamp"] for r in records]
        assert all(b > a for a, b in zip(timestamps, timestamps[1:]))
        for r in records:
            assert 0 <= r["runtime"] < 150
            assert r["status"] == ("slow" if r["runtime"] > 100 else "normal")
