import asyncio

import pytest
from prometheus_client import REGISTRY

from bottleneck_tracker.core.bus import ACK, NACK, Envelope, InMemoryBus, InMemorySubscription
from bottleneck_tracker.core.config import Config, PipelineConfig
from bottleneck_tracker.core.errors import PublishError
from bottleneck_tracker.pipelines.models import AlertMessage, Detection, Observation, TelemetryRecord
from bottleneck_tracker.workers.aggregation_worker import AggregationWorker
from bottleneck_tracker.workers.base import StageWorker, WorkerConfig, WorkerState
from bottleneck_tracker.workers.detection_worker import DetectionWorker
from bottleneck_tracker.workers.dispatch_worker import DispatchWorker
from bottleneck_tracker.workers.ingestion_worker import IngestionWorker
from bottleneck_tracker.workers.notifier_worker import NotifierWorker, render_alert

FAST = PipelineConfig(retry_backoff=0.0, heartbeat_interval=60.0)


class Collector:
    """Broadcast subscriber that records every payload on a topic."""

    def __init__(self):
        self.envelopes = []
        self._task = None
        self.subscription = None

    @property
    def payloads(self):
        return [e.payload for e in self.envelopes]

    async def attach(self, bus, topic):
        async def handler(envelope):
            self.envelopes.append(envelope)
            return ACK

        self.subscription = await bus.subscribe(topic, handler)
        self._task = asyncio.create_task(self._loop())
        return self

    async def _loop(self):
        while True:
            await self.subscription.dispatch(await self.subscription.receive())

    async def close(self):
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        await self.subscription.close()


class FailingBus(InMemoryBus):
    """Rejects publishes to one topic for the first `failures` calls."""

    def __init__(self, topic, failures, **kwargs):
        super().__init__(**kwargs)
        self.failing_topic = topic
        self.failures = failures

    async def publish(self, topic, payload, key=None, message_id=None):
        if topic == self.failing_topic and self.failures > 0:
            self.failures -= 1
            raise PublishError(topic, "broker unavailable")
        return await super().publish(topic, payload, key=key, message_id=message_id)


def detection_envelope(machine_id="M-1", timestamp=1000, reasons=("low-runtime",)):
    detection = Detection(machine_id, timestamp, frozenset(reasons))
    return Envelope(id=f"{machine_id}:{timestamp}", topic=Config.DETECTIONS_TOPIC, payload=detection.to_dict(), key=machine_id)


class TestIngestionWorker:
    @pytest.mark.asyncio
    async def test_forwards_valid_and_drops_malformed(self):
        bus = InMemoryBus()
        records = await Collector().attach(bus, Config.RECORDS_TOPIC)
        worker = IngestionWorker(bus, FAST)
        await worker.start()

        await bus.publish(Config.RAW_TOPIC, {"machineId": "M-1", "timestamp": "bad"})
        await bus.publish(Config.RAW_TOPIC, {"machineId": "M-1", "timestamp": 1000, "runtime": 50, "status": "normal"})
        await bus.publish(Config.RAW_TOPIC, "M-2,1001,12.5,slow")
        await bus.join()

        assert [p["machineId"] for p in records.payloads] == ["M-1", "M-2"]
        assert records.envelopes[0].key == "M-1"
        assert records.envelopes[0].id == "M-1:1000"

        await worker.stop()
        await records.close()
        assert worker.state == WorkerState.STOPPED


class TestAggregationWorker:
    @pytest.mark.asyncio
    async def test_window_close_publishes_aggregate(self):
        bus = InMemoryBus()
        aggregates = await Collector().attach(bus, Config.AGGREGATES_TOPIC)
        observations = await Collector().attach(bus, Config.OBSERVATIONS_TOPIC)
        worker = AggregationWorker(bus, PipelineConfig(window_size=3, retry_backoff=0.0))
        await worker.start()

        for i, runtime in enumerate([80, 90, 100]):
            record = TelemetryRecord("M-1", 1000 + i, runtime)
            await bus.publish(Config.RECORDS_TOPIC, record.to_dict(), key="M-1", message_id=f"M-1:{1000 + i}")
        await bus.join()

        assert len(observations.payloads) == 3
        assert observations.payloads[0]["aggregate"] is None
        last = Observation.from_dict(observations.payloads[-1])
        assert last.aggregate.sample_count == 3
        assert last.aggregate.computed_at == 1002

        assert len(aggregates.payloads) == 1
        assert aggregates.payloads[0]["avgRuntime"] == 90.0
        assert aggregates.payloads[0]["alert"] is True

        await worker.stop()
        await aggregates.close()
        await observations.close()

    @pytest.mark.asyncio
    async def test_flush_publishes_partial_windows(self):
        bus = InMemoryBus()
        aggregates = await Collector().attach(bus, Config.AGGREGATES_TOPIC)
        observations = await Collector().attach(bus, Config.OBSERVATIONS_TOPIC)
        worker = AggregationWorker(bus, FAST)
        await worker.start()

        await bus.publish(Config.RECORDS_TOPIC, TelemetryRecord("M-1", 1000, 40).to_dict(), key="M-1")
        await bus.join()
        closed = await worker.flush(computed_at=2000)
        await bus.join()

        assert len(closed) == 1
        assert aggregates.payloads[0]["computedAt"] == 2000
        assert observations.payloads[-1]["record"] is None

        await worker.stop()
        await aggregates.close()
        await observations.close()


class TestDetectionWorker:
    @pytest.mark.asyncio
    async def test_only_triggered_observations_emit(self):
        bus = InMemoryBus()
        detections = await Collector().attach(bus, Config.DETECTIONS_TOPIC)
        worker = DetectionWorker(bus, FAST)
        await worker.start()

        quiet = Observation(record=TelemetryRecord("M-1", 1000, 60))
        slow = Observation(record=TelemetryRecord("M-1", 1001, 10, downtime_minutes=30))
        await bus.publish(Config.OBSERVATIONS_TOPIC, quiet.to_dict(), key="M-1")
        await bus.publish(Config.OBSERVATIONS_TOPIC, slow.to_dict(), key="M-1")
        await bus.join()

        assert len(detections.payloads) == 1
        assert detections.payloads[0]["reasons"] == ["high-downtime", "low-runtime"]
        assert detections.envelopes[0].id == "M-1:1001"

        await worker.stop()
        await detections.close()


class TestDispatchWorker:
    @pytest.mark.asyncio
    async def test_duplicate_detection_yields_one_alert(self):
        bus = InMemoryBus()
        alerts = await Collector().attach(bus, Config.ALERTS_TOPIC)
        worker = DispatchWorker(bus, FAST)
        await worker.start()

        detection = Detection("M-1", 1000, frozenset({"low-runtime"}))
        await bus.publish(Config.DETECTIONS_TOPIC, detection.to_dict(), key="M-1")
        await bus.publish(Config.DETECTIONS_TOPIC, detection.to_dict(), key="M-1")
        await bus.join()

        assert len(alerts.payloads) == 1
        assert alerts.payloads[0]["machineId"] == "M-1"
        assert alerts.payloads[0]["severity"] == "warning"

        await worker.stop()
        await alerts.close()

    @pytest.mark.asyncio
    async def test_publish_failure_nacks_without_recording(self):
        bus = FailingBus(Config.ALERTS_TOPIC, failures=3)
        worker = DispatchWorker(bus, PipelineConfig(retry_budget=3, retry_backoff=0.0))

        result = await worker._handle(detection_envelope())
        assert result == NACK
        assert not worker.dedup.seen(("M-1", 1000))

        result = await worker._handle(detection_envelope())
        assert result == ACK
        assert worker.dedup.seen(("M-1", 1000))

    @pytest.mark.asyncio
    async def test_transient_failure_recovers_within_budget(self):
        bus = FailingBus(Config.ALERTS_TOPIC, failures=2)
        alerts = await Collector().attach(bus, Config.ALERTS_TOPIC)
        worker = DispatchWorker(bus, PipelineConfig(retry_budget=3, retry_backoff=0.0))
        await worker.start()

        await bus.publish(Config.DETECTIONS_TOPIC, detection_envelope().payload, key="M-1")
        await bus.join()
        assert len(alerts.payloads) == 1

        await worker.stop()
        await alerts.close()


class TestNotifierWorker:
    def test_render_alert(self):
        alert = AlertMessage("M-1", 0, frozenset({"low-runtime"}))
        text = render_alert(alert)
        assert "machine=M-1" in text
        assert "1970-01-01T00:00:00+00:00" in text
        assert "[WARNING]" in text

    @pytest.mark.asyncio
    async def test_unknown_type_is_acked(self):
        worker = NotifierWorker(InMemoryBus(), FAST)
        envelope = Envelope(id="x", topic=Config.ALERTS_TOPIC, payload={"type": "maintenance"})
        assert await worker._handle(envelope) == ACK
        assert len(worker.recent) == 0

    @pytest.mark.asyncio
    async def test_failing_forwarder_is_redelivered(self):
        bus = InMemoryBus()
        worker = NotifierWorker(bus, FAST)
        calls = []

        def forwarder(alert):
            calls.append(alert)
            if len(calls) == 1:
                raise RuntimeError("mail relay down")

        worker.on_alert(forwarder)
        await worker.start()

        alert = AlertMessage("M-1", 1000, frozenset({"low-runtime", "high-downtime"}))
        await bus.publish(Config.ALERTS_TOPIC, alert.to_dict(), key="M-1")
        await bus.join()

        assert len(calls) == 2
        assert list(worker.recent) == [alert]

        await worker.stop()


def heartbeat_count(stage):
    return REGISTRY.get_sample_value("bottleneck_heartbeats_total", {"stage": stage}) or 0.0


class RecordingWorker(StageWorker):
    def __init__(self, bus, pipeline_config=FAST):
        super().__init__(bus, WorkerConfig(name="recorder", topic="test.states", recipient="recorder"), pipeline_config)
        self.seen_states = []

    async def handle(self, envelope):
        self.seen_states.append(self.state)
        return ACK


class TestStageWorkerLifecycle:
    @pytest.mark.asyncio
    async def test_state_transitions(self):
        bus = InMemoryBus()
        worker = RecordingWorker(bus)
        assert worker.state == WorkerState.STOPPED

        await worker.start()
        await asyncio.sleep(0)
        assert worker.state == WorkerState.RECEIVING

        await bus.publish("test.states", {"n": 1})
        await bus.join()
        await asyncio.sleep(0)
        assert worker.seen_states == [WorkerState.PROCESSING]
        assert worker.state == WorkerState.RECEIVING

        await worker.stop()
        assert worker.state == WorkerState.STOPPED

    @pytest.mark.asyncio
    async def test_settle_failure_stops_the_worker(self, monkeypatch):
        original_settle = InMemorySubscription.settle
        calls = []

        async def flaky_settle(self, envelope, result):
            calls.append(envelope.id)
            if len(calls) == 1:
                raise ConnectionError("commit failed: broker gone")
            await original_settle(self, envelope, result)

        monkeypatch.setattr(InMemorySubscription, "settle", flaky_settle)

        bus = InMemoryBus()
        worker = NotifierWorker(bus, PipelineConfig(heartbeat_interval=0.01))
        await worker.start()

        alert = AlertMessage("M-1", 1000, frozenset({"low-runtime"}))
        await bus.publish(Config.ALERTS_TOPIC, alert.to_dict(), key="M-1")
        await asyncio.wait_for(worker.wait_for_shutdown(), 1)

        assert isinstance(worker.failure, ConnectionError)

        # Heartbeat goes quiet once the receive loop is gone
        await asyncio.sleep(0.02)
        beats = heartbeat_count("notifier")
        await asyncio.sleep(0.05)
        assert heartbeat_count("notifier") == beats

        await worker.stop()
        assert isinstance(worker.failure, ConnectionError)

    @pytest.mark.asyncio
    async def test_heartbeat_fires_without_messages(self):
        bus = InMemoryBus()
        worker = NotifierWorker(bus, PipelineConfig(heartbeat_interval=0.01))
        before = heartbeat_count("notifier")

        await worker.start()
        await asyncio.sleep(0.1)

        assert heartbeat_count("notifier") >= before + 2
        assert len(worker.recent) == 0
        assert worker.failure is None
        await worker.stop()


class TestAggregationRedelivery:
    @pytest.mark.asyncio
    async def test_failed_forward_is_not_counted_twice(self):
        bus = FailingBus(Config.OBSERVATIONS_TOPIC, failures=1)
        aggregates = await Collector().attach(bus, Config.AGGREGATES_TOPIC)
        observations = await Collector().attach(bus, Config.OBSERVATIONS_TOPIC)
        worker = AggregationWorker(bus, PipelineConfig(window_size=3, retry_budget=1, retry_backoff=0.0))
        await worker.start()

        for i, runtime in enumerate([40, 50, 60]):
            record = TelemetryRecord("M-1", 1000 + i, runtime)
            await bus.publish(Config.RECORDS_TOPIC, record.to_dict(), key="M-1", message_id=f"M-1:{1000 + i}")
        await bus.join()

        assert worker.aggregator.pending("M-1") == 0
        assert len(aggregates.payloads) == 1
        assert aggregates.payloads[0]["sampleCount"] == 3
        assert aggregates.payloads[0]["avgRuntime"] == 50.0
        assert len(observations.payloads) == 3

        await worker.stop()
        await aggregates.close()
        await observations.close()

    @pytest.mark.asyncio
    async def test_flushed_window_never_reuses_a_record_key(self):
        bus = InMemoryBus()
        aggregates = await Collector().attach(bus, Config.AGGREGATES_TOPIC)
        worker = AggregationWorker(bus, PipelineConfig(window_size=2, retry_backoff=0.0))
        await worker.start()

        for ts in (5000, 5001, 5002):
            await bus.publish(Config.RECORDS_TOPIC, TelemetryRecord("M-1", ts, 40).to_dict(), key="M-1", message_id=f"M-1:{ts}")
        await bus.join()
        await worker.flush(computed_at=5001)
        await bus.join()

        ids = [e.id for e in aggregates.envelopes]
        assert ids == ["M-1:5001:aggregate", "M-1:5003:flush-aggregate"]

        await worker.stop()
        await aggregates.close()
