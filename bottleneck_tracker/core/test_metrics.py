import urllib.error
import urllib.request

import pytest

from bottleneck_tracker.core.metrics import MetricsServer, metrics


def fetch(port, path):
    try:
        with urllib.request.urlopen(f"http://127.0.0.1:{port}{path}", timeout=5) as resp:
            return resp.status, resp.read().decode()
    except urllib.error.HTTPError as e:
        return e.code, e.read().decode()


@pytest.fixture
def server_state():
    state = {"healthy": True}
    server = MetricsServer(0, health_check=lambda: state["healthy"])
    server.start()
    yield server, state
    server.stop()


class TestMetricsServer:
    def test_metrics_endpoint(self, server_state):
        server, _ = server_state
        metrics.heartbeats.labels(stage="metrics-test").inc()
        status, body = fetch(server.port, "/metrics")
        assert status == 200
        assert 'bottleneck_heartbeats_total{stage="metrics-test"}' in body

    def test_health_follows_check(self, server_state):
        server, state = server_state
        assert fetch(server.port, "/health") == (200, "OK")
        state["healthy"] = False
        assert fetch(server.port, "/health") == (503, "FAILING")

    def test_unknown_path(self, server_state):
        server, _ = server_state
        assert fetch(server.port, "/nope")[0] == 404
