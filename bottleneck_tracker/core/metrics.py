"""
Prometheus Metrics Server

Simple HTTP server that exposes /metrics and /health.
/health answers 503 once the stage reports itself unhealthy, so an
orchestrator restarts a worker whose receive loop has died.
"""

from prometheus_client import Counter, Gauge, generate_latest, CONTENT_TYPE_LATEST
from http.server import HTTPServer, BaseHTTPRequestHandler
from threading import Thread
from typing import Callable, Optional
from bottleneck_tracker.core.logging import get_logger

logger = get_logger("core.metrics", labels={"component": "metrics"})


class _Handler(BaseHTTPRequestHandler):
    def _reply(self, status: int, content_type: str, body: bytes):
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self):
        if self.path == "/metrics":
            self._reply(200, CONTENT_TYPE_LATEST, generate_latest())
        elif self.path == "/health":
            check = getattr(self.server, "health_check", None)
            if check is None or check():
                self._reply(200, "text/plain", b"OK")
            else:
                self._reply(503, "text/plain", b"FAILING")
        else:
            self.send_response(404)
            self.end_headers()

    def log_message(self, *args):
        pass

class Metrics:
    """Container for all application metrics."""

    # Stage metrics
    messages_processed = Counter(
        "bottleneck_messages_processed_total",
        "Envelopes handled by a stage",
        ["stage", "outcome"]
    )

    handler_faults = Counter(
        "bottleneck_handler_faults_total",
        "Unexpected handler exceptions and timeouts",
        ["stage"]
    )

    # Bus metrics
    redeliveries = Counter(
        "bottleneck_redeliveries_total",
        "Envelopes requeued after nack, retry or timeout",
        ["topic"]
    )

    dead_letters = Counter(
        "bottleneck_dead_letters_total",
        "Envelopes dropped after exhausting max deliveries",
        ["topic"]
    )

    publish_retries = Counter(
        "bottleneck_publish_retries_total",
        "Publish attempts that failed and were retried",
        ["topic"]
    )

    publish_failures = Counter(
        "bottleneck_publish_failures_total",
        "Publishes that exhausted the retry budget",
        ["topic"]
    )

    # Ingestion
    decode_failures = Counter(
        "bottleneck_decode_failures_total",
        "Raw payloads rejected by the ingestion adapter",
        ["field"]
    )

    # Aggregation
    windows_closed = Counter(
        "bottleneck_windows_closed_total",
        "Sample windows closed",
        ["machine_id"]
    )

    bottleneck_ratio = Gauge(
        "bottleneck_ratio",
        "Last computed bottleneck ratio",
        ["machine_id"]
    )

    # Detection and dispatch
    detections = Counter(
        "bottleneck_detections_total",
        "Triggered detections by reason",
        ["reason"]
    )

    alerts_dispatched = Counter(
        "bottleneck_alerts_dispatched_total",
        "Alert messages published",
        ["severity"]
    )

    alerts_deduplicated = Counter(
        "bottleneck_alerts_deduplicated_total",
        "Alert publications suppressed by the dedup cache"
    )

    # Notifier
    alerts_rendered = Counter(
        "bottleneck_alerts_rendered_total",
        "Alerts rendered by the notifier",
        ["severity"]
    )

    heartbeats = Counter(
        "bottleneck_heartbeats_total",
        "Liveness heartbeats emitted",
        ["stage"]
    )


# Global metrics instance
metrics = Metrics()


class MetricsServer:
    """
    Background HTTP server for Prometheus scrapes and health probes.

    Port 0 binds an ephemeral port; the bound port is available as
    `port` after start().
    """

    def __init__(self, port: int = 9090, health_check: Optional[Callable[[], bool]] = None):
        self.port = port
        self.health_check = health_check
        self._server = None
        self._thread = None

    def start(self):
        self._server = HTTPServer(("0.0.0.0", self.port), _Handler)
        self._server.health_check = self.health_check
        self.port = self._server.server_address[1]
        self._thread = Thread(target=self._server.serve_forever, name="metrics-server", daemon=True)
        self._thread.start()
        logger.info(f"Metrics server started on port {self.port}")

    def stop(self):
        if self._server:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            logger.info("Metrics server stopped")
