"""
Prometheus Metrics for voicerelay

Exposes relay metrics on http://localhost:9090/metrics when enabled.
The metrics server runs in a separate thread to avoid blocking the asyncio event loop.

Key metrics:
- relay_transport_messages_total (Counter, type/direction)
- relay_unacked_records (Gauge)
- relay_prompt_results_total (Counter, status/reason)
- relay_response_queue_depth (Gauge)
- relay_state_transitions_total (Counter, from/to/trigger)
- relay_playback_buffers_scheduled (Gauge)
- relay_inference_bytes_total (Counter, direction)
- relay_harness_outcomes_total (Counter, outcome)
- relay_errors_total (Counter, component)
"""

import logging
import os
from typing import Optional

from prometheus_client import (
    Counter,
    Gauge,
    start_http_server,
)

logger = logging.getLogger(__name__)

# Default metrics port
DEFAULT_METRICS_PORT = 9090


class MetricsCollector:
    """
    Centralized Prometheus metrics collector for the relay.

    All metrics are registered once at initialization. Components report
    values via the collector's methods.
    """

    def __init__(self, port: Optional[int] = None):
        self._port = port or int(os.environ.get("RELAY_METRICS_PORT", DEFAULT_METRICS_PORT))
        self._server_started = False

        self.transport_messages = Counter(
            "relay_transport_messages_total",
            "Transport frames sent and received",
            labelnames=["type", "direction"],
        )

        self.unacked_records = Gauge(
            "relay_unacked_records",
            "Telemetry records sent and not yet acknowledged",
        )

        self.prompt_results = Counter(
            "relay_prompt_results_total",
            "Prompt injection outcomes",
            labelnames=["status", "reason"],
        )

        self.response_queue_depth = Gauge(
            "relay_response_queue_depth",
            "Deferred response requests waiting behind the active response",
        )

        self.state_transitions = Counter(
            "relay_state_transitions_total",
            "Controller state machine transition counts",
            labelnames=["from_state", "to_state", "trigger"],
        )

        self.playback_buffers = Gauge(
            "relay_playback_buffers_scheduled",
            "Audio buffers scheduled and not yet played",
        )

        self.inference_bytes = Counter(
            "relay_inference_bytes_total",
            "Bytes exchanged with the inference service",
            labelnames=["direction"],
        )

        self.harness_outcomes = Counter(
            "relay_harness_outcomes_total",
            "Verification status lines written per outcome",
            labelnames=["outcome"],
        )

        self.errors = Counter(
            "relay_errors_total",
            "Total error count",
            labelnames=["component"],
        )

    def start_server(self):
        """Start the Prometheus metrics HTTP server in a background thread."""
        if self._server_started:
            return

        try:
            start_http_server(self._port)
            self._server_started = True
            logger.info("Prometheus metrics server started on port %d", self._port)
        except OSError as e:
            logger.error("Failed to start metrics server: %s", e)

    # ── Convenience methods ──

    def record_transport_message(self, msg_type: str, direction: str):
        self.transport_messages.labels(type=msg_type, direction=direction).inc()

    def set_unacked_records(self, count: int):
        self.unacked_records.set(count)

    def record_prompt_result(self, status: str, reason: Optional[str] = None):
        self.prompt_results.labels(status=status, reason=reason or "none").inc()

    def set_response_queue_depth(self, depth: int):
        self.response_queue_depth.set(depth)

    def record_state_transition(self, from_state: str, to_state: str, trigger: str):
        self.state_transitions.labels(
            from_state=from_state, to_state=to_state, trigger=trigger
        ).inc()

    def set_playback_buffers(self, count: int):
        self.playback_buffers.set(count)

    def record_inference_bytes(self, direction: str, size: int):
        self.inference_bytes.labels(direction=direction).inc(size)

    def record_harness_outcome(self, outcome: str):
        self.harness_outcomes.labels(outcome=outcome).inc()

    def record_error(self, component: str):
        self.errors.labels(component=component).inc()


# Singleton instance
_metrics: Optional[MetricsCollector] = None


def get_metrics() -> MetricsCollector:
    """Get the global MetricsCollector singleton."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
