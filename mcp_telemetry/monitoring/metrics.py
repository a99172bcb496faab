"""
Prometheus Metrics

Defines and exports metrics for monitoring the telemetry pipeline.
"""

from contextlib import contextmanager
import time

import structlog
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram, start_http_server

logger = structlog.get_logger()

# Singleton metrics instance
_metrics: "Metrics | None" = None

_CIRCUIT_STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}


class Metrics:
    """
    Prometheus metrics for the telemetry pipeline.

    Tracks:
    - Ingestor capture, buffering and publish
    - Pipeline processing per event and per step
    - Embedding requests and circuit breaker state
    - Anomalies detected
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize Prometheus metrics on the given registry (default: global)."""
        self.registry = registry if registry is not None else REGISTRY

        # Ingestion
        self.events_captured_total = Counter(
            "mcp_telemetry_events_captured_total",
            "Total telemetry events captured by the ingestor",
            ["event_type"],
            registry=self.registry,
        )

        self.events_dropped_total = Counter(
            "mcp_telemetry_events_dropped_total",
            "Total telemetry events dropped before reaching the stream",
            ["reason"],
            registry=self.registry,
        )

        self.ingest_buffer_depth = Gauge(
            "mcp_telemetry_ingest_buffer_depth",
            "Envelopes waiting in the ingestor buffer",
            registry=self.registry,
        )

        # Stream transport
        self.stream_published_total = Counter(
            "mcp_telemetry_stream_published_total",
            "Total messages appended to a telemetry stream",
            ["stream"],
            registry=self.registry,
        )

        self.stream_publish_failures_total = Counter(
            "mcp_telemetry_stream_publish_failures_total",
            "Total failed stream appends",
            ["stream"],
            registry=self.registry,
        )

        self.consumer_handler_errors_total = Counter(
            "mcp_telemetry_consumer_handler_errors_total",
            "Total stream consumer handler failures",
            ["stream", "group"],
            registry=self.registry,
        )

        # Pipeline
        self.pipeline_events_total = Counter(
            "mcp_telemetry_pipeline_events_total",
            "Total events handled by the pipeline",
            ["status"],  # processed | failed | invalid | sparse
            registry=self.registry,
        )

        self.pipeline_step_duration_seconds = Histogram(
            "mcp_telemetry_pipeline_step_duration_seconds",
            "Duration of a single pipeline step",
            ["step", "status"],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
            registry=self.registry,
        )

        # Embeddings
        self.embeddings_total = Counter(
            "mcp_telemetry_embeddings_total",
            "Total texts sent to the embedding service",
            ["status"],
            registry=self.registry,
        )

        self.embedding_request_duration_seconds = Histogram(
            "mcp_telemetry_embedding_request_duration_seconds",
            "Embedding HTTP request duration in seconds",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

        self.circuit_breaker_state = Gauge(
            "mcp_telemetry_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half_open, 2=open)",
            ["name"],
            registry=self.registry,
        )

        # Anomalies
        self.anomalies_detected_total = Counter(
            "mcp_telemetry_anomalies_detected_total",
            "Total anomalies detected",
            ["anomaly_type", "severity"],
            registry=self.registry,
        )

        logger.info("Prometheus metrics initialized")

    # Convenience methods for tracking
    def track_event_captured(self, event_type: str) -> None:
        self.events_captured_total.labels(event_type=event_type).inc()

    def track_event_dropped(self, reason: str, count: int = 1) -> None:
        """Track envelopes lost before publish (disabled transport, publish failure)."""
        self.events_dropped_total.labels(reason=reason).inc(count)

    def set_ingest_buffer_depth(self, depth: int) -> None:
        self.ingest_buffer_depth.set(max(depth, 0))

    def track_stream_publish(self, stream: str, success: bool) -> None:
        """Track a stream append."""
        if success:
            self.stream_published_total.labels(stream=stream).inc()
        else:
            self.stream_publish_failures_total.labels(stream=stream).inc()

    def inc_consumer_handler_error(self, stream: str, group: str) -> None:
        self.consumer_handler_errors_total.labels(stream=stream, group=group).inc()

    def track_pipeline_event(self, status: str) -> None:
        self.pipeline_events_total.labels(status=status).inc()

    def observe_pipeline_step(self, step: str, status: str, duration: float) -> None:
        self.pipeline_step_duration_seconds.labels(step=step, status=status).observe(duration)

    def track_embeddings(self, status: str, count: int = 1, duration: float | None = None) -> None:
        """Track embedded texts and, when given, the request duration."""
        self.embeddings_total.labels(status=status).inc(count)
        if duration is not None:
            self.embedding_request_duration_seconds.observe(duration)

    def set_circuit_state(self, name: str, state: str) -> None:
        self.circuit_breaker_state.labels(name=name).set(_CIRCUIT_STATE_VALUES.get(state, 0))

    def track_anomaly(self, anomaly_type: str, severity: str) -> None:
        self.anomalies_detected_total.labels(anomaly_type=anomaly_type, severity=severity).inc()

    @contextmanager
    def time_step(self, step: str):
        """Context manager for timing a pipeline step."""
        start = time.perf_counter()
        status = "success"
        try:
            yield
        except Exception:
            status = "error"
            raise
        finally:
            self.observe_pipeline_step(step, status, time.perf_counter() - start)


def get_metrics() -> Metrics:
    """Get or create the singleton metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = Metrics()
    return _metrics


def start_metrics_server(port: int, registry: CollectorRegistry | None = None) -> None:
    """Expose the registry on a Prometheus scrape endpoint."""
    start_http_server(port, registry=registry if registry is not None else REGISTRY)
    logger.info("Metrics exporter started", port=port)
