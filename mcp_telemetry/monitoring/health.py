"""
Health Checks

Component health for the telemetry system. Redis, the ingestor and the
pipeline are critical; the vector index and embedding service only degrade
the system when they fail.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from mcp_telemetry.kernel.time import utc_now

if TYPE_CHECKING:
    from mcp_telemetry.ingestion.ingestor import TelemetryIngestor
    from mcp_telemetry.pipeline.orchestrator import TelemetryPipeline
    from mcp_telemetry.search.embeddings import EmbeddingClient
    from mcp_telemetry.search.vector_index import VectorIndexClient
    from mcp_telemetry.streaming.streams import StreamTransport

logger = structlog.get_logger()


class HealthStatus(str, Enum):
    """Health check status."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    """Health status of a single component."""

    name: str
    status: HealthStatus
    message: str | None = None
    latency_ms: float | None = None
    critical: bool = True
    details: dict[str, Any] = field(default_factory=dict)
    checked_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "status": self.status.value,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "critical": self.critical,
            "details": self.details,
            "checked_at": self.checked_at.isoformat(),
        }


@dataclass
class SystemHealth:
    """Overall system health."""

    status: HealthStatus
    components: list[ComponentHealth]
    version: str | None = None
    uptime_seconds: float | None = None
    checked_at: datetime = field(default_factory=utc_now)

    @property
    def healthy(self) -> bool:
        return self.status == HealthStatus.HEALTHY

    def component(self, name: str) -> ComponentHealth | None:
        return next((c for c in self.components if c.name == name), None)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": self.status.value,
            "components": [c.to_dict() for c in self.components],
            "version": self.version,
            "uptime_seconds": self.uptime_seconds,
            "checked_at": self.checked_at.isoformat(),
        }


def _disabled(name: str, critical: bool) -> ComponentHealth:
    return ComponentHealth(
        name=name,
        status=HealthStatus.HEALTHY,
        message="disabled",
        critical=critical,
        details={"enabled": False},
    )


def overall_status(components: list[ComponentHealth]) -> HealthStatus:
    """A failing critical component makes the system unhealthy; anything else degrades it."""
    status = HealthStatus.HEALTHY
    for component in components:
        if component.status == HealthStatus.HEALTHY:
            continue
        if component.status == HealthStatus.UNHEALTHY and component.critical:
            return HealthStatus.UNHEALTHY
        status = HealthStatus.DEGRADED
    return status


class TelemetryHealthCheck:
    """
    Telemetry health checker.

    Checks health of:
    - Redis stream transport
    - Telemetry ingestor
    - Pipeline orchestrator
    - Vector index (Qdrant)
    - Embedding service
    """

    def __init__(
        self,
        *,
        transport: "StreamTransport | None" = None,
        ingestor: "TelemetryIngestor | None" = None,
        pipeline: "TelemetryPipeline | None" = None,
        vector_index: "VectorIndexClient | None" = None,
        embeddings: "EmbeddingClient | None" = None,
        version: str | None = None,
    ):
        self.transport = transport
        self.ingestor = ingestor
        self.pipeline = pipeline
        self.vector_index = vector_index
        self.embeddings = embeddings
        self._version = version
        self._start_time = time.monotonic()

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._start_time

    async def check_all(self) -> SystemHealth:
        """
        Check health of all components.

        Returns:
            SystemHealth with all component statuses
        """
        names = ("redis", "ingestor", "pipeline", "vector_index", "embeddings")
        checks = await asyncio.gather(
            self.check_redis(),
            self.check_ingestor(),
            self.check_pipeline(),
            self.check_vector_index(),
            self.check_embeddings(),
            return_exceptions=True,
        )

        components = []
        for name, check in zip(names, checks):
            if isinstance(check, Exception):
                logger.error("Health check failed", component=name, error=str(check))
                components.append(ComponentHealth(
                    name=name,
                    status=HealthStatus.UNHEALTHY,
                    message=str(check),
                    critical=name in ("redis", "ingestor", "pipeline"),
                ))
            else:
                components.append(check)

        return SystemHealth(
            status=overall_status(components),
            components=components,
            version=self._version,
            uptime_seconds=round(self.uptime_seconds, 3),
        )

    async def check_redis(self) -> ComponentHealth:
        """Check Redis stream transport health."""
        if self.transport is None:
            return _disabled("redis", critical=True)

        start = time.perf_counter()
        pong = await self.transport.ping()
        latency = (time.perf_counter() - start) * 1000

        if pong:
            return ComponentHealth(name="redis", status=HealthStatus.HEALTHY, latency_ms=latency)
        return ComponentHealth(
            name="redis",
            status=HealthStatus.UNHEALTHY,
            message="Ping failed",
            latency_ms=latency,
        )

    async def check_ingestor(self) -> ComponentHealth:
        if self.ingestor is None or not self.ingestor.enabled:
            return _disabled("ingestor", critical=True)

        details = {
            "initialized": self.ingestor.is_initialized,
            "queue_size": self.ingestor.buffer_size,
        }
        if not self.ingestor.is_initialized:
            return ComponentHealth(
                name="ingestor",
                status=HealthStatus.UNHEALTHY,
                message="Ingestor not initialized",
                details=details,
            )
        return ComponentHealth(name="ingestor", status=HealthStatus.HEALTHY, details=details)

    async def check_pipeline(self) -> ComponentHealth:
        if self.pipeline is None or not self.pipeline.enabled:
            return _disabled("pipeline", critical=True)

        stats = self.pipeline.get_stats()
        details = {
            "running": stats["running"],
            "events_processed": stats["events_processed"],
            "errors": stats["errors"],
            "last_processed_ms": stats["last_processed_ms"],
        }
        if not self.pipeline.is_running:
            return ComponentHealth(
                name="pipeline",
                status=HealthStatus.UNHEALTHY,
                message="Pipeline not running",
                details=details,
            )
        return ComponentHealth(name="pipeline", status=HealthStatus.HEALTHY, details=details)

    async def check_vector_index(self) -> ComponentHealth:
        if self.vector_index is None:
            return _disabled("vector_index", critical=False)

        if not self.vector_index.is_ready:
            return ComponentHealth(
                name="vector_index",
                status=HealthStatus.DEGRADED,
                message="Vector index not initialized",
                critical=False,
                details={"collection": self.vector_index.collection},
            )
        return ComponentHealth(
            name="vector_index",
            status=HealthStatus.HEALTHY,
            critical=False,
            details={"collection": self.vector_index.collection, "dimension": self.vector_index.vector_dims},
        )

    async def check_embeddings(self) -> ComponentHealth:
        if self.embeddings is None:
            return _disabled("embeddings", critical=False)

        circuit = self.embeddings.breaker.snapshot()
        details = {"model": self.embeddings.model, "dimension": self.embeddings.dimension, "circuit": circuit}
        if circuit["state"] != "closed":
            return ComponentHealth(
                name="embeddings",
                status=HealthStatus.DEGRADED,
                message=f"Circuit {circuit['state']}",
                critical=False,
                details=details,
            )
        if self.embeddings.dimension is None:
            return ComponentHealth(
                name="embeddings",
                status=HealthStatus.DEGRADED,
                message="Embedding dimension unknown",
                critical=False,
                details=details,
            )
        return ComponentHealth(name="embeddings", status=HealthStatus.HEALTHY, critical=False, details=details)
