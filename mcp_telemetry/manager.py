"""
Telemetry Manager

Builds the telemetry component graph from Settings and owns its lifecycle:
initialize, start/stop processing, periodic health monitoring, stats and
cleanup. Components are constructed here and passed down explicitly.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog

from mcp_telemetry import __version__
from mcp_telemetry.config import Settings, get_settings
from mcp_telemetry.db.documents import DocumentStore
from mcp_telemetry.db.relational import RelationalStore
from mcp_telemetry.events.envelope import EnvelopeNormalizer
from mcp_telemetry.events.types import EventType
from mcp_telemetry.ingestion.ingestor import TelemetryIngestor
from mcp_telemetry.kernel.time import isoformat_z, utc_now
from mcp_telemetry.monitoring.health import SystemHealth, TelemetryHealthCheck
from mcp_telemetry.monitoring.metrics import Metrics, get_metrics
from mcp_telemetry.pipeline.features import FeatureExtractor
from mcp_telemetry.pipeline.orchestrator import TelemetryPipeline
from mcp_telemetry.search.embeddings import EmbeddingClient
from mcp_telemetry.search.vector_index import VectorIndexClient
from mcp_telemetry.streaming.streams import StreamTransport

logger = structlog.get_logger()


class TelemetryManager:
    """
    Orchestrates the telemetry subsystem.

    Any component may be injected; missing ones are built from settings.
    The manager owns the shared stream transport and closes it last.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: StreamTransport | None = None,
        ingestor: TelemetryIngestor | None = None,
        pipeline: TelemetryPipeline | None = None,
        metrics: Metrics | None = None,
    ):
        self.settings = settings or get_settings()
        settings = self.settings
        self._metrics = metrics or get_metrics()

        self.transport = transport or StreamTransport.from_settings(settings, metrics=self._metrics)
        normalizer = EnvelopeNormalizer.from_settings(settings)

        self.ingestor = ingestor or TelemetryIngestor.from_settings(
            settings,
            self.transport,
            normalizer=normalizer,
            source_version=__version__,
            metrics=self._metrics,
        )

        if pipeline is None:
            embeddings = None
            vector_index = None
            if settings.embedding_enabled:
                embeddings = EmbeddingClient.from_settings(
                    settings,
                    normalizer=normalizer,
                    dimension_cache=self.transport,
                    metrics=self._metrics,
                )
                if settings.qdrant_enabled:
                    vector_index = VectorIndexClient.from_settings(
                        settings,
                        normalizer=normalizer,
                    )
            pipeline = TelemetryPipeline.from_settings(
                settings,
                self.transport,
                documents=DocumentStore.from_settings(settings),
                relational=RelationalStore.from_settings(settings),
                embeddings=embeddings,
                vector_index=vector_index,
                normalizer=normalizer,
                feature_extractor=FeatureExtractor(),
                metrics=self._metrics,
            )
        self.pipeline = pipeline

        self.health = TelemetryHealthCheck(
            transport=self.transport,
            ingestor=self.ingestor,
            pipeline=self.pipeline,
            vector_index=self.pipeline.vector_index,
            embeddings=self.pipeline.embeddings,
            version=__version__,
        )

        self._initialized = False
        self._running = False
        self._health_task: asyncio.Task | None = None
        self._started_at = time.monotonic()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def is_running(self) -> bool:
        return self._running

    async def initialize(self, auto_start: bool | None = None) -> bool:
        """
        Initialize the ingestor and pipeline, then start health monitoring.

        Args:
            auto_start: Start processing right away; defaults to the
                `telemetry_auto_start` setting.

        Returns:
            False when telemetry is disabled by configuration.
        """
        if not self.settings.telemetry_enabled:
            logger.info("Telemetry disabled by configuration")
            return False

        if self._initialized:
            logger.warning("Telemetry already initialized")
            return True

        if auto_start is None:
            auto_start = self.settings.telemetry_auto_start

        try:
            logger.info("Initializing telemetry subsystem", version=__version__)
            await self.ingestor.initialize()
            await self.pipeline.initialize()
            self._start_health_monitoring()
            self._initialized = True
            logger.info("Telemetry subsystem initialized")
        except Exception as exc:
            logger.error("Failed to initialize telemetry", error=str(exc))
            await self.cleanup()
            raise

        if auto_start:
            await self.start()
        return True

    async def start(self) -> None:
        """Start pipeline processing and emit a `telemetry.startup` event."""
        if not self._initialized:
            if not await self.initialize(auto_start=False):
                return

        if self._running:
            logger.warning("Telemetry already running")
            return

        logger.info("Starting telemetry processing")
        if self.pipeline.enabled:
            await self.pipeline.start()
        self._running = True

        self.ingestor.capture_event(
            EventType.TELEMETRY_STARTUP.value,
            {
                "version": __version__,
                "components": ["ingestor", "pipeline", "streams", "vector_index", "embeddings"],
                "config": {
                    "enabled": self.settings.telemetry_enabled,
                    "auto_start": self.settings.telemetry_auto_start,
                    "pipeline_enabled": self.pipeline.enabled,
                    "vector_index_enabled": self.pipeline.vector_index is not None,
                },
            },
        )
        logger.info("Telemetry processing started")

    async def stop(self) -> None:
        """Emit a `telemetry.shutdown` event, flush it and stop the pipeline."""
        if not self._running:
            logger.warning("Telemetry is not running")
            return

        logger.info("Stopping telemetry processing")
        try:
            self.ingestor.capture_event(
                EventType.TELEMETRY_SHUTDOWN.value,
                {
                    "uptime_s": round(self.uptime_seconds, 3),
                    "stats": {
                        "pipeline": self.pipeline.get_stats(),
                        "active_sessions": self.ingestor.sessions.active_count,
                    },
                },
            )
            if self.ingestor.is_initialized:
                await self.ingestor.flush()
            await self.pipeline.stop()
        except Exception as exc:
            logger.error("Failed to stop telemetry cleanly", error=str(exc))
        finally:
            self._running = False
        logger.info("Telemetry processing stopped")

    @property
    def uptime_seconds(self) -> float:
        return time.monotonic() - self._started_at

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def _start_health_monitoring(self) -> None:
        if self._health_task is not None:
            return
        self._health_task = asyncio.create_task(self._health_loop())

    async def _health_loop(self) -> None:
        interval = self.settings.health_check_interval_ms / 1000
        while True:
            await asyncio.sleep(interval)
            try:
                health = await self.check_health()
            except Exception as exc:
                logger.error("Telemetry health check error", error=str(exc))
                continue
            if not health.healthy:
                logger.warning(
                    "Telemetry health check failed",
                    status=health.status.value,
                    components={
                        c.name: c.status.value for c in health.components
                    },
                )

    async def check_health(self) -> SystemHealth:
        return await self.health.check_all()

    # ------------------------------------------------------------------
    # Stats / lifecycle
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        """Stats from every component. A failing component reports its error."""
        stats: dict[str, Any] = {
            "timestamp": isoformat_z(utc_now()),
            "uptime_s": round(self.uptime_seconds, 3),
            "version": __version__,
            "initialized": self._initialized,
            "running": self._running,
            "components": {},
        }
        components = stats["components"]

        try:
            components["ingestor"] = await self.ingestor.get_stats()
        except Exception as exc:
            logger.warning("Failed to gather ingestor stats", error=str(exc))
            components["ingestor"] = {"error": str(exc)}

        components["pipeline"] = self.pipeline.get_stats()

        vector_index = self.pipeline.vector_index
        if vector_index is None:
            components["vector_index"] = {"status": "disabled"}
        else:
            components["vector_index"] = await vector_index.get_stats()

        embeddings = self.pipeline.embeddings
        components["embeddings"] = embeddings.get_stats() if embeddings is not None else {"status": "disabled"}
        return stats

    async def cleanup(self) -> None:
        """Stop monitoring and processing, then close every component."""
        logger.info("Cleaning up telemetry resources")
        if self._health_task is not None:
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)
            self._health_task = None

        if self._running:
            await self.stop()

        try:
            await self.ingestor.close()
            await self.pipeline.close()
        finally:
            await self.transport.close()
            self._initialized = False
        logger.info("Telemetry cleanup complete")

    async def shutdown(self) -> None:
        """Graceful shutdown."""
        logger.info("Shutting down telemetry")
        await self.cleanup()
