"""
Telemetry Pipeline Orchestrator

Consumes the raw stream on a fixed tick and drives each envelope through:

1. Raw archive to the document store
2. Feature extraction, published to the features stream
3. Structured event + hourly aggregate in the relational store
4. Embeddings and vector index upsert (completed tool calls)
5. Anomaly detection, published to the anomaly stream

A message is acknowledged only after its steps complete. Archive and
relational persistence failures leave it pending; a restarted consumer
replays its pending entries before reading new ones. Embedding and anomaly
failures are logged and skipped for that event.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any

import structlog

from mcp_telemetry.config import Settings
from mcp_telemetry.db.documents import DocumentStore
from mcp_telemetry.db.relational import RelationalStore
from mcp_telemetry.events.envelope import EnvelopeNormalizer
from mcp_telemetry.events.types import AnomalyRecord, Envelope, EventStatus, EventType, FeatureRecord, SparseEnvelope
from mcp_telemetry.kernel.errors import EnvelopeValidationError
from mcp_telemetry.kernel.time import now_ms
from mcp_telemetry.monitoring.metrics import Metrics, get_metrics
from mcp_telemetry.pipeline.anomalies import AnomalyDetector
from mcp_telemetry.pipeline.features import FeatureExtractor
from mcp_telemetry.search.embeddings import EmbeddingClient
from mcp_telemetry.search.vector_index import VectorIndexClient, VectorNames, VectorPoint
from mcp_telemetry.streaming.streams import ConsumerGroups, StreamMessage, StreamTransport, Streams

logger = structlog.get_logger()


class _ToolRunningStats:
    """Per-process running totals behind the hot per-tool metrics."""

    __slots__ = ("calls", "errors", "total_latency", "max_latency")

    def __init__(self) -> None:
        self.calls = 0
        self.errors = 0
        self.total_latency = 0.0
        self.max_latency = 0.0

    def observe(self, latency_ms: float | None, is_error: bool) -> dict[str, float]:
        self.calls += 1
        if is_error:
            self.errors += 1
        if latency_ms is not None:
            self.total_latency += latency_ms
            self.max_latency = max(self.max_latency, latency_ms)
        return {
            "calls": self.calls,
            "errors": self.errors,
            "avg_latency": round(self.total_latency / self.calls, 3),
            "p95_latency": self.max_latency,
            "error_rate": round(self.errors / self.calls, 4),
        }


class TelemetryPipeline:
    """Raw-stream consumer running the per-event pipeline."""

    def __init__(
        self,
        transport: StreamTransport,
        *,
        documents: DocumentStore | None = None,
        relational: RelationalStore | None = None,
        embeddings: EmbeddingClient | None = None,
        vector_index: VectorIndexClient | None = None,
        normalizer: EnvelopeNormalizer | None = None,
        feature_extractor: FeatureExtractor | None = None,
        anomaly_detector: AnomalyDetector | None = None,
        enabled: bool = True,
        consumer_group: str = ConsumerGroups.INGESTORS,
        consumer_id: str | None = None,
        batch_size: int = 100,
        process_interval_ms: int = 1000,
        block_timeout_ms: int | None = None,
        feature_extraction_enabled: bool = True,
        embedding_enabled: bool = True,
        anomaly_detection_enabled: bool = True,
        metrics: Metrics | None = None,
    ):
        self.transport = transport
        self.documents = documents
        self.relational = relational
        self.embeddings = embeddings
        self.vector_index = vector_index
        self.normalizer = normalizer or EnvelopeNormalizer()
        self.feature_extractor = feature_extractor or FeatureExtractor()
        self.anomaly_detector = anomaly_detector or AnomalyDetector(vector_index=vector_index)
        self.enabled = enabled
        self.consumer_group = consumer_group
        self.consumer_id = consumer_id or f"pipeline-{os.getpid()}"
        self.batch_size = max(1, batch_size)
        self.process_interval = process_interval_ms / 1000
        self.block_timeout_ms = block_timeout_ms
        self.feature_extraction_enabled = feature_extraction_enabled
        self.embedding_enabled = embedding_enabled
        self.anomaly_detection_enabled = anomaly_detection_enabled
        self._metrics = metrics or get_metrics()
        self._semantic_ready = False
        self._running = False
        self._pending_recovered = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._tool_stats: dict[str, _ToolRunningStats] = {}
        self._stats: dict[str, Any] = {
            "events_processed": 0,
            "sparse_archived": 0,
            "features_extracted": 0,
            "embeddings_generated": 0,
            "embedding_failures": 0,
            "anomalies_detected": 0,
            "invalid": 0,
            "errors": 0,
            "last_processed_ms": None,
        }

    @classmethod
    def from_settings(cls, settings: Settings, transport: StreamTransport, **kwargs: Any) -> "TelemetryPipeline":
        kwargs.setdefault("normalizer", EnvelopeNormalizer.from_settings(settings))
        if "anomaly_detector" not in kwargs:
            kwargs["anomaly_detector"] = AnomalyDetector.from_settings(settings, kwargs.get("vector_index"))
        return cls(
            transport,
            enabled=settings.telemetry_pipeline_enabled,
            consumer_group=settings.telemetry_consumer_group,
            consumer_id=settings.telemetry_consumer_id,
            batch_size=settings.telemetry_batch_size,
            process_interval_ms=settings.telemetry_process_interval_ms,
            feature_extraction_enabled=settings.feature_extraction_enabled,
            embedding_enabled=settings.embedding_enabled,
            anomaly_detection_enabled=settings.anomaly_detection_enabled,
            **kwargs,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def semantic_ready(self) -> bool:
        return self._semantic_ready

    async def initialize(self) -> bool:
        """
        Connect the transport (fatal on failure) and the optional stores and
        embedding/vector clients (logged and skipped on failure).
        """
        if not self.enabled:
            logger.info("Telemetry pipeline disabled")
            return False

        if not self.transport.is_connected:
            await self.transport.initialize()

        if self.relational is not None:
            await self.relational.connect()
        if self.documents is not None:
            await self.documents.connect()

        if self.embedding_enabled and self.embeddings is not None and self.vector_index is not None:
            try:
                dimension = await self.embeddings.initialize()
                await self.vector_index.initialize(dimension)
                self._semantic_ready = True
            except Exception as exc:
                logger.warning(
                    "Embedding or vector index initialization failed, continuing without it",
                    error=str(exc),
                )
        elif self.embedding_enabled:
            logger.info("Vector index disabled by configuration")

        logger.info(
            "Telemetry pipeline initialized",
            consumer_group=self.consumer_group,
            consumer_id=self.consumer_id,
            relational=self.relational is not None and self.relational.is_available,
            documents=self.documents is not None and self.documents.is_available,
            semantic=self._semantic_ready,
        )
        return True

    async def start(self) -> None:
        if self._running:
            logger.warning("Telemetry pipeline already running")
            return
        self._running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info("Telemetry pipeline started", interval_s=self.process_interval)

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            read = 0
            try:
                read = await self.process_batch()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._stats["errors"] += 1
                logger.error("Error processing telemetry batch", error=str(exc))

            # A full batch means a backlog; read again without waiting.
            if read < self.batch_size:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.process_interval)
                except asyncio.TimeoutError:
                    pass

    async def stop(self) -> None:
        self._running = False
        self._stop_event.set()
        if self._task is not None:
            block_s = (self.block_timeout_ms or self.transport.block_timeout_ms) / 1000
            try:
                await asyncio.wait_for(self._task, timeout=block_s + self.process_interval + 1)
            except asyncio.TimeoutError:
                self._task.cancel()
                await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        logger.info("Telemetry pipeline stopped")

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process_batch(self) -> int:
        """
        One tick: read up to `batch_size` messages and process each. Returns the number read.

        The first tick of a pipeline instance first replays this consumer's
        pending entries, left unacknowledged by an earlier run.
        """
        recovered = 0
        if not self._pending_recovered:
            recovered = await self.recover_pending()
            self._pending_recovered = True

        messages = await self.transport.read_batch(
            Streams.RAW,
            self.consumer_group,
            self.consumer_id,
            count=self.batch_size,
            block_ms=self.block_timeout_ms,
        )
        if messages:
            logger.debug("Processing telemetry batch", count=len(messages))
        for message in messages:
            await self.process_message(message)
        return recovered + len(messages)

    async def recover_pending(self) -> int:
        """
        Process every pending entry of this consumer once, oldest first.

        Entries that fail again stay pending for the next restart. Returns
        the number of entries read.
        """
        cursor = "0"
        read = 0
        while True:
            messages = await self.transport.read_batch(
                Streams.RAW,
                self.consumer_group,
                self.consumer_id,
                count=self.batch_size,
                start_id=cursor,
            )
            if not messages:
                break
            for message in messages:
                await self.process_message(message)
            read += len(messages)
            cursor = messages[-1].message_id
            if len(messages) < self.batch_size:
                break
        if read:
            logger.info(
                "Recovered pending telemetry messages",
                consumer_id=self.consumer_id,
                count=read,
            )
        return read

    async def process_message(self, message: StreamMessage) -> bool:
        """
        Process and acknowledge one message.

        Returns True when the message was fully handled. Invalid messages are
        acknowledged and dropped; failed ones stay pending.
        """
        if message.payload is None:
            return await self._drop_invalid(message, "undecodable payload")

        try:
            envelope = self.normalizer.deserialize(message.payload)
        except (TypeError, ValueError, KeyError) as exc:
            return await self._drop_invalid(message, str(exc))

        try:
            if isinstance(envelope, SparseEnvelope):
                await self._archive(envelope)
                self._stats["sparse_archived"] += 1
                self._metrics.track_pipeline_event("sparse")
            else:
                try:
                    self.normalizer.validate(envelope)
                except EnvelopeValidationError as exc:
                    return await self._drop_invalid(message, exc.message, missing_fields=exc.missing_fields)
                await self.process_envelope(envelope, message.message_id)
                self._stats["events_processed"] += 1
                self._metrics.track_pipeline_event("processed")
        except Exception as exc:
            self._stats["errors"] += 1
            self._metrics.track_pipeline_event("failed")
            logger.error(
                "Failed to process telemetry event",
                message_id=message.message_id,
                event_id=message.payload.get("id"),
                error=str(exc),
            )
            return False

        await self.transport.ack(message.stream, self.consumer_group, message.message_id)
        self._stats["last_processed_ms"] = now_ms()
        return True

    async def _drop_invalid(self, message: StreamMessage, reason: str, **context: Any) -> bool:
        self._stats["invalid"] += 1
        self._metrics.track_pipeline_event("invalid")
        logger.warning(
            "Dropping invalid telemetry envelope",
            message_id=message.message_id,
            reason=reason,
            **context,
        )
        await self.transport.ack(message.stream, self.consumer_group, message.message_id)
        return False

    async def process_envelope(self, envelope: Envelope, message_id: str | None = None) -> None:
        """Run steps 1-5 for a validated full envelope."""
        # Step 1: raw archive
        await self._archive(envelope)

        # Step 2: features
        features: FeatureRecord | None = None
        if self.feature_extraction_enabled:
            with self._metrics.time_step("features"):
                features = self.feature_extractor.extract(envelope)
            await self._publish_record(Streams.FEATURES, EventType.FEATURES.value, envelope, features.to_dict(), message_id)
            self._stats["features_extracted"] += 1

        # Step 3: relational persistence
        if self.relational is not None:
            with self._metrics.time_step("relational"):
                await self.relational.persist_event(envelope)

        if envelope.is_completed_call:
            await self._update_hot_metrics(envelope)

        # Step 4: embeddings
        embedded = False
        if self.embedding_enabled and self._semantic_ready and envelope.is_completed_call:
            try:
                with self._metrics.time_step("embeddings"):
                    embedded = await self._generate_embeddings(envelope)
            except Exception as exc:
                self._stats["embedding_failures"] += 1
                logger.warning("Failed to generate embeddings", event_id=envelope.id, error=str(exc))

        # Step 5: anomalies
        if self.anomaly_detection_enabled and features is not None:
            try:
                with self._metrics.time_step("anomalies"):
                    anomalies = await self.anomaly_detector.detect(envelope, features, semantic=embedded)
                    for anomaly in anomalies:
                        await self._record_anomaly(envelope, anomaly)
            except Exception as exc:
                logger.warning("Failed to detect anomalies", event_id=envelope.id, error=str(exc))

    async def _archive(self, envelope: Envelope | SparseEnvelope) -> None:
        if self.documents is None or not self.documents.is_available:
            logger.debug("Skipping document archive, store unavailable", event_id=envelope.id)
            return
        with self._metrics.time_step("archive"):
            await self.documents.archive_envelope(envelope)

    async def _publish_record(
        self,
        stream: str,
        record_type: str,
        envelope: Envelope,
        data: dict[str, Any],
        message_id: str | None = None,
    ) -> str | None:
        if message_id is not None:
            data = {**data, "source_message_id": message_id}
        sparse = self.normalizer.create_sparse(
            {
                "type": record_type,
                "tenant": envelope.tenant,
                "server": envelope.server,
                "tool": envelope.tool,
                "session_id": envelope.session_id,
                "phase": envelope.phase or "complete",
                "data": data,
            },
            skip_redaction=True,
        )
        return await self.transport.publish(stream, sparse)

    async def _update_hot_metrics(self, envelope: Envelope) -> None:
        if not envelope.server or not envelope.tool:
            return
        stats = self._tool_stats.setdefault(envelope.tool_id or f"{envelope.server}__{envelope.tool}", _ToolRunningStats())
        snapshot = stats.observe(envelope.latency_ms, envelope.status == EventStatus.ERROR.value)
        await self.transport.update_hot_metrics(envelope.server, envelope.tool, snapshot)

    async def _generate_embeddings(self, envelope: Envelope) -> bool:
        error_text = None
        if envelope.error_meta is not None:
            error_text = f"{envelope.error_meta.error_class}: {envelope.error_meta.message}"
        fields = {
            VectorNames.INPUT_TEXT: envelope.args_meta.preview if envelope.args_meta.exists else None,
            VectorNames.OUTPUT_TEXT: envelope.output_meta.preview if envelope.output_meta.exists else None,
            VectorNames.ERROR_TEXT: error_text,
        }
        vectors = await self.embeddings.embed_fields(fields)
        if not vectors:
            return False

        point = VectorPoint(
            id=envelope.id,
            vectors=vectors,
            payload={
                "event_id": envelope.id,
                "type": envelope.type,
                "tenant": envelope.tenant,
                "server": envelope.server,
                "tool": envelope.tool,
                "tool_id": envelope.tool_id,
                "status": envelope.status,
                "source": envelope.source,
                "session_id": envelope.session_id,
                "latency_ms": envelope.latency_ms,
                "timestamp_ms": envelope.timestamp_ms,
                "created_at": envelope.created,
            },
        )
        await self.vector_index.upsert([point])

        if self.relational is not None and self.relational.is_available:
            dimension = len(next(iter(vectors.values())))
            await self.relational.record_embedding_ref(
                envelope.id,
                self.vector_index.collection,
                list(vectors),
                {"dimension": dimension, "model": self.embeddings.model},
            )

        self._stats["embeddings_generated"] += 1
        return True

    async def _record_anomaly(self, envelope: Envelope, anomaly: AnomalyRecord) -> None:
        await self._publish_record(Streams.ANOMALY, EventType.ANOMALY.value, envelope, anomaly.to_dict())
        await self.transport.cache_anomaly(anomaly)
        self._stats["anomalies_detected"] += 1
        self._metrics.track_anomaly(anomaly.type, anomaly.severity)
        logger.info(
            "Anomaly detected",
            anomaly_type=anomaly.type,
            severity=anomaly.severity,
            event_id=anomaly.event_id,
        )
        if self.relational is not None and self.relational.is_available:
            await self.relational.record_anomaly(anomaly)

    # ------------------------------------------------------------------
    # Introspection / lifecycle
    # ------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "running": self._running,
            "consumer_group": self.consumer_group,
            "consumer_id": self.consumer_id,
            "config": {
                "enabled": self.enabled,
                "feature_extraction": self.feature_extraction_enabled,
                "embeddings": self.embedding_enabled,
                "anomaly_detection": self.anomaly_detection_enabled,
            },
            "stores": {
                "relational": self.relational is not None and self.relational.is_available,
                "documents": self.documents is not None and self.documents.is_available,
                "semantic": self._semantic_ready,
            },
        }

    async def close(self) -> None:
        """Stop and release the stores and HTTP clients. The shared transport stays open."""
        await self.stop()
        for component in (self.embeddings, self.vector_index, self.relational, self.documents):
            if component is not None:
                await component.close()
        self._semantic_ready = False
        logger.info("Telemetry pipeline closed")
