from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from mcp_telemetry.events.types import AnomalyRecord, AnyEnvelope, Envelope, EventStatus, EventType, SparseEnvelope
from mcp_telemetry.kernel.ids import new_event_id
from mcp_telemetry.kernel.time import hour_bucket


@dataclass(slots=True)
class FakeRelationalStore:
    """
    In-memory fake of the PostgreSQL store.

    Mirrors the upsert semantics: one row per event id, and an hourly
    aggregate per (hour, tenant, server, tool) for completed calls.
    """

    available: bool = True
    fail_with: Exception | None = None
    events: dict[str, dict[str, Any]] = field(default_factory=dict)
    aggregates: dict[tuple[Any, ...], dict[str, Any]] = field(default_factory=dict)
    anomalies: dict[str, AnomalyRecord] = field(default_factory=dict)
    embedding_refs: list[dict[str, Any]] = field(default_factory=list)
    closed: bool = False

    @property
    def is_available(self) -> bool:
        return self.available

    async def connect(self) -> bool:
        return self.available

    async def persist_event(self, envelope: Envelope) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        if not self.available:
            return
        self.events[envelope.id] = envelope.to_dict()
        if envelope.type != EventType.CALL_COMPLETE.value:
            return

        key = (hour_bucket(envelope.timestamp_ms), envelope.tenant or "default", envelope.server, envelope.tool)
        latency = float(envelope.latency_ms or 0)
        row = self.aggregates.get(key)
        if row is None:
            row = self.aggregates[key] = {
                "call_count": 0,
                "success_count": 0,
                "error_count": 0,
                "latency_p50": latency,
                "latency_p95": latency,
                "latency_p99": latency,
            }
        row["call_count"] += 1
        row["success_count"] += int(envelope.status == EventStatus.SUCCESS.value)
        row["error_count"] += int(envelope.status == EventStatus.ERROR.value)
        row["latency_p50"] = min(row["latency_p50"], latency)
        row["latency_p95"] = max(row["latency_p95"], latency)
        row["latency_p99"] = max(row["latency_p99"], latency)

    async def record_embedding_ref(
        self,
        event_id: str,
        collection_name: str,
        vector_names: list[str],
        metadata: dict[str, Any] | None = None,
    ) -> str | None:
        if not self.available:
            return None
        ref_id = new_event_id()
        self.embedding_refs.append(
            {
                "id": ref_id,
                "event_id": event_id,
                "collection_name": collection_name,
                "vector_names": list(vector_names),
                "metadata": dict(metadata or {}),
            }
        )
        return ref_id

    async def record_anomaly(self, anomaly: AnomalyRecord) -> None:
        if self.available:
            self.anomalies.setdefault(anomaly.id, anomaly)

    async def ping(self) -> bool:
        return self.available

    async def close(self) -> None:
        self.closed = True


@dataclass(slots=True)
class FakeDocumentStore:
    """In-memory fake of the MongoDB raw archive."""

    available: bool = True
    fail_with: Exception | None = None
    documents: dict[str, dict[str, Any]] = field(default_factory=dict)
    closed: bool = False

    @property
    def is_available(self) -> bool:
        return self.available

    async def connect(self) -> bool:
        return self.available

    async def archive_envelope(self, envelope: AnyEnvelope) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        document = {
            "_id": envelope.id,
            "kind": envelope.kind,
            "type": envelope.type,
            "tenant": envelope.tenant,
            "envelope": envelope.to_dict(),
        }
        if envelope.kind == SparseEnvelope.kind:
            self.documents.setdefault(envelope.id, document)
        else:
            self.documents[envelope.id] = document

    async def get_envelope(self, event_id: str) -> dict[str, Any] | None:
        document = self.documents.get(event_id)
        return document["envelope"] if document else None

    async def ping(self) -> bool:
        return self.available

    async def close(self) -> None:
        self.closed = True
