"""
Event Types

Canonical telemetry records exchanged between the ingestor, the stream
transport and the pipeline orchestrator.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

ENVELOPE_VERSION = 1


class EventType(str, Enum):
    """Known telemetry event types. Custom types are allowed as plain strings."""

    CALL_START = "mcp.call.start"
    CALL_COMPLETE = "mcp.call.complete"
    CONNECTION = "mcp.connection"
    SERVER = "mcp.server"
    TELEMETRY_STARTUP = "telemetry.startup"
    TELEMETRY_SHUTDOWN = "telemetry.shutdown"
    FEATURES = "features"
    ANOMALY = "anomaly"


class EventStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class EventPhase(str, Enum):
    START = "start"
    COMPLETE = "complete"


class AnomalyType(str, Enum):
    HIGH_LATENCY = "high_latency"
    ERROR_PATTERN = "error_pattern"
    SEMANTIC_DRIFT = "semantic_drift"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class PayloadMeta:
    """Size/type/preview summary standing in for a tool's raw args or output."""

    exists: bool = False
    type: str | None = None
    size: int = 0
    truncated: bool = False
    hash: str | None = None
    preview: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "exists": self.exists,
            "type": self.type,
            "size": self.size,
            "truncated": self.truncated,
            "hash": self.hash,
            "preview": self.preview,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "PayloadMeta":
        data = data or {}
        return cls(
            exists=bool(data.get("exists", False)),
            type=data.get("type"),
            size=int(data.get("size") or 0),
            truncated=bool(data.get("truncated", False)),
            hash=data.get("hash"),
            preview=data.get("preview"),
        )


@dataclass
class ErrorMeta:
    """Redacted summary of a failed tool call."""

    exists: bool = True
    code: str | None = None
    error_class: str = "Error"
    message: str = ""
    stack_preview: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "exists": self.exists,
            "code": self.code,
            "class": self.error_class,
            "message": self.message,
            "stack_preview": self.stack_preview,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ErrorMeta | None":
        if not data:
            return None
        code = data.get("code")
        return cls(
            exists=bool(data.get("exists", True)),
            code=str(code) if code is not None else None,
            error_class=data.get("class") or "Error",
            message=data.get("message") or "",
            stack_preview=data.get("stack_preview"),
        )


@dataclass
class Envelope:
    """Canonical, redacted representation of one telemetry event."""

    kind: ClassVar[str] = "full"

    id: str
    gid: str
    tenant: str
    type: str
    time: str
    created: str
    timestamp_ms: int
    version: int = ENVELOPE_VERSION
    session_id: str | None = None
    user_agent: str | None = None
    correlation_id: str | None = None
    server: str | None = None
    tool: str | None = None
    tool_id: str | None = None
    args_meta: PayloadMeta = field(default_factory=PayloadMeta)
    output_meta: PayloadMeta = field(default_factory=PayloadMeta)
    error_meta: ErrorMeta | None = None
    latency_ms: float | None = None
    status: str | None = None
    chain_id: str | None = None
    parent_id: str | None = None
    chain_length: int | None = None
    phase: str | None = None
    classification: str = "internal"
    tags: list[str] = field(default_factory=list)
    attrs: dict[str, Any] = field(default_factory=dict)
    source: str = "telemetry"
    source_version: str | None = None

    @property
    def is_completed_call(self) -> bool:
        return self.type == EventType.CALL_COMPLETE.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.id,
            "gid": self.gid,
            "tenant": self.tenant,
            "type": self.type,
            "time": self.time,
            "created": self.created,
            "timestamp_ms": self.timestamp_ms,
            "version": self.version,
            "session_id": self.session_id,
            "user_agent": self.user_agent,
            "correlation_id": self.correlation_id,
            "server": self.server,
            "tool": self.tool,
            "tool_id": self.tool_id,
            "args_meta": self.args_meta.to_dict(),
            "output_meta": self.output_meta.to_dict(),
            "error_meta": self.error_meta.to_dict() if self.error_meta else None,
            "latency_ms": self.latency_ms,
            "status": self.status,
            "chain_id": self.chain_id,
            "parent_id": self.parent_id,
            "chain_length": self.chain_length,
            "phase": self.phase,
            "classification": self.classification,
            "tags": list(self.tags),
            "attrs": self.attrs,
            "source": self.source,
            "source_version": self.source_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Envelope":
        """Rebuild an envelope. Missing required fields are left empty for `validate`."""
        return cls(
            id=data.get("id") or "",
            gid=data.get("gid") or "",
            tenant=data.get("tenant") or "",
            type=data.get("type") or "",
            time=data.get("time") or "",
            created=data.get("created") or data.get("time") or "",
            timestamp_ms=int(data.get("timestamp_ms") or 0),
            version=int(data.get("version") or 0),
            session_id=data.get("session_id"),
            user_agent=data.get("user_agent"),
            correlation_id=data.get("correlation_id"),
            server=data.get("server"),
            tool=data.get("tool"),
            tool_id=data.get("tool_id"),
            args_meta=PayloadMeta.from_dict(data.get("args_meta")),
            output_meta=PayloadMeta.from_dict(data.get("output_meta")),
            error_meta=ErrorMeta.from_dict(data.get("error_meta")),
            latency_ms=data.get("latency_ms"),
            status=data.get("status"),
            chain_id=data.get("chain_id"),
            parent_id=data.get("parent_id"),
            chain_length=data.get("chain_length"),
            phase=data.get("phase"),
            classification=data.get("classification") or "internal",
            tags=list(data.get("tags") or []),
            attrs=dict(data.get("attrs") or {}),
            source=data.get("source") or "telemetry",
            source_version=data.get("source_version"),
        )


@dataclass
class SparseEnvelope:
    """Minimal low-latency marker (phase markers, feature and anomaly records)."""

    kind: ClassVar[str] = "sparse"

    id: str
    tenant: str
    timestamp_ms: int
    phase: str | None = None
    type: str | None = None
    session_id: str | None = None
    server: str | None = None
    tool: str | None = None
    tool_id: str | None = None
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.id,
            "tenant": self.tenant,
            "timestamp_ms": self.timestamp_ms,
            "phase": self.phase,
            "type": self.type,
            "session_id": self.session_id,
            "server": self.server,
            "tool": self.tool,
            "tool_id": self.tool_id,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SparseEnvelope":
        return cls(
            id=data.get("id") or "",
            tenant=data.get("tenant") or "",
            timestamp_ms=int(data.get("timestamp_ms") or 0),
            phase=data.get("phase"),
            type=data.get("type"),
            session_id=data.get("session_id"),
            server=data.get("server"),
            tool=data.get("tool"),
            tool_id=data.get("tool_id"),
            data=data.get("data"),
        )


AnyEnvelope = Envelope | SparseEnvelope


@dataclass
class FeatureRecord:
    """Features derived from one envelope; `event_id` points back at it."""

    id: str
    event_id: str
    timestamp_ms: int
    type: str
    latency_ms: float | None = None
    status: str | None = None
    token_count: int | None = None
    token_efficiency: float | None = None
    context_size: int | None = None
    context_utilization: float | None = None
    interaction_entropy: float | None = None
    tool_diversity: int | None = None
    semantic_drift: float | None = None
    embedding_distance: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "timestamp_ms": self.timestamp_ms,
            "type": self.type,
            "latency_ms": self.latency_ms,
            "status": self.status,
            "token_count": self.token_count,
            "token_efficiency": self.token_efficiency,
            "context_size": self.context_size,
            "context_utilization": self.context_utilization,
            "interaction_entropy": self.interaction_entropy,
            "tool_diversity": self.tool_diversity,
            "semantic_drift": self.semantic_drift,
            "embedding_distance": self.embedding_distance,
            "extra": dict(self.extra),
        }


@dataclass(frozen=True)
class AnomalyRecord:
    """A detected anomaly. Immutable once created."""

    id: str
    type: str
    severity: str
    event_id: str
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "event_id": self.event_id,
            "description": self.description,
            "metadata": dict(self.metadata),
            "created_at_ms": self.created_at_ms,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AnomalyRecord":
        return cls(
            id=data["id"],
            type=data["type"],
            severity=data["severity"],
            event_id=data["event_id"],
            description=data.get("description") or "",
            metadata=dict(data.get("metadata") or {}),
            created_at_ms=int(data.get("created_at_ms") or 0),
        )
