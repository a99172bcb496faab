"""
Envelope Normalizer

Builds the canonical telemetry envelope from raw capture data and enforces
the redaction contract: no secret-shaped string survives, and oversized
payloads are reduced to a redacted head preview plus a content hash.
"""

from __future__ import annotations

import re
import traceback
from collections.abc import Mapping
from typing import Any

import structlog

from mcp_telemetry.config import Settings
from mcp_telemetry.events.types import (
    ENVELOPE_VERSION,
    AnyEnvelope,
    Envelope,
    ErrorMeta,
    EventPhase,
    EventStatus,
    PayloadMeta,
    SparseEnvelope,
)
from mcp_telemetry.kernel.errors import EnvelopeValidationError
from mcp_telemetry.kernel.hashing import content_hash
from mcp_telemetry.kernel.ids import new_event_id, new_gid
from mcp_telemetry.kernel.serialization import json_dumps_canonical, json_dumps_lenient, json_loads
from mcp_telemetry.kernel.time import from_ms, isoformat_z, now_ms, utc_now

logger = structlog.get_logger()

REDACTED = "[REDACTED]"
MAX_DEPTH_MARKER = "[MAX_DEPTH]"
MAX_REDACTION_DEPTH = 10
SCALAR_PREVIEW_SIZE = 100
STACK_PREVIEW_LINES = 3

DEFAULT_MAX_TEXT_SIZE = 10_000
DEFAULT_PREVIEW_SIZE = 500

REQUIRED_FIELDS = ("id", "gid", "tenant", "type", "time", "version")

SENSITIVE_KEYS = frozenset({
    "token", "api_key", "apikey", "api-key",
    "authorization", "auth", "bearer",
    "cookie", "cookies",
    "secret", "secrets", "credential",
    "password", "passwd", "pwd",
    "private_key", "privatekey", "private-key",
    "access_token", "accesstoken", "access-token",
    "refresh_token", "refreshtoken", "refresh-token",
    "client_secret", "clientsecret", "client-secret",
    "x-api-key", "x_api_key", "x-auth-token",
    "jwt", "oauth", "key", "cert", "certificate",
})

SENSITIVE_HEADERS = frozenset({
    "authorization", "cookie", "x-api-key",
    "x-auth-token", "x-access-token", "proxy-authorization",
})

_JWT_RE = re.compile(r"eyJ[A-Za-z0-9_-]+\.eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")
_LONG_TOKEN_RE = re.compile(r"[A-Za-z0-9]{32,}")
_SINGLE_CASE_RE = re.compile(r"^(?:[a-z0-9]+|[A-Z0-9]+)$")
# Credentials need a digit or enough length so prose like "the bearer of" survives.
_BEARER_RE = re.compile(
    r"Bearer\s+(?:(?=[A-Za-z0-9_\-.~+/]*\d)[A-Za-z0-9_\-.~+/]{8,}|[A-Za-z0-9_\-.~+/]{20,})=*",
    re.IGNORECASE,
)
_BASIC_RE = re.compile(
    r"Basic\s+(?:(?=[A-Za-z0-9+/]*[\d+/])[A-Za-z0-9+/]{8,}|[A-Za-z0-9+/]{20,})={0,2}",
    re.IGNORECASE,
)
_URL_CREDENTIALS_RE = re.compile(r"([a-z][a-z0-9+.-]*://)([^:/@\s]+):([^@\s]+)@", re.IGNORECASE)


def _redact_long_token(match: re.Match[str]) -> str:
    value = match.group(0)
    # Single-case runs are usually hashes or ids, not keys.
    if _SINGLE_CASE_RE.match(value):
        return value
    return "[KEY_REDACTED]"


def format_tool_id(server: str | None, tool: str | None) -> str | None:
    """`<server>__<tool>`, the hub's namespaced capability name."""
    if not server or not tool:
        return None
    return f"{server}__{tool}"


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


class EnvelopeNormalizer:
    """
    Creates standardized, redacted telemetry envelopes.

    Each owning component (ingestor, orchestrator, clients) holds its own
    normalizer; envelopes are never shared mutable state.
    """

    version = ENVELOPE_VERSION

    def __init__(
        self,
        *,
        default_tenant: str = "default",
        max_text_size: int = DEFAULT_MAX_TEXT_SIZE,
        preview_size: int = DEFAULT_PREVIEW_SIZE,
    ):
        self.default_tenant = default_tenant
        self.max_text_size = max_text_size
        self.preview_size = preview_size

    @classmethod
    def from_settings(cls, settings: Settings) -> "EnvelopeNormalizer":
        return cls(
            default_tenant=settings.default_tenant,
            max_text_size=settings.envelope_max_text_size,
            preview_size=settings.envelope_preview_size,
        )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def create(self, raw: Mapping[str, Any]) -> Envelope:
        """
        Build a full envelope from raw capture data.

        Args:
            raw: Capture data. Accepts snake_case and camelCase aliases.

        Returns:
            A redacted Envelope with id and gid assigned if absent.
        """
        now = utc_now()
        event_type = raw.get("type") or "mcp.call"
        tenant = raw.get("tenant") or self.default_tenant
        server = raw.get("server")
        tool = raw.get("tool")
        error = raw.get("error")
        timestamp_ms = raw.get("timestamp_ms")
        timestamp_ms = int(timestamp_ms) if timestamp_ms is not None else now_ms()
        time_iso = isoformat_z(now)
        status = raw.get("status") or (EventStatus.ERROR.value if error else EventStatus.SUCCESS.value)
        user_agent = _first(raw, "user_agent", "userAgent")

        return Envelope(
            id=raw.get("id") or new_event_id(timestamp_ms),
            gid=raw.get("gid") or new_gid(event_type, tenant, from_ms(timestamp_ms)),
            tenant=tenant,
            type=event_type,
            time=time_iso,
            created=raw.get("created") or time_iso,
            timestamp_ms=timestamp_ms,
            version=self.version,
            session_id=self._redact_optional(_first(raw, "session_id", "sessionId")),
            user_agent=self.redact_string(user_agent) if isinstance(user_agent, str) else None,
            correlation_id=self._redact_optional(_first(raw, "correlation_id", "correlationId")),
            server=server,
            tool=tool,
            tool_id=format_tool_id(server, tool),
            args_meta=self.extract_metadata(_first(raw, "args", "arguments")),
            output_meta=self.extract_metadata(_first(raw, "output", "result")),
            error_meta=self.extract_error_metadata(error),
            latency_ms=_first(raw, "latency_ms", "latency"),
            status=str(status),
            chain_id=self._redact_optional(_first(raw, "chain_id", "chainId")),
            parent_id=self._redact_optional(_first(raw, "parent_id", "parentId")),
            chain_length=_first(raw, "chain_length", "chainLength"),
            phase=_first(raw, "phase", "event"),
            classification=raw.get("classification") or "internal",
            tags=[self.redact_string(str(tag)) for tag in raw.get("tags") or []],
            attrs=self.redact(dict(_first(raw, "attrs", "attributes") or {})),
            source=raw.get("source") or "telemetry",
            source_version=raw.get("source_version"),
        )

    def create_sparse(self, raw: Mapping[str, Any], *, skip_redaction: bool = False) -> SparseEnvelope:
        """
        Build a minimal phase marker for low-latency, real-time visibility.

        `skip_redaction` is for records derived from an already redacted
        envelope (features, anomalies), whose keys would otherwise trip the
        key-name rules.
        """
        data = raw.get("data")
        if data is not None and not skip_redaction:
            data = self.redact(data)
        server = raw.get("server")
        tool = raw.get("tool")
        timestamp_ms = raw.get("timestamp_ms")
        return SparseEnvelope(
            id=raw.get("id") or new_event_id(),
            tenant=raw.get("tenant") or self.default_tenant,
            timestamp_ms=int(timestamp_ms) if timestamp_ms is not None else now_ms(),
            phase=_first(raw, "phase", "event") or EventPhase.START.value,
            type=raw.get("type"),
            session_id=self._redact_optional(_first(raw, "session_id", "sessionId")),
            server=server,
            tool=tool,
            tool_id=format_tool_id(server, tool),
            data=data,
        )

    # ------------------------------------------------------------------
    # Payload metadata
    # ------------------------------------------------------------------

    def extract_metadata(self, value: Any) -> PayloadMeta:
        """Summarize a payload as size/type/preview; oversized content is hashed and cut."""
        if value is None:
            return PayloadMeta(exists=False)

        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")

        if isinstance(value, str):
            redacted = self.redact_string(value)
            if len(value) > self.max_text_size:
                return PayloadMeta(
                    exists=True,
                    type="string",
                    size=len(value),
                    truncated=True,
                    hash=content_hash(value),
                    preview=redacted[: self.preview_size] + "...",
                )
            return PayloadMeta(exists=True, type="string", size=len(value), preview=redacted)

        if isinstance(value, (Mapping, list, tuple, set)):
            serialized = json_dumps_lenient(value)
            redacted_json = json_dumps_lenient(self.redact(value))
            kind = "object" if isinstance(value, Mapping) else "array"
            if len(serialized) > self.max_text_size:
                return PayloadMeta(
                    exists=True,
                    type=kind,
                    size=len(serialized),
                    truncated=True,
                    hash=content_hash(serialized),
                    preview=redacted_json[: self.preview_size],
                )
            return PayloadMeta(exists=True, type=kind, size=len(serialized), preview=redacted_json)

        if isinstance(value, bool):
            kind = "boolean"
        elif isinstance(value, (int, float)):
            kind = "number"
        else:
            kind = type(value).__name__
        serialized = json_dumps_lenient(value)
        return PayloadMeta(
            exists=True,
            type=kind,
            size=len(serialized),
            preview=self.redact_string(str(value))[:SCALAR_PREVIEW_SIZE],
        )

    def extract_error_metadata(self, error: Any) -> ErrorMeta | None:
        """Redacted error summary from an exception, a mapping or a message string."""
        if not error:
            return None

        if isinstance(error, BaseException):
            stack_preview = None
            if error.__traceback__ is not None:
                lines = "".join(traceback.format_exception(error)).splitlines()
                stack_preview = "\n".join(
                    self.redact_string(line) for line in lines[-STACK_PREVIEW_LINES:]
                )
            code = getattr(error, "code", None)
            return ErrorMeta(
                code=str(code) if code is not None else None,
                error_class=type(error).__name__,
                message=self.redact_string(str(error)),
                stack_preview=stack_preview,
            )

        if isinstance(error, Mapping):
            stack = error.get("stack")
            stack_preview = None
            if isinstance(stack, str) and stack:
                stack_preview = "\n".join(
                    self.redact_string(line) for line in stack.splitlines()[:STACK_PREVIEW_LINES]
                )
            code = error.get("code")
            return ErrorMeta(
                code=str(code) if code is not None else None,
                error_class=str(error.get("class") or error.get("name") or "Error"),
                message=self.redact_string(str(error.get("message") or "")),
                stack_preview=stack_preview,
            )

        return ErrorMeta(message=self.redact_string(str(error)))

    # ------------------------------------------------------------------
    # Redaction
    # ------------------------------------------------------------------

    def redact(self, value: Any, depth: int = 0) -> Any:
        """Redact a JSON-like value tree. Idempotent."""
        if depth > MAX_REDACTION_DEPTH:
            return MAX_DEPTH_MARKER

        if isinstance(value, str):
            return self.redact_string(value)

        if isinstance(value, Mapping):
            redacted: dict[str, Any] = {}
            for key, item in value.items():
                name = str(key)
                lowered = name.lower()
                if self.is_sensitive_key(lowered):
                    redacted[name] = REDACTED
                elif lowered == "headers" and isinstance(item, Mapping):
                    redacted[name] = self.redact_headers(item, depth + 1)
                else:
                    redacted[name] = self.redact(item, depth + 1)
            return redacted

        if isinstance(value, (list, tuple, set)):
            return [self.redact(item, depth + 1) for item in value]

        return value

    def redact_headers(self, headers: Mapping[str, Any], depth: int = 0) -> dict[str, Any]:
        """Redact only the sensitive header subset; other headers keep their (pattern-redacted) values."""
        redacted: dict[str, Any] = {}
        for key, item in headers.items():
            name = str(key)
            if name.lower() in SENSITIVE_HEADERS:
                redacted[name] = REDACTED
            else:
                redacted[name] = self.redact(item, depth + 1)
        return redacted

    def redact_string(self, text: str) -> str:
        """Mask secret-shaped substrings (JWTs, keys, bearer/basic credentials, URL credentials)."""
        if not isinstance(text, str) or not text:
            return text
        text = _JWT_RE.sub("[JWT_REDACTED]", text)
        text = _LONG_TOKEN_RE.sub(_redact_long_token, text)
        text = _BEARER_RE.sub("Bearer [REDACTED]", text)
        text = _BASIC_RE.sub("Basic [REDACTED]", text)
        text = _URL_CREDENTIALS_RE.sub(r"\1[REDACTED]:[REDACTED]@", text)
        return text

    def _redact_optional(self, value: Any) -> Any:
        return self.redact_string(value) if isinstance(value, str) else value

    @staticmethod
    def is_sensitive_key(key: str) -> bool:
        lowered = key.lower()
        if lowered in SENSITIVE_KEYS:
            return True
        return any(sensitive in lowered for sensitive in SENSITIVE_KEYS)

    # ------------------------------------------------------------------
    # Validation and wire format
    # ------------------------------------------------------------------

    def validate(self, envelope: AnyEnvelope | Mapping[str, Any]) -> bool:
        """
        Check required fields.

        Raises:
            EnvelopeValidationError: listing every missing field.
        """
        data = envelope.to_dict() if hasattr(envelope, "to_dict") else dict(envelope)
        missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
        if missing:
            raise EnvelopeValidationError(missing, meta={"envelope_id": data.get("id")})

        version = data.get("version")
        if isinstance(version, int) and version > self.version:
            logger.warning(
                "Envelope version is newer than normalizer version",
                envelope_id=data.get("id"),
                envelope_version=version,
                supported_version=self.version,
            )
        return True

    @staticmethod
    def serialize(envelope: AnyEnvelope) -> str:
        return json_dumps_canonical(envelope.to_dict())

    @staticmethod
    def deserialize(data: str | bytes | Mapping[str, Any]) -> AnyEnvelope:
        payload = dict(data) if isinstance(data, Mapping) else json_loads(data)
        kind = payload.get("kind")
        if kind == SparseEnvelope.kind or (kind is None and "gid" not in payload):
            return SparseEnvelope.from_dict(payload)
        return Envelope.from_dict(payload)
