from __future__ import annotations

import re
from typing import Any


_ERROR_CODE_RE = re.compile(r"^[a-z][a-z0-9_]*(\.[a-z][a-z0-9_]*)*$")


class TelemetryError(Exception):
    """Base typed error for the telemetry pipeline.

    Goals:
    - Stable `code` so callers can branch without string matching on messages.
    - Human-readable `message` for structured logs.
    - Optional `meta` payload (must never carry unredacted content).
    """

    default_code = "telemetry.error"

    def __init__(
        self,
        message: str = "Telemetry error",
        *,
        code: str | None = None,
        meta: dict[str, Any] | None = None,
    ) -> None:
        code = code or self.default_code
        if not _ERROR_CODE_RE.fullmatch(code):
            raise ValueError(
                "Invalid telemetry error code. Expected dot-separated lowercase tokens, "
                f"got: {code!r}"
            )
        super().__init__(message)
        self.code = code
        self.message = message
        self.meta = dict(meta or {})

    def to_log_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "error": self.message}
        if self.meta:
            payload["meta"] = self.meta
        return payload


class EnvelopeValidationError(TelemetryError):
    """Malformed envelope. Dropped and logged, never retried."""

    default_code = "envelope.validation_error"

    def __init__(self, missing_fields: list[str], *, meta: dict[str, Any] | None = None):
        self.missing_fields = list(missing_fields)
        super().__init__(
            "Invalid telemetry envelope: missing required fields: "
            + ", ".join(self.missing_fields),
            meta={"missing_fields": self.missing_fields, **(meta or {})},
        )


class TransportUnavailableError(TelemetryError):
    """The stream transport cannot be reached. Fatal at startup."""

    default_code = "transport.unavailable"


class StoreUnavailableError(TelemetryError):
    default_code = "store.unavailable"


class ServiceUnavailableError(TelemetryError):
    """Raised without touching the network while a circuit breaker is open."""

    default_code = "service.unavailable"


class UpstreamError(TelemetryError):
    """HTTP failure from the embedding service or the vector index."""

    default_code = "upstream.error"

    def __init__(
        self,
        message: str = "Upstream service error",
        *,
        status_code: int | None = None,
        code: str | None = None,
        meta: dict[str, Any] | None = None,
    ):
        super().__init__(message, code=code, meta=meta)
        self.status_code = status_code

    @property
    def is_client_error(self) -> bool:
        return self.status_code is not None and 400 <= self.status_code < 500


class VectorValidationError(TelemetryError):
    default_code = "vector.validation_error"


class VectorIndexNotReadyError(TelemetryError):
    default_code = "vector.not_initialized"


class EmbeddingQueueClosedError(TelemetryError):
    default_code = "embedding.queue_closed"
