"""Telemetry envelope types and the envelope normalizer."""

from .envelope import EnvelopeNormalizer, format_tool_id
from .types import (
    AnomalyRecord,
    AnomalyType,
    AnyEnvelope,
    Envelope,
    ErrorMeta,
    EventPhase,
    EventStatus,
    EventType,
    FeatureRecord,
    PayloadMeta,
    Severity,
    SparseEnvelope,
)

__all__ = [
    "AnomalyRecord",
    "AnomalyType",
    "AnyEnvelope",
    "Envelope",
    "EnvelopeNormalizer",
    "ErrorMeta",
    "EventPhase",
    "EventStatus",
    "EventType",
    "FeatureRecord",
    "PayloadMeta",
    "Severity",
    "SparseEnvelope",
    "format_tool_id",
]
