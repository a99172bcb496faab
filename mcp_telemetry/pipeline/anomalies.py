"""
Anomaly heuristics.

- high_latency: latency above the threshold (medium), above the high
  threshold (high)
- error_pattern: `error` status carrying an error payload (medium)
- semantic_drift: a completed call whose output is unlike the closest
  earlier outputs of the same tenant/server/tool (low). Heuristic only.
"""

from __future__ import annotations

from typing import Any

import structlog

from mcp_telemetry.config import Settings
from mcp_telemetry.events.types import AnomalyRecord, AnomalyType, Envelope, EventStatus, FeatureRecord, Severity
from mcp_telemetry.kernel.ids import new_event_id
from mcp_telemetry.kernel.time import now_ms
from mcp_telemetry.search.vector_index import SearchFilter, VectorIndexClient, VectorNames

logger = structlog.get_logger()


def _anomaly(
    anomaly_type: AnomalyType,
    severity: Severity,
    envelope: Envelope,
    description: str,
    metadata: dict[str, Any],
) -> AnomalyRecord:
    return AnomalyRecord(
        id=new_event_id(),
        type=anomaly_type.value,
        severity=severity.value,
        event_id=envelope.id,
        description=description,
        metadata={"server": envelope.server, "tool": envelope.tool, **metadata},
        created_at_ms=now_ms(),
    )


class AnomalyDetector:
    def __init__(
        self,
        *,
        latency_threshold_ms: float = 5000,
        latency_high_threshold_ms: float = 10000,
        drift_similarity_threshold: float = 0.85,
        drift_search_limit: int = 5,
        vector_index: VectorIndexClient | None = None,
    ):
        self.latency_threshold_ms = latency_threshold_ms
        self.latency_high_threshold_ms = latency_high_threshold_ms
        self.drift_similarity_threshold = drift_similarity_threshold
        self.drift_search_limit = drift_search_limit
        self.vector_index = vector_index

    @classmethod
    def from_settings(cls, settings: Settings, vector_index: VectorIndexClient | None = None) -> "AnomalyDetector":
        return cls(
            latency_threshold_ms=settings.anomaly_latency_threshold_ms,
            latency_high_threshold_ms=settings.anomaly_latency_high_threshold_ms,
            drift_similarity_threshold=settings.anomaly_drift_similarity_threshold,
            drift_search_limit=settings.anomaly_drift_search_limit,
            vector_index=vector_index,
        )

    async def detect(
        self,
        envelope: Envelope,
        features: FeatureRecord | None = None,
        *,
        semantic: bool = False,
    ) -> list[AnomalyRecord]:
        """Run every heuristic; `semantic` enables the vector-index drift check."""
        anomalies = [
            anomaly
            for anomaly in (self.check_latency(envelope), self.check_error_pattern(envelope))
            if anomaly is not None
        ]
        if semantic:
            drift = await self.check_semantic_drift(envelope)
            if drift is not None:
                anomalies.append(drift)
        return anomalies

    def check_latency(self, envelope: Envelope) -> AnomalyRecord | None:
        latency = envelope.latency_ms
        if latency is None or latency <= self.latency_threshold_ms:
            return None
        severity = Severity.HIGH if latency > self.latency_high_threshold_ms else Severity.MEDIUM
        return _anomaly(
            AnomalyType.HIGH_LATENCY,
            severity,
            envelope,
            f"High latency detected: {latency}ms",
            {"latency_ms": latency, "threshold_ms": self.latency_threshold_ms},
        )

    def check_error_pattern(self, envelope: Envelope) -> AnomalyRecord | None:
        if envelope.status != EventStatus.ERROR.value or envelope.error_meta is None:
            return None
        message = envelope.error_meta.message or "Unknown error"
        return _anomaly(
            AnomalyType.ERROR_PATTERN,
            Severity.MEDIUM,
            envelope,
            f"Tool error: {message}",
            {"error_code": envelope.error_meta.code, "error_class": envelope.error_meta.error_class},
        )

    async def check_semantic_drift(self, envelope: Envelope) -> AnomalyRecord | None:
        if self.vector_index is None or not self.vector_index.is_ready or not envelope.is_completed_call:
            return None

        hits = await self.vector_index.search_similar(
            envelope.id,
            VectorNames.OUTPUT_TEXT,
            limit=self.drift_search_limit,
            filter=SearchFilter(tenant=envelope.tenant, server=envelope.server, tool=envelope.tool),
        )
        if not hits or hits[0].score >= self.drift_similarity_threshold:
            return None

        logger.debug(
            "Semantic drift detected",
            event_id=envelope.id,
            top_score=hits[0].score,
            threshold=self.drift_similarity_threshold,
        )
        return _anomaly(
            AnomalyType.SEMANTIC_DRIFT,
            Severity.LOW,
            envelope,
            "Output significantly different from recent similar calls",
            {"similarity_score": hits[0].score, "compared_with": hits[0].id},
        )
