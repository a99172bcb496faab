"""Feature extraction for telemetry envelopes."""

from __future__ import annotations

import math
from collections import Counter, OrderedDict, deque
from collections.abc import Iterable

from mcp_telemetry.events.types import Envelope, EventType, FeatureRecord
from mcp_telemetry.kernel.ids import new_event_id
from mcp_telemetry.kernel.time import now_ms

DEFAULT_ENTROPY_WINDOW = 100
DEFAULT_CONTEXT_LIMIT_BYTES = 50_000
MAX_TRACKED_SESSIONS = 10_000


def estimate_tokens(size: int) -> int:
    """Roughly four characters per token."""
    return math.ceil(size / 4) if size > 0 else 0


def shannon_entropy(values: Iterable[str]) -> float:
    """Base-2 entropy of the value frequency distribution."""
    counts = Counter(values)
    total = sum(counts.values())
    if total == 0:
        return 0.0
    entropy = 0.0
    for count in counts.values():
        p = count / total
        entropy -= p * math.log2(p)
    return entropy


class FeatureExtractor:
    """
    Derives a FeatureRecord from one envelope.

    Interaction entropy is computed over each session's most recent
    `entropy_window` tool calls; sessions are tracked LRU up to a fixed cap.
    """

    def __init__(
        self,
        *,
        entropy_window: int = DEFAULT_ENTROPY_WINDOW,
        context_limit_bytes: int = DEFAULT_CONTEXT_LIMIT_BYTES,
        max_sessions: int = MAX_TRACKED_SESSIONS,
    ):
        self.entropy_window = max(1, entropy_window)
        self.context_limit_bytes = context_limit_bytes
        self.max_sessions = max_sessions
        self._history: OrderedDict[str, deque[str]] = OrderedDict()

    def extract(self, envelope: Envelope) -> FeatureRecord:
        record = FeatureRecord(
            id=new_event_id(),
            event_id=envelope.id,
            timestamp_ms=envelope.timestamp_ms or now_ms(),
            type=envelope.type,
            latency_ms=envelope.latency_ms,
            status=envelope.status,
        )

        if envelope.type == EventType.CALL_COMPLETE.value:
            input_tokens = estimate_tokens(envelope.args_meta.size)
            output_tokens = estimate_tokens(envelope.output_meta.size)
            record.token_count = input_tokens + output_tokens
            if record.token_count:
                record.token_efficiency = round(output_tokens / record.token_count, 4)
            record.context_size = envelope.args_meta.size + envelope.output_meta.size
            if self.context_limit_bytes > 0:
                record.context_utilization = round(
                    min(1.0, record.context_size / self.context_limit_bytes), 4
                )
            record.interaction_entropy, record.tool_diversity = self._observe_tool(envelope)

        elif envelope.type == EventType.CONNECTION.value:
            record.extra = {
                "connection_state": envelope.attrs.get("connection_state"),
                "connection_duration_ms": envelope.attrs.get("duration_ms"),
            }

        elif envelope.type == EventType.SERVER.value:
            servers = envelope.attrs.get("servers") or []
            changes = envelope.attrs.get("changes") or []
            record.extra = {
                "server_count": len(servers) if isinstance(servers, (list, dict)) else 0,
                "server_changes": len(changes) if isinstance(changes, (list, dict)) else 0,
            }

        return record

    def _observe_tool(self, envelope: Envelope) -> tuple[float, int]:
        key = envelope.session_id or "global"
        history = self._history.get(key)
        if history is None:
            history = deque(maxlen=self.entropy_window)
            self._history[key] = history
            if len(self._history) > self.max_sessions:
                self._history.popitem(last=False)
        else:
            self._history.move_to_end(key)

        history.append(envelope.tool_id or envelope.tool or "unknown")
        return round(shannon_entropy(history), 6), len(set(history))

    def reset(self) -> None:
        self._history.clear()
