import pytest

from mcp_telemetry.pipeline.features import FeatureExtractor, estimate_tokens, shannon_entropy

pytestmark = pytest.mark.unit


def _call(normalizer, tool, session_id="sess-1", **overrides):
    raw = {"type": "mcp.call.complete", "server": "fs", "tool": tool, "session_id": session_id}
    raw.update(overrides)
    return normalizer.create(raw)


def test_estimate_tokens():
    assert estimate_tokens(0) == 0
    assert estimate_tokens(1) == 1
    assert estimate_tokens(8) == 2
    assert estimate_tokens(9) == 3


def test_shannon_entropy():
    assert shannon_entropy([]) == 0.0
    assert shannon_entropy(["a", "a", "a"]) == 0.0
    assert shannon_entropy(["a", "b"]) == pytest.approx(1.0)
    assert shannon_entropy(["a", "b", "c", "d"]) == pytest.approx(2.0)


def test_completed_call_features(normalizer):
    extractor = FeatureExtractor(context_limit_bytes=100)
    envelope = _call(normalizer, "read", args="abcdefgh", output="abcd", latency_ms=25)

    record = extractor.extract(envelope)

    assert record.event_id == envelope.id
    assert record.latency_ms == 25
    assert record.status == "success"
    assert record.token_count == 3
    assert record.token_efficiency == pytest.approx(0.3333)
    assert record.context_size == 12
    assert record.context_utilization == pytest.approx(0.12)
    assert record.interaction_entropy == 0.0
    assert record.tool_diversity == 1


def test_context_utilization_is_capped(normalizer):
    extractor = FeatureExtractor(context_limit_bytes=10)

    record = extractor.extract(_call(normalizer, "read", args="x" * 50))

    assert record.context_utilization == 1.0


def test_entropy_tracks_each_session(normalizer):
    extractor = FeatureExtractor()

    extractor.extract(_call(normalizer, "read"))
    second = extractor.extract(_call(normalizer, "write"))
    other = extractor.extract(_call(normalizer, "read", session_id="sess-2"))

    assert second.interaction_entropy == pytest.approx(1.0)
    assert second.tool_diversity == 2
    assert other.interaction_entropy == 0.0
    assert other.tool_diversity == 1


def test_entropy_window_drops_old_calls(normalizer):
    extractor = FeatureExtractor(entropy_window=2)

    for tool in ("read", "write", "write"):
        record = extractor.extract(_call(normalizer, tool))

    assert record.interaction_entropy == 0.0
    assert record.tool_diversity == 1


def test_tracked_sessions_are_bounded(normalizer):
    extractor = FeatureExtractor(max_sessions=2)

    for session_id in ("s1", "s2", "s3"):
        extractor.extract(_call(normalizer, "read", session_id=session_id))
    # s1 was evicted, so its history starts over.
    record = extractor.extract(_call(normalizer, "write", session_id="s1"))

    assert record.tool_diversity == 1


def test_connection_and_server_features(normalizer):
    extractor = FeatureExtractor()
    connection = normalizer.create(
        {"type": "mcp.connection", "attrs": {"connection_state": "CONNECTED", "duration_ms": 120}}
    )
    server = normalizer.create(
        {"type": "mcp.server", "attrs": {"servers": ["a", "b", "c"], "changes": [{"added": "c"}]}}
    )

    connection_record = extractor.extract(connection)
    server_record = extractor.extract(server)

    assert connection_record.extra == {"connection_state": "CONNECTED", "connection_duration_ms": 120}
    assert connection_record.token_count is None
    assert server_record.extra == {"server_count": 3, "server_changes": 1}
