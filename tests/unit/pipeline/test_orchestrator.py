import asyncio
import json

import pytest

from mcp_telemetry.events.envelope import EnvelopeNormalizer
from mcp_telemetry.kernel.errors import StoreUnavailableError
from mcp_telemetry.pipeline.orchestrator import TelemetryPipeline
from mcp_telemetry.search.embeddings import EmbeddingClient
from mcp_telemetry.search.vector_index import VectorNames
from mcp_telemetry.streaming.streams import ConsumerGroups, Streams
from tests.support.stores import FakeDocumentStore, FakeRelationalStore
from tests.support.vector_index import FakeVectorIndex

pytestmark = pytest.mark.unit


@pytest.fixture
def documents():
    return FakeDocumentStore()


@pytest.fixture
def relational():
    return FakeRelationalStore()


@pytest.fixture
def pipeline(transport, documents, relational, normalizer, metrics):
    return TelemetryPipeline(
        transport,
        documents=documents,
        relational=relational,
        normalizer=normalizer,
        consumer_id="test-consumer",
        block_timeout_ms=0,
        process_interval_ms=10,
        metrics=metrics,
    )


def _call(normalizer, **overrides):
    raw = {
        "type": "mcp.call.complete",
        "server": "github",
        "tool": "search",
        "latency_ms": 100,
        "args": {"q": "weather"},
        "output": "sunny",
    }
    raw.update(overrides)
    return normalizer.create(raw)


def _stream_records(fake_redis, stream):
    return [EnvelopeNormalizer.deserialize(json.loads(fields["data"])) for _, fields in fake_redis.entries(stream)]


def _pending(fake_redis):
    return fake_redis.pending_ids(Streams.RAW, ConsumerGroups.INGESTORS)


@pytest.mark.asyncio
async def test_full_envelope_runs_every_step(pipeline, transport, fake_redis, documents, relational, normalizer):
    envelope = _call(normalizer)
    message_id = await transport.publish(Streams.RAW, envelope)

    assert await pipeline.initialize() is True
    assert await pipeline.process_batch() == 1

    assert documents.documents[envelope.id]["kind"] == "full"
    assert envelope.id in relational.events
    assert list(relational.aggregates.values())[0]["call_count"] == 1
    features = _stream_records(fake_redis, Streams.FEATURES)
    assert len(features) == 1
    assert features[0].type == "features"
    assert features[0].data["event_id"] == envelope.id
    assert features[0].data["source_message_id"] == message_id
    assert _pending(fake_redis) == []
    stats = pipeline.get_stats()
    assert stats["events_processed"] == 1
    assert stats["features_extracted"] == 1
    assert stats["last_processed_ms"] is not None


@pytest.mark.asyncio
async def test_sparse_marker_is_archived_and_acked(pipeline, transport, fake_redis, documents, relational, normalizer):
    sparse = normalizer.create_sparse({"type": "mcp.call.start", "server": "github", "tool": "search"})
    await transport.publish(Streams.RAW, sparse)

    await pipeline.process_batch()

    assert documents.documents[sparse.id]["kind"] == "sparse"
    assert relational.events == {}
    assert fake_redis.entries(Streams.FEATURES) == []
    assert _pending(fake_redis) == []
    assert pipeline.get_stats()["sparse_archived"] == 1


@pytest.mark.asyncio
async def test_undecodable_message_is_dropped_and_acked(pipeline, fake_redis, metrics):
    await fake_redis.xadd(Streams.RAW, {"kind": "full", "id": "x", "type": "t", "data": "{not json"})

    await pipeline.process_batch()

    assert _pending(fake_redis) == []
    assert pipeline.get_stats()["invalid"] == 1
    assert metrics.pipeline_events_total.labels(status="invalid")._value.get() == 1


@pytest.mark.asyncio
async def test_envelope_missing_required_fields_is_dropped(pipeline, fake_redis, documents):
    data = json.dumps({"kind": "full", "id": "evt-1", "type": "mcp.call.complete"})
    await fake_redis.xadd(Streams.RAW, {"kind": "full", "id": "evt-1", "type": "mcp.call.complete", "data": data})

    await pipeline.process_batch()

    assert _pending(fake_redis) == []
    assert documents.documents == {}
    assert pipeline.get_stats()["invalid"] == 1


@pytest.mark.asyncio
async def test_persistence_failure_leaves_message_pending(pipeline, transport, fake_redis, relational, normalizer, metrics):
    relational.fail_with = StoreUnavailableError("PostgreSQL event write failed")
    await transport.publish(Streams.RAW, _call(normalizer))

    await pipeline.process_batch()

    assert len(_pending(fake_redis)) == 1
    assert pipeline.get_stats()["errors"] == 1
    assert pipeline.get_stats()["events_processed"] == 0
    assert metrics.pipeline_events_total.labels(status="failed")._value.get() == 1


@pytest.mark.asyncio
async def test_archive_failure_leaves_message_pending(pipeline, transport, fake_redis, documents, relational, normalizer):
    documents.fail_with = StoreUnavailableError("MongoDB archive write failed")
    await transport.publish(Streams.RAW, _call(normalizer))

    await pipeline.process_batch()

    assert len(_pending(fake_redis)) == 1
    assert relational.events == {}


@pytest.mark.asyncio
async def test_restarted_consumer_replays_pending_message(
    pipeline, transport, fake_redis, documents, relational, normalizer, metrics
):
    envelope = _call(normalizer)
    relational.fail_with = StoreUnavailableError("PostgreSQL event write failed")
    await transport.publish(Streams.RAW, envelope)
    await pipeline.process_batch()
    # No retry within the same run.
    await pipeline.process_batch()
    assert len(_pending(fake_redis)) == 1

    relational.fail_with = None
    restarted = TelemetryPipeline(
        transport,
        documents=documents,
        relational=relational,
        normalizer=normalizer,
        consumer_id=pipeline.consumer_id,
        block_timeout_ms=0,
        metrics=metrics,
    )
    await restarted.initialize()

    assert await restarted.process_batch() == 1
    assert _pending(fake_redis) == []
    assert envelope.id in relational.events
    assert restarted.get_stats()["events_processed"] == 1


@pytest.mark.asyncio
async def test_other_consumers_pending_entries_are_not_replayed(
    pipeline, transport, fake_redis, relational, normalizer
):
    await transport.publish(Streams.RAW, _call(normalizer))
    await transport.read_batch(Streams.RAW, ConsumerGroups.INGESTORS, "someone-else")

    assert await pipeline.process_batch() == 0
    assert relational.events == {}
    assert len(_pending(fake_redis)) == 1


@pytest.mark.asyncio
async def test_trimmed_pending_entry_is_acked_and_dropped(pipeline, transport, fake_redis, normalizer):
    await transport.publish(Streams.RAW, _call(normalizer))
    await transport.read_batch(Streams.RAW, ConsumerGroups.INGESTORS, pipeline.consumer_id)
    fake_redis.streams[Streams.RAW].entries.clear()

    await pipeline.process_batch()

    assert _pending(fake_redis) == []
    assert pipeline.get_stats()["invalid"] == 1


@pytest.mark.asyncio
async def test_unavailable_stores_are_skipped(transport, fake_redis, normalizer, metrics):
    pipeline = TelemetryPipeline(
        transport,
        documents=FakeDocumentStore(available=False),
        relational=FakeRelationalStore(available=False),
        normalizer=normalizer,
        block_timeout_ms=0,
        metrics=metrics,
    )
    await transport.publish(Streams.RAW, _call(normalizer))

    await pipeline.process_batch()

    assert _pending(fake_redis) == []
    assert pipeline.get_stats()["stores"] == {"relational": False, "documents": False, "semantic": False}


@pytest.mark.asyncio
async def test_error_call_publishes_anomaly(pipeline, transport, fake_redis, relational, normalizer, metrics):
    envelope = _call(normalizer, error={"message": "rate limited", "code": 429})
    await transport.publish(Streams.RAW, envelope)

    await pipeline.process_batch()

    anomalies = _stream_records(fake_redis, Streams.ANOMALY)
    assert [a.data["type"] for a in anomalies] == ["error_pattern"]
    assert anomalies[0].data["event_id"] == envelope.id
    assert [a.type for a in relational.anomalies.values()] == ["error_pattern"]
    recent = await transport.get_recent_anomalies()
    assert recent[0]["event_id"] == envelope.id
    assert pipeline.get_stats()["anomalies_detected"] == 1
    assert metrics.anomalies_detected_total.labels(anomaly_type="error_pattern", severity="medium")._value.get() == 1


@pytest.mark.asyncio
async def test_hot_metrics_accumulate_per_tool(pipeline, transport, normalizer):
    await transport.publish(Streams.RAW, _call(normalizer, latency_ms=100))
    await transport.publish(Streams.RAW, _call(normalizer, latency_ms=300, error={"message": "boom"}))

    await pipeline.process_batch()
    stats = await transport.get_hot_metrics("github", "search")

    assert stats["calls"] == 2
    assert stats["errors"] == 1
    assert stats["avg_latency"] == 200
    assert stats["p95_latency"] == 300
    assert stats["error_rate"] == 0.5


@pytest.mark.asyncio
async def test_disabled_steps_are_skipped(transport, fake_redis, normalizer, metrics):
    pipeline = TelemetryPipeline(
        transport,
        normalizer=normalizer,
        block_timeout_ms=0,
        feature_extraction_enabled=False,
        anomaly_detection_enabled=False,
        metrics=metrics,
    )
    await transport.publish(Streams.RAW, _call(normalizer, error={"message": "boom"}))

    await pipeline.process_batch()

    assert fake_redis.entries(Streams.FEATURES) == []
    assert fake_redis.entries(Streams.ANOMALY) == []
    assert pipeline.get_stats()["events_processed"] == 1


@pytest.mark.asyncio
async def test_disabled_pipeline_does_not_initialize(transport, metrics):
    pipeline = TelemetryPipeline(transport, enabled=False, metrics=metrics)

    assert await pipeline.initialize() is False


@pytest.fixture
def semantic_pipeline(transport, embedding_service, documents, relational, normalizer, metrics):
    embeddings = EmbeddingClient(
        "http://embeddings.test",
        "test-model",
        retry_delay_ms=0,
        retry_attempts=1,
        http_transport=embedding_service.transport(),
        metrics=metrics,
    )
    return TelemetryPipeline(
        transport,
        documents=documents,
        relational=relational,
        embeddings=embeddings,
        vector_index=FakeVectorIndex(),
        normalizer=normalizer,
        block_timeout_ms=0,
        metrics=metrics,
    )


@pytest.mark.asyncio
async def test_completed_call_is_embedded_and_indexed(semantic_pipeline, transport, relational, normalizer):
    envelope = _call(normalizer)
    await transport.publish(Streams.RAW, envelope)

    await semantic_pipeline.initialize()
    await semantic_pipeline.process_batch()
    await semantic_pipeline.close()

    point = semantic_pipeline.vector_index.points[envelope.id]
    assert semantic_pipeline.get_stats()["embeddings_generated"] == 1
    assert set(point.vectors) == {VectorNames.INPUT_TEXT, VectorNames.OUTPUT_TEXT}
    assert point.payload["tool_id"] == "github__search"
    assert point.payload["created_at"] == envelope.created
    assert relational.embedding_refs[0]["event_id"] == envelope.id
    assert relational.embedding_refs[0]["metadata"] == {"dimension": 8, "model": "test-model"}


@pytest.mark.asyncio
async def test_embedding_failure_does_not_block_ack(semantic_pipeline, transport, fake_redis, embedding_service, normalizer):
    await semantic_pipeline.initialize()
    embedding_service.fail_next(400)
    await transport.publish(Streams.RAW, _call(normalizer))

    await semantic_pipeline.process_batch()
    stats = semantic_pipeline.get_stats()
    await semantic_pipeline.close()

    assert _pending(fake_redis) == []
    assert stats["embedding_failures"] == 1
    assert stats["events_processed"] == 1
    assert semantic_pipeline.vector_index.points == {}


@pytest.mark.asyncio
async def test_embedding_init_failure_disables_semantic_steps(semantic_pipeline, embedding_service):
    embedding_service.fail_next(500)

    assert await semantic_pipeline.initialize() is True
    await semantic_pipeline.close()

    assert semantic_pipeline.semantic_ready is False


@pytest.mark.asyncio
async def test_background_loop_processes_until_stopped(pipeline, transport, fake_redis, normalizer):
    for _ in range(3):
        await transport.publish(Streams.RAW, _call(normalizer))
    await pipeline.initialize()

    await pipeline.start()
    for _ in range(200):
        if pipeline.get_stats()["events_processed"] == 3:
            break
        await asyncio.sleep(0.01)
    await pipeline.stop()

    assert pipeline.get_stats()["events_processed"] == 3
    assert not pipeline.is_running
    assert _pending(fake_redis) == []


@pytest.mark.asyncio
async def test_close_releases_stores_but_not_transport(pipeline, transport, documents, relational):
    await pipeline.initialize()

    await pipeline.close()

    assert documents.closed
    assert relational.closed
    assert transport.is_connected
