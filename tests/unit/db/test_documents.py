import pytest

from mcp_telemetry.db.documents import EVENTS_COLLECTION, DocumentStore
from mcp_telemetry.kernel.errors import StoreUnavailableError
from tests.support.mongo_store import FakeMongoDatabase

pytestmark = pytest.mark.unit


@pytest.fixture
def mongo():
    return FakeMongoDatabase()


@pytest.fixture
def store(mongo):
    return DocumentStore("mongodb://localhost:27017", db=mongo)


def _pair(normalizer):
    complete = normalizer.create(
        {"type": "mcp.call.complete", "server": "fs", "tool": "read", "latency_ms": 12, "output": "ok"}
    )
    start = normalizer.create_sparse(
        {"id": complete.id, "type": "mcp.call.start", "phase": "start", "server": "fs", "tool": "read"}
    )
    return start, complete


@pytest.mark.asyncio
async def test_start_marker_after_completion_keeps_full_envelope(store, mongo, normalizer):
    start, complete = _pair(normalizer)

    await store.archive_envelope(complete)
    await store.archive_envelope(start)

    archived = await store.get_envelope(complete.id)
    assert archived["kind"] == "full"
    assert archived["status"] == "success"
    assert mongo[EVENTS_COLLECTION].documents[complete.id]["kind"] == "full"


@pytest.mark.asyncio
async def test_completion_replaces_start_marker(store, normalizer):
    start, complete = _pair(normalizer)

    await store.archive_envelope(start)
    assert (await store.get_envelope(start.id))["kind"] == "sparse"

    await store.archive_envelope(complete)
    archived = await store.get_envelope(complete.id)
    assert archived["kind"] == "full"
    assert archived["latency_ms"] == 12


@pytest.mark.asyncio
async def test_redelivered_envelope_is_idempotent(store, mongo, normalizer):
    _, complete = _pair(normalizer)

    await store.archive_envelope(complete)
    await store.archive_envelope(complete)

    assert list(mongo[EVENTS_COLLECTION].documents) == [complete.id]


@pytest.mark.asyncio
async def test_write_failure_raises_store_unavailable(store, mongo, normalizer):
    _, complete = _pair(normalizer)
    mongo.failing.add("replace_one")

    with pytest.raises(StoreUnavailableError) as excinfo:
        await store.archive_envelope(complete)

    assert excinfo.value.meta["event_id"] == complete.id


@pytest.mark.asyncio
async def test_unconnected_store_skips_writes(normalizer):
    store = DocumentStore("mongodb://localhost:27017")
    _, complete = _pair(normalizer)

    await store.archive_envelope(complete)

    assert not store.is_available
    assert await store.get_envelope(complete.id) is None
    assert await store.ping() is False


@pytest.mark.asyncio
async def test_ping_and_close(store, mongo):
    assert await store.ping() is True
    mongo.failing.add("ping")
    assert await store.ping() is False

    await store.close()
    assert not store.is_available
