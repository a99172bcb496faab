import pytest

from mcp_telemetry.events.envelope import EnvelopeNormalizer
from mcp_telemetry.events.types import Envelope, EventStatus, SparseEnvelope
from mcp_telemetry.ingestion.ingestor import TelemetryIngestor
from mcp_telemetry.kernel.errors import TransportUnavailableError
from mcp_telemetry.streaming.streams import ConsumerGroups, StreamTransport, Streams

pytestmark = pytest.mark.unit


def _ingestor(transport, normalizer, metrics, **kwargs):
    kwargs.setdefault("flush_interval_ms", 60_000)
    kwargs.setdefault("flush_threshold", 1000)
    return TelemetryIngestor(transport, normalizer=normalizer, metrics=metrics, **kwargs)


async def _published(transport):
    messages = await transport.read_batch(Streams.RAW, ConsumerGroups.INGESTORS, "reader", count=100)
    return [EnvelopeNormalizer.deserialize(m.payload) for m in messages]


@pytest.mark.asyncio
async def test_disabled_ingestor_still_returns_event_ids(transport, normalizer, metrics):
    ingestor = _ingestor(transport, normalizer, metrics, enabled=False)

    assert await ingestor.initialize() is False
    event_id = ingestor.capture_tool_start({"server": "github", "tool": "search"})

    assert event_id
    assert ingestor.buffer_size == 0


@pytest.mark.asyncio
async def test_events_before_initialize_are_dropped(transport, normalizer, metrics):
    ingestor = _ingestor(transport, normalizer, metrics)

    ingestor.capture_event("custom.event", {"foo": "bar"})
    stats = await ingestor.get_stats()

    assert ingestor.buffer_size == 0
    assert stats["dropped"] == 1
    assert metrics.events_dropped_total.labels(reason="not_initialized")._value.get() == 1


@pytest.mark.asyncio
async def test_full_buffer_drops_newest_events(transport, normalizer, metrics):
    ingestor = _ingestor(
        transport, normalizer, metrics, drop_on_failure=False, flush_threshold=5, max_buffer_size=5
    )

    for index in range(8):
        ingestor.capture_event("custom.event", {"n": index})
    stats = await ingestor.get_stats()

    assert ingestor.buffer_size == 5
    assert stats["dropped"] == 3
    assert stats["buffer_full_drops"] == 3
    assert metrics.events_dropped_total.labels(reason="buffer_full")._value.get() == 3

    await ingestor.initialize()
    await ingestor.flush()
    published = await _published(transport)
    await ingestor.close()

    assert [envelope.attrs["n"] for envelope in published] == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_initialize_fails_soft_when_transport_is_down(fake_redis, normalizer, metrics):
    fake_redis.failing.add("ping")
    ingestor = _ingestor(StreamTransport(client=fake_redis, metrics=metrics), normalizer, metrics)

    assert await ingestor.initialize() is False
    assert not ingestor.is_initialized


@pytest.mark.asyncio
async def test_initialize_raises_when_drop_on_failure_is_off(fake_redis, normalizer, metrics):
    fake_redis.failing.add("ping")
    ingestor = _ingestor(
        StreamTransport(client=fake_redis, metrics=metrics),
        normalizer,
        metrics,
        drop_on_failure=False,
    )

    with pytest.raises(TransportUnavailableError):
        await ingestor.initialize()


@pytest.mark.asyncio
async def test_flush_publishes_in_capture_order(transport, normalizer, metrics):
    ingestor = _ingestor(transport, normalizer, metrics)
    await ingestor.initialize()

    event_id = ingestor.capture_tool_start({"server": "github", "tool": "search", "user_id": "u1"})
    ingestor.capture_tool_complete(
        event_id,
        {"server": "github", "tool": "search", "user_id": "u1", "latency_ms": 42, "args": {"q": "x"}, "output": "ok"},
    )
    published = await ingestor.flush()
    envelopes = await _published(transport)
    await ingestor.close()

    assert published == 2
    assert isinstance(envelopes[0], SparseEnvelope)
    assert isinstance(envelopes[1], Envelope)
    assert envelopes[0].id == envelopes[1].id == event_id
    assert envelopes[0].session_id == envelopes[1].session_id
    assert envelopes[1].latency_ms == 42
    assert envelopes[1].status == EventStatus.SUCCESS.value
    assert envelopes[1].tool_id == "github__search"


@pytest.mark.asyncio
async def test_flush_counts_publish_failures(transport, fake_redis, normalizer, metrics):
    ingestor = _ingestor(transport, normalizer, metrics)
    await ingestor.initialize()
    ingestor.capture_event("custom.event")
    fake_redis.failing.add("xadd")

    assert await ingestor.flush() == 0
    stats = await ingestor.get_stats()
    fake_redis.failing.clear()
    await ingestor.close()

    assert stats["publish_failures"] == 1
    assert stats["queue_size"] == 0


@pytest.mark.asyncio
async def test_threshold_triggers_background_flush(transport, normalizer, metrics):
    ingestor = _ingestor(transport, normalizer, metrics, flush_threshold=2)
    await ingestor.initialize()

    ingestor.capture_event("custom.one")
    ingestor.capture_event("custom.two")
    await ingestor._threshold_task
    envelopes = await _published(transport)
    await ingestor.close()

    assert [e.type for e in envelopes] == ["custom.one", "custom.two"]


@pytest.mark.asyncio
async def test_wrapped_handler_records_success(transport, normalizer, metrics):
    ingestor = _ingestor(transport, normalizer, metrics)
    await ingestor.initialize()

    @ingestor.instrument_tool("fs", "read", tenant="acme")
    async def read_file(args):
        return {"content": "hello"}

    result = await read_file({"path": "/tmp/a"})
    await ingestor.flush()
    envelopes = await _published(transport)
    await ingestor.close()

    complete = envelopes[1]
    assert result == {"content": "hello"}
    assert complete.tenant == "acme"
    assert complete.tool_id == "fs__read"
    assert complete.status == EventStatus.SUCCESS.value
    assert complete.args_meta.preview == '{"path":"/tmp/a"}'
    assert complete.latency_ms >= 0


@pytest.mark.asyncio
async def test_wrapped_handler_reraises_and_records_error(transport, normalizer, metrics):
    ingestor = _ingestor(transport, normalizer, metrics)
    await ingestor.initialize()

    async def broken(args):
        raise LookupError("no such file")

    wrapped = ingestor.wrap_tool_execution(broken, {"server": "fs", "tool": "read"})

    with pytest.raises(LookupError, match="no such file"):
        await wrapped({"path": "/missing"})
    await ingestor.flush()
    envelopes = await _published(transport)
    await ingestor.close()

    complete = envelopes[1]
    assert complete.status == EventStatus.ERROR.value
    assert complete.error_meta.error_class == "LookupError"
    assert complete.error_meta.message == "no such file"


@pytest.mark.asyncio
async def test_capture_event_keeps_unknown_keys_as_attrs(transport, normalizer, metrics):
    ingestor = _ingestor(transport, normalizer, metrics)
    await ingestor.initialize()

    ingestor.capture_event("custom.event", {"server": "github", "region": "eu", "attrs": {"build": 7}})
    await ingestor.flush()
    envelopes = await _published(transport)
    await ingestor.close()

    assert envelopes[0].server == "github"
    assert envelopes[0].attrs == {"build": 7, "region": "eu"}


@pytest.mark.asyncio
async def test_connection_and_server_events(transport, normalizer, metrics):
    ingestor = _ingestor(transport, normalizer, metrics)
    await ingestor.initialize()

    ingestor.capture_connection_event({"server": "github", "state": "CONNECTED"})
    ingestor.capture_server_event({"event_type": "servers_updated", "servers": ["github", "fs"]})
    await ingestor.flush()
    envelopes = await _published(transport)
    await ingestor.close()

    assert envelopes[0].type == "mcp.connection"
    assert envelopes[0].attrs["connection_state"] == "CONNECTED"
    assert envelopes[1].type == "mcp.server"
    assert envelopes[1].attrs["servers"] == ["github", "fs"]


@pytest.mark.asyncio
async def test_close_flushes_and_keeps_transport_open(transport, normalizer, metrics):
    ingestor = _ingestor(transport, normalizer, metrics)
    await ingestor.initialize()
    ingestor.capture_event("custom.event")

    await ingestor.close()
    envelopes = await _published(transport)

    assert len(envelopes) == 1
    assert transport.is_connected
    assert not ingestor.is_initialized
