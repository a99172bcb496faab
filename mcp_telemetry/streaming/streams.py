"""
Stream Transport

Redis Streams transport for telemetry envelopes: capped streams, consumer
groups, a worker-pool consume loop and the hot-metrics side cache.

Streams:
- telemetry:raw       -> group `ingestors` (pipeline orchestrator)
- telemetry:features  -> group `writers`
- telemetry:anomaly   -> group `detectors`
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from mcp_telemetry.config import Settings
from mcp_telemetry.events.envelope import EnvelopeNormalizer, format_tool_id
from mcp_telemetry.events.types import AnomalyRecord, AnyEnvelope
from mcp_telemetry.kernel.errors import TransportUnavailableError
from mcp_telemetry.kernel.serialization import json_dumps_canonical, json_loads
from mcp_telemetry.kernel.time import now_ms
from mcp_telemetry.logging_config import mask_url
from mcp_telemetry.monitoring.metrics import Metrics, get_metrics

logger = structlog.get_logger()


class Streams:
    RAW = "telemetry:raw"
    FEATURES = "telemetry:features"
    ANOMALY = "telemetry:anomaly"


class ConsumerGroups:
    INGESTORS = "ingestors"
    WRITERS = "writers"
    DETECTORS = "detectors"


STREAM_GROUPS = {
    Streams.RAW: ConsumerGroups.INGESTORS,
    Streams.FEATURES: ConsumerGroups.WRITERS,
    Streams.ANOMALY: ConsumerGroups.DETECTORS,
}


class HotKeys:
    TOOL_STATS = "telemetry:tool:stats"
    TOP_LATENCY = "telemetry:top:latency"
    TOP_ERROR_RATE = "telemetry:top:error_rate"
    RECENT_ANOMALIES = "telemetry:recent:anomalies"


DIMENSION_KEY_PREFIX = "telemetry:embed:dim"

TOOL_STATS_TTL_SECONDS = 24 * 60 * 60
RECENT_ANOMALIES_TTL_SECONDS = 7 * 24 * 60 * 60
TOP_TOOLS_CAPACITY = 100
RECENT_ANOMALIES_CAPACITY = 100

_TOP_KEYS = {
    "latency": HotKeys.TOP_LATENCY,
    "error_rate": HotKeys.TOP_ERROR_RATE,
}


@dataclass
class StreamMessage:
    """One delivered stream entry. `payload` is None when `data` was not valid JSON."""

    stream: str
    message_id: str
    kind: str | None
    payload: dict[str, Any] | None


MessageHandler = Callable[[StreamMessage], Awaitable[Any] | Any]


def _as_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _decode_message(stream: str, message_id: Any, fields: Mapping[Any, Any]) -> StreamMessage:
    decoded = {_as_str(k): _as_str(v) for k, v in (fields or {}).items()}
    payload: dict[str, Any] | None
    try:
        loaded = json_loads(decoded.get("data", ""))
        payload = loaded if isinstance(loaded, dict) else None
    except ValueError:
        payload = None
    return StreamMessage(
        stream=stream,
        message_id=_as_str(message_id),
        kind=decoded.get("kind"),
        payload=payload,
    )


def _numeric(value: str) -> float | str:
    try:
        return float(value)
    except (TypeError, ValueError):
        return value


class StreamTransport:
    """
    Durable telemetry log over Redis Streams.

    `publish` never raises; consumer loops survive per-iteration errors and
    only exit on `stop_consumers()` / `close()`.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        max_length: int = 100_000,
        block_timeout_ms: int = 5000,
        max_retries: int = 5,
        retry_delay_ms: int = 1000,
        max_reconnect_delay_ms: int = 30_000,
        client: Redis | None = None,
        metrics: Metrics | None = None,
    ):
        self.redis_url = redis_url
        self.max_length = max_length
        self.block_timeout_ms = block_timeout_ms
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.max_reconnect_delay_ms = max_reconnect_delay_ms
        self._client = client
        self._metrics = metrics or get_metrics()
        self._connected = False
        self._stop_event = asyncio.Event()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "StreamTransport":
        return cls(
            settings.redis_url,
            max_length=settings.redis_stream_max_length,
            block_timeout_ms=settings.redis_block_timeout_ms,
            max_retries=settings.redis_max_retries,
            retry_delay_ms=settings.redis_retry_delay_ms,
            max_reconnect_delay_ms=settings.redis_max_reconnect_delay_ms,
            **kwargs,
        )

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _build_client(self) -> Redis:
        retry = Retry(
            ExponentialBackoff(
                cap=self.max_reconnect_delay_ms / 1000,
                base=self.retry_delay_ms / 1000,
            ),
            self.max_retries,
        )
        return Redis.from_url(
            self.redis_url,
            decode_responses=True,
            retry=retry,
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
        )

    async def initialize(self) -> None:
        """
        Connect, ping and create streams/groups.

        Raises:
            TransportUnavailableError: Redis cannot be reached.
        """
        if self._client is None:
            self._client = self._build_client()

        try:
            await self._client.ping()
        except Exception as exc:
            logger.error(
                "Failed to connect to Redis",
                redis_url=mask_url(self.redis_url),
                error=str(exc),
            )
            self._connected = False
            raise TransportUnavailableError(
                "Redis stream transport unreachable",
                meta={"redis_url": mask_url(self.redis_url), "error": str(exc)},
            ) from exc

        for stream, group in STREAM_GROUPS.items():
            await self.ensure_group(stream, group)

        self._connected = True
        self._stop_event.clear()
        logger.info(
            "Stream transport initialized",
            redis_url=mask_url(self.redis_url),
            streams=list(STREAM_GROUPS),
            max_length=self.max_length,
        )

    async def ensure_group(self, stream: str, group: str, start_id: str = "0") -> None:
        """Create the stream and consumer group. An existing group is a no-op."""
        try:
            await self._client.xgroup_create(stream, group, id=start_id, mkstream=True)
            logger.debug("Consumer group created", stream=stream, group=group)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    # ------------------------------------------------------------------
    # Producer
    # ------------------------------------------------------------------

    async def publish(self, stream: str, envelope: AnyEnvelope) -> str | None:
        """Append an envelope. Returns the message id, or None if it was not written."""
        if not self._connected or self._client is None:
            logger.debug("Stream transport not connected, dropping publish", stream=stream)
            self._metrics.track_stream_publish(stream, success=False)
            return None

        fields = {
            "kind": envelope.kind,
            "id": envelope.id,
            "type": envelope.type or "",
            "data": EnvelopeNormalizer.serialize(envelope),
        }
        try:
            message_id = await self._client.xadd(
                stream,
                fields,
                maxlen=self.max_length,
                approximate=True,
            )
        except Exception as exc:
            logger.warning(
                "Failed to publish telemetry envelope",
                stream=stream,
                envelope_id=envelope.id,
                error=str(exc),
            )
            self._metrics.track_stream_publish(stream, success=False)
            return None

        self._metrics.track_stream_publish(stream, success=True)
        return _as_str(message_id)

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def read_batch(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 10,
        block_ms: int | None = None,
        start_id: str = ">",
    ) -> list[StreamMessage]:
        """
        Read up to `count` messages for this consumer (one XREADGROUP call).

        `start_id=">"` reads new messages. Any other id reads this consumer's
        own pending entries after that id, without blocking.
        """
        if self._client is None:
            raise TransportUnavailableError("Stream transport not initialized")

        block = self.block_timeout_ms if block_ms is None else block_ms
        response = await self._client.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={stream: start_id},
            count=count,
            block=(block or None) if start_id == ">" else None,
        )
        if not response:
            return []

        entries = response.items() if isinstance(response, Mapping) else response
        messages: list[StreamMessage] = []
        for stream_name, records in entries:
            for message_id, fields in records:
                messages.append(_decode_message(_as_str(stream_name), message_id, fields))
        return messages

    async def consume(
        self,
        stream: str,
        group: str,
        consumer: str,
        handler: MessageHandler,
        *,
        count: int = 10,
        block_ms: int | None = None,
        auto_ack: bool = True,
        concurrency: int = 1,
        queue_maxsize: int = 100,
    ) -> None:
        """
        Run a consumer until `stop_consumers()` or `close()`.

        A reader feeds a bounded queue; `concurrency` workers run the handler.
        Handler failures leave the message unacknowledged and do not stop
        the loop. Read failures back off exponentially (capped).
        """
        queue: asyncio.Queue[StreamMessage] = asyncio.Queue(maxsize=max(1, queue_maxsize))
        workers = [
            asyncio.create_task(self._consume_worker(index, queue, group, handler, auto_ack))
            for index in range(max(1, concurrency))
        ]
        delay = self.retry_delay_ms / 1000
        logger.info(
            "Starting stream consumer",
            stream=stream,
            group=group,
            consumer=consumer,
            concurrency=len(workers),
        )

        try:
            while not self._stop_event.is_set():
                try:
                    messages = await self.read_batch(stream, group, consumer, count, block_ms)
                    delay = self.retry_delay_ms / 1000
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    if self._stop_event.is_set():
                        break
                    logger.warning(
                        "Stream read failed, backing off",
                        stream=stream,
                        group=group,
                        delay_s=delay,
                        error=str(exc),
                    )
                    await self._wait_for_stop(delay)
                    delay = min(delay * 2, self.max_reconnect_delay_ms / 1000)
                    continue

                for message in messages:
                    await queue.put(message)

            # Drain what was already read before the workers exit.
            await queue.join()
        finally:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            logger.info("Stream consumer stopped", stream=stream, group=group, consumer=consumer)

    async def _consume_worker(
        self,
        index: int,
        queue: asyncio.Queue[StreamMessage],
        group: str,
        handler: MessageHandler,
        auto_ack: bool,
    ) -> None:
        while True:
            message = await queue.get()
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
                if auto_ack:
                    await self.ack(message.stream, group, message.message_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "Stream handler failed",
                    worker=index,
                    stream=message.stream,
                    message_id=message.message_id,
                    error=str(exc),
                )
                self._metrics.inc_consumer_handler_error(message.stream, group)
            finally:
                queue.task_done()

    async def _wait_for_stop(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def ack(self, stream: str, group: str, *message_ids: str) -> int:
        """Acknowledge messages. Returns the number acknowledged (0 on failure)."""
        if not message_ids or self._client is None:
            return 0
        try:
            return int(await self._client.xack(stream, group, *message_ids))
        except Exception as exc:
            logger.warning("Failed to ack messages", stream=stream, group=group, error=str(exc))
            return 0

    async def reset_group(self, stream: str, group: str, start_id: str = "0") -> None:
        """Move the group cursor, e.g. to `0` to replay the whole stream."""
        await self._client.xgroup_setid(stream, group, id=start_id)
        logger.info("Consumer group reset", stream=stream, group=group, start_id=start_id)

    def stop_consumers(self) -> None:
        self._stop_event.set()

    # ------------------------------------------------------------------
    # Hot metrics (best-effort cache, never the system of record)
    # ------------------------------------------------------------------

    async def update_hot_metrics(self, server: str, tool: str, metrics: Mapping[str, Any]) -> None:
        """Write per-tool stats and refresh the top-latency / top-error-rate boards."""
        if not self._connected:
            return
        tool_id = format_tool_id(server, tool)
        key = f"{HotKeys.TOOL_STATS}:{tool_id}"
        mapping = {"last_update": str(now_ms())}
        mapping.update({name: str(value) for name, value in metrics.items() if value is not None})

        try:
            pipe = self._client.pipeline(transaction=False)
            pipe.hset(key, mapping=mapping)
            pipe.expire(key, TOOL_STATS_TTL_SECONDS)
            if metrics.get("p95_latency") is not None:
                pipe.zadd(HotKeys.TOP_LATENCY, {tool_id: float(metrics["p95_latency"])})
                pipe.zremrangebyrank(HotKeys.TOP_LATENCY, 0, -(TOP_TOOLS_CAPACITY + 1))
            if metrics.get("error_rate") is not None:
                pipe.zadd(HotKeys.TOP_ERROR_RATE, {tool_id: float(metrics["error_rate"])})
                pipe.zremrangebyrank(HotKeys.TOP_ERROR_RATE, 0, -(TOP_TOOLS_CAPACITY + 1))
            await pipe.execute()
        except Exception as exc:
            logger.warning("Failed to update hot metrics", tool_id=tool_id, error=str(exc))

    async def get_hot_metrics(self, server: str, tool: str) -> dict[str, Any]:
        if not self._connected:
            return {}
        key = f"{HotKeys.TOOL_STATS}:{format_tool_id(server, tool)}"
        try:
            raw = await self._client.hgetall(key)
        except Exception as exc:
            logger.warning("Failed to read hot metrics", key=key, error=str(exc))
            return {}
        return {_as_str(name): _numeric(_as_str(value)) for name, value in (raw or {}).items()}

    async def get_top_tools(self, metric: str = "latency", limit: int = 10) -> list[dict[str, Any]]:
        """Highest-scoring tools for `latency` or `error_rate`."""
        key = _TOP_KEYS.get(metric)
        if key is None:
            raise ValueError(f"Unknown hot metric: {metric!r}")
        if not self._connected:
            return []
        try:
            rows = await self._client.zrevrange(key, 0, limit - 1, withscores=True)
        except Exception as exc:
            logger.warning("Failed to read top tools", metric=metric, error=str(exc))
            return []
        return [{"tool_id": _as_str(member), "score": float(score)} for member, score in rows]

    async def cache_anomaly(self, anomaly: AnomalyRecord) -> None:
        if not self._connected:
            return
        try:
            pipe = self._client.pipeline(transaction=False)
            pipe.lpush(HotKeys.RECENT_ANOMALIES, json_dumps_canonical(anomaly.to_dict()))
            pipe.ltrim(HotKeys.RECENT_ANOMALIES, 0, RECENT_ANOMALIES_CAPACITY - 1)
            pipe.expire(HotKeys.RECENT_ANOMALIES, RECENT_ANOMALIES_TTL_SECONDS)
            await pipe.execute()
        except Exception as exc:
            logger.warning("Failed to cache anomaly", anomaly_id=anomaly.id, error=str(exc))

    async def get_recent_anomalies(self, limit: int = 10) -> list[dict[str, Any]]:
        if not self._connected:
            return []
        try:
            rows = await self._client.lrange(HotKeys.RECENT_ANOMALIES, 0, limit - 1)
        except Exception as exc:
            logger.warning("Failed to read recent anomalies", error=str(exc))
            return []
        anomalies = []
        for row in rows:
            try:
                anomalies.append(json_loads(row))
            except ValueError:
                continue
        return anomalies

    async def cache_dimension(self, model: str, dimension: int) -> None:
        """Remember an embedding model's dimension across processes."""
        if not self._connected:
            return
        try:
            await self._client.set(f"{DIMENSION_KEY_PREFIX}:{model}", str(dimension))
        except Exception as exc:
            logger.warning("Failed to cache embedding dimension", model=model, error=str(exc))

    async def get_cached_dimension(self, model: str) -> int | None:
        if not self._connected:
            return None
        try:
            value = await self._client.get(f"{DIMENSION_KEY_PREFIX}:{model}")
        except Exception as exc:
            logger.warning("Failed to read cached embedding dimension", model=model, error=str(exc))
            return None
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Introspection / lifecycle
    # ------------------------------------------------------------------

    async def get_stream_stats(self) -> dict[str, Any]:
        """Length and consumer-group state per stream."""
        stats: dict[str, Any] = {}
        if not self._connected:
            return stats
        for stream in STREAM_GROUPS:
            try:
                length = await self._client.xlen(stream)
                groups = await self._client.xinfo_groups(stream)
            except Exception as exc:
                logger.warning("Failed to read stream stats", stream=stream, error=str(exc))
                stats[stream] = {"error": str(exc)}
                continue
            stats[stream] = {
                "length": int(length),
                "groups": [
                    {
                        "name": _as_str(group.get("name")),
                        "consumers": group.get("consumers"),
                        "pending": group.get("pending"),
                        "last_delivered_id": _as_str(group.get("last-delivered-id")),
                    }
                    for group in groups
                ],
            }
        return stats

    async def ping(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except Exception:
            return False

    async def close(self) -> None:
        """Stop consumer loops and release the connection."""
        self._stop_event.set()
        self._connected = False
        if self._client is not None:
            try:
                await self._client.aclose()
            finally:
                self._client = None
        logger.info("Stream transport closed")
