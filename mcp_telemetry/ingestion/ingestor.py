"""
Telemetry Ingestor

Front door for telemetry capture. Capture calls only build an envelope and
append it to a local buffer; a background loop publishes the buffer to the
raw stream in FIFO order. Nothing here ever raises into the tool call path.
"""

from __future__ import annotations

import asyncio
import functools
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import structlog

from mcp_telemetry.config import Settings
from mcp_telemetry.events.envelope import EnvelopeNormalizer
from mcp_telemetry.events.types import AnyEnvelope, EventPhase, EventStatus, EventType
from mcp_telemetry.ingestion.sessions import SessionManager
from mcp_telemetry.kernel.ids import new_event_id
from mcp_telemetry.kernel.time import now_ms
from mcp_telemetry.monitoring.metrics import Metrics, get_metrics
from mcp_telemetry.streaming.streams import StreamTransport, Streams

logger = structlog.get_logger()

# Raw capture fields the normalizer understands; anything else from
# `capture_event` data is kept under `attrs`.
_ENVELOPE_FIELDS = frozenset({
    "id", "tenant", "session_id", "sessionId", "server", "tool", "status",
    "latency_ms", "latency", "args", "arguments", "output", "result", "error",
    "chain_id", "chainId", "parent_id", "parentId", "chain_length", "chainLength",
    "correlation_id", "correlationId", "user_agent", "userAgent", "tags",
    "classification", "source", "source_version", "timestamp_ms",
})

_CALL_FIELDS = (
    "tenant", "server", "tool", "chain_id", "chainId", "parent_id", "parentId",
    "chain_length", "chainLength", "correlation_id", "correlationId",
    "user_agent", "userAgent", "tags",
)


def _pick(context: Mapping[str, Any], keys: tuple[str, ...]) -> dict[str, Any]:
    return {key: context[key] for key in keys if context.get(key) is not None}


class TelemetryIngestor:
    """
    Non-blocking capture of tool calls, connection and server events.

    Flushes on `flush_interval_ms` or as soon as `flush_threshold` envelopes
    are buffered.
    """

    def __init__(
        self,
        transport: StreamTransport,
        *,
        normalizer: EnvelopeNormalizer | None = None,
        sessions: SessionManager | None = None,
        enabled: bool = True,
        drop_on_failure: bool = True,
        flush_threshold: int = 100,
        max_buffer_size: int = 10_000,
        flush_interval_ms: int = 100,
        session_sweep_ms: int = 60_000,
        stream: str = Streams.RAW,
        source_version: str | None = None,
        metrics: Metrics | None = None,
    ):
        self.transport = transport
        self.normalizer = normalizer or EnvelopeNormalizer()
        self.sessions = sessions or SessionManager()
        self.enabled = enabled
        self.drop_on_failure = drop_on_failure
        self.flush_threshold = max(1, flush_threshold)
        self.max_buffer_size = max(self.flush_threshold, max_buffer_size)
        self.flush_interval = flush_interval_ms / 1000
        self.session_sweep_interval = session_sweep_ms / 1000
        self.stream = stream
        self.source_version = source_version
        self._metrics = metrics or get_metrics()
        self._buffer: list[AnyEnvelope] = []
        self._flush_lock = asyncio.Lock()
        self._flush_loop_task: asyncio.Task | None = None
        self._sweep_task: asyncio.Task | None = None
        self._threshold_task: asyncio.Task | None = None
        self._initialized = False
        self._stats = {
            "captured": 0,
            "dropped": 0,
            "buffer_full_drops": 0,
            "published": 0,
            "publish_failures": 0,
            "flushes": 0,
        }

    @classmethod
    def from_settings(cls, settings: Settings, transport: StreamTransport, **kwargs: Any) -> "TelemetryIngestor":
        kwargs.setdefault("normalizer", EnvelopeNormalizer.from_settings(settings))
        kwargs.setdefault("sessions", SessionManager(settings.telemetry_session_timeout_ms / 1000))
        return cls(
            transport,
            enabled=settings.telemetry_enabled,
            drop_on_failure=settings.telemetry_drop_on_failure,
            flush_threshold=settings.telemetry_flush_threshold,
            max_buffer_size=settings.telemetry_max_buffer_size,
            flush_interval_ms=settings.telemetry_batch_flush_ms,
            session_sweep_ms=settings.telemetry_session_sweep_ms,
            **kwargs,
        )

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def buffer_size(self) -> int:
        return len(self._buffer)

    async def initialize(self) -> bool:
        """
        Connect the transport and start the flush and session-sweep loops.

        Returns False when disabled, or when the transport is down and
        `drop_on_failure` is set; otherwise a transport failure propagates.
        """
        if not self.enabled:
            logger.info("Telemetry disabled, ingestor not started")
            return False
        if self._initialized:
            return True

        try:
            if not self.transport.is_connected:
                await self.transport.initialize()
        except Exception as exc:
            logger.error("Failed to initialize telemetry ingestor", error=str(exc))
            if not self.drop_on_failure:
                raise
            return False

        self._initialized = True
        self._flush_loop_task = asyncio.create_task(self._flush_loop())
        self._sweep_task = asyncio.create_task(self._sweep_loop())
        logger.info(
            "Telemetry ingestor initialized",
            stream=self.stream,
            flush_threshold=self.flush_threshold,
            flush_interval_s=self.flush_interval,
        )
        return True

    # ------------------------------------------------------------------
    # Capture API
    # ------------------------------------------------------------------

    def capture_tool_start(self, context: Mapping[str, Any]) -> str:
        """Record the start of a tool call. Returns the event id to pass to completion."""
        event_id = new_event_id()
        if not self.enabled:
            return event_id
        try:
            raw = {
                "id": event_id,
                "type": EventType.CALL_START.value,
                "phase": EventPhase.START.value,
                "session_id": self.sessions.get_session_id(context),
                "timestamp_ms": now_ms(),
                **_pick(context, ("tenant", "server", "tool")),
            }
            self._enqueue(self.normalizer.create_sparse(raw))
        except Exception as exc:
            self._capture_failed(EventType.CALL_START.value, exc)
        return event_id

    def capture_tool_complete(self, event_id: str | None, context: Mapping[str, Any]) -> None:
        """Record a finished tool call with status, latency and redacted payload metadata."""
        if not self.enabled:
            return
        try:
            error = context.get("error")
            raw = {
                "id": event_id or new_event_id(),
                "type": EventType.CALL_COMPLETE.value,
                "phase": EventPhase.COMPLETE.value,
                "session_id": self.sessions.get_session_id(context),
                "status": context.get("status")
                or (EventStatus.ERROR.value if error else EventStatus.SUCCESS.value),
                "latency_ms": context.get("latency_ms", context.get("latency")),
                "args": context.get("args"),
                "output": context.get("output"),
                "error": error,
                "attrs": context.get("attrs"),
                "timestamp_ms": now_ms(),
                "source_version": self.source_version,
                **_pick(context, _CALL_FIELDS),
            }
            self._enqueue(self.normalizer.create(raw))
        except Exception as exc:
            self._capture_failed(EventType.CALL_COMPLETE.value, exc)

    def capture_connection_event(self, context: Mapping[str, Any]) -> None:
        """Connection lifecycle: CONNECTING, CONNECTED, DISCONNECTED, ERROR."""
        if not self.enabled:
            return
        try:
            raw = {
                "type": EventType.CONNECTION.value,
                "tenant": context.get("tenant"),
                "server": context.get("server"),
                "timestamp_ms": now_ms(),
                "attrs": {
                    "connection_state": context.get("state"),
                    "reason": context.get("reason"),
                    "metadata": context.get("metadata"),
                },
            }
            self._enqueue(self.normalizer.create(raw))
        except Exception as exc:
            self._capture_failed(EventType.CONNECTION.value, exc)

    def capture_server_event(self, context: Mapping[str, Any]) -> None:
        """Server lifecycle, e.g. `servers_updating` / `servers_updated`."""
        if not self.enabled:
            return
        try:
            raw = {
                "type": EventType.SERVER.value,
                "tenant": context.get("tenant"),
                "timestamp_ms": now_ms(),
                "attrs": {
                    "event_type": context.get("event_type") or context.get("eventType"),
                    "servers": context.get("servers"),
                    "changes": context.get("changes"),
                    "metadata": context.get("metadata"),
                },
            }
            self._enqueue(self.normalizer.create(raw))
        except Exception as exc:
            self._capture_failed(EventType.SERVER.value, exc)

    def capture_event(self, event_type: str, data: Mapping[str, Any] | None = None) -> None:
        """Capture a custom event. Unknown keys are kept under `attrs`."""
        if not self.enabled:
            return
        data = dict(data or {})
        try:
            attrs = dict(data.pop("attrs", None) or {})
            attrs.update({key: value for key, value in data.items() if key not in _ENVELOPE_FIELDS})
            raw = {
                **{key: value for key, value in data.items() if key in _ENVELOPE_FIELDS},
                "type": event_type,
                "attrs": attrs,
            }
            raw.setdefault("timestamp_ms", now_ms())
            self._enqueue(self.normalizer.create(raw))
        except Exception as exc:
            self._capture_failed(event_type, exc)

    def wrap_tool_execution(
        self,
        handler: Callable[..., Awaitable[Any]],
        context: Mapping[str, Any],
    ) -> Callable[..., Awaitable[Any]]:
        """
        Instrument an async tool handler.

        The first positional argument is recorded as the call's args. The
        handler's own exception is re-raised unchanged.
        """
        context = dict(context)

        @functools.wraps(handler)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            call_args = args[0] if args else (kwargs or None)
            start = time.perf_counter()
            event_id = self.capture_tool_start(context)
            try:
                result = await handler(*args, **kwargs)
            except Exception as exc:
                self.capture_tool_complete(
                    event_id,
                    {
                        **context,
                        "latency_ms": round((time.perf_counter() - start) * 1000, 3),
                        "args": call_args,
                        "error": exc,
                    },
                )
                raise
            self.capture_tool_complete(
                event_id,
                {
                    **context,
                    "latency_ms": round((time.perf_counter() - start) * 1000, 3),
                    "args": call_args,
                    "output": result,
                },
            )
            return result

        return wrapper

    def instrument_tool(self, server: str, tool: str, **context: Any):
        """Decorator form of `wrap_tool_execution`."""

        def decorator(handler: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
            if not self.enabled:
                return handler
            return self.wrap_tool_execution(handler, {**context, "server": server, "tool": tool})

        return decorator

    # ------------------------------------------------------------------
    # Buffering and flush
    # ------------------------------------------------------------------

    def _enqueue(self, envelope: AnyEnvelope) -> None:
        if not self._initialized and self.drop_on_failure:
            logger.debug("Telemetry not initialized, dropping event", event_type=envelope.type)
            self._stats["dropped"] += 1
            self._metrics.track_event_dropped("not_initialized")
            return

        # Full buffer: keep what is already queued, drop the newcomer.
        if len(self._buffer) >= self.max_buffer_size:
            if self._stats["buffer_full_drops"] == 0:
                logger.warning(
                    "Telemetry buffer full, dropping new events",
                    max_buffer_size=self.max_buffer_size,
                )
            self._stats["dropped"] += 1
            self._stats["buffer_full_drops"] += 1
            self._metrics.track_event_dropped("buffer_full")
            return

        self._buffer.append(envelope)
        self._stats["captured"] += 1
        self._metrics.track_event_captured(envelope.type or "unknown")
        self._metrics.set_ingest_buffer_depth(len(self._buffer))

        if self._initialized and len(self._buffer) >= self.flush_threshold:
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._threshold_task is not None and not self._threshold_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called outside the event loop; the interval flush picks it up.
            return
        self._threshold_task = loop.create_task(self.flush())

    def _capture_failed(self, event_type: str, exc: Exception) -> None:
        self._stats["dropped"] += 1
        self._metrics.track_event_dropped("capture_error")
        logger.warning("Failed to capture telemetry event", event_type=event_type, error=str(exc))

    async def flush(self) -> int:
        """Publish everything buffered, oldest first. Returns the number published."""
        async with self._flush_lock:
            if not self._buffer:
                return 0
            batch, self._buffer = self._buffer, []
            self._metrics.set_ingest_buffer_depth(0)

            published = 0
            for envelope in batch:
                message_id = await self.transport.publish(self.stream, envelope)
                if message_id is None:
                    self._stats["publish_failures"] += 1
                    self._metrics.track_event_dropped("publish_failed")
                else:
                    published += 1

            self._stats["published"] += published
            self._stats["flushes"] += 1
            if published < len(batch):
                logger.warning(
                    "Some telemetry events failed to flush",
                    count=len(batch),
                    failed=len(batch) - published,
                )
            else:
                logger.debug("Flushed telemetry events", count=published)
            return published

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception as exc:
                logger.warning("Telemetry flush loop error", error=str(exc))

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.session_sweep_interval)
            self.sessions.sweep()

    # ------------------------------------------------------------------
    # Introspection / lifecycle
    # ------------------------------------------------------------------

    async def get_stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "initialized": self._initialized,
            "queue_size": len(self._buffer),
            "active_sessions": self.sessions.active_count,
            **self._stats,
            "stream_stats": await self.transport.get_stream_stats(),
        }

    async def close(self) -> None:
        """Stop the loops and make a final flush. The shared transport stays open."""
        for task in (self._flush_loop_task, self._sweep_task):
            if task is not None:
                task.cancel()
        tasks = [t for t in (self._flush_loop_task, self._sweep_task, self._threshold_task) if t is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._flush_loop_task = self._sweep_task = self._threshold_task = None

        if self._initialized:
            await self.flush()
        self._initialized = False
        logger.info("Telemetry ingestor closed")
