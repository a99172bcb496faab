"""
Relational Store

asyncpg access to the `telemetry` schema: structured events, hourly tool
aggregates, anomalies and embedding references. The store is optional; when
PostgreSQL is unreachable at startup the pipeline runs without it.
"""

from __future__ import annotations

import json
from typing import Any

import asyncpg
import structlog

from mcp_telemetry.config import Settings
from mcp_telemetry.events.types import AnomalyRecord, Envelope, EventType
from mcp_telemetry.kernel.errors import StoreUnavailableError
from mcp_telemetry.kernel.ids import new_event_id
from mcp_telemetry.kernel.serialization import json_dumps_lenient, json_loads
from mcp_telemetry.kernel.time import from_ms
from mcp_telemetry.logging_config import mask_url

logger = structlog.get_logger()


def _jsonable(value: Any) -> Any:
    """Plain JSON tree for JSON/JSONB parameters."""
    return json_loads(json_dumps_lenient(value))

UPSERT_EVENT_SQL = """
    INSERT INTO telemetry.event (
        id, type, tenant, session_id, server, tool,
        status, latency_ms, timestamp_ms, event_data
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
    ON CONFLICT (id) DO UPDATE SET
        status = EXCLUDED.status,
        latency_ms = EXCLUDED.latency_ms,
        event_data = EXCLUDED.event_data
"""

UPSERT_TOOL_AGG_HOUR_SQL = """
    INSERT INTO telemetry.tool_agg_hour (
        hour_bucket, tenant, server, tool,
        call_count, success_count, error_count,
        latency_p50, latency_p95, latency_p99
    ) VALUES (
        date_trunc('hour', $1::timestamptz),
        $2, $3, $4,
        1,
        CASE WHEN $5 = 'success' THEN 1 ELSE 0 END,
        CASE WHEN $5 = 'error' THEN 1 ELSE 0 END,
        $6, $6, $6
    )
    ON CONFLICT (hour_bucket, tenant, server, tool)
    DO UPDATE SET
        call_count = telemetry.tool_agg_hour.call_count + 1,
        success_count = telemetry.tool_agg_hour.success_count
            + CASE WHEN $5 = 'success' THEN 1 ELSE 0 END,
        error_count = telemetry.tool_agg_hour.error_count
            + CASE WHEN $5 = 'error' THEN 1 ELSE 0 END,
        latency_p50 = LEAST(telemetry.tool_agg_hour.latency_p50, $6),
        latency_p95 = GREATEST(telemetry.tool_agg_hour.latency_p95, $6),
        latency_p99 = GREATEST(telemetry.tool_agg_hour.latency_p99, $6),
        updated_at = NOW()
"""

UPSERT_EMBEDDING_REF_SQL = """
    INSERT INTO telemetry.embedding_ref (
        id, event_id, collection_name, vector_names, metadata
    ) VALUES ($1, $2, $3, $4, $5)
    ON CONFLICT (id) DO UPDATE SET
        vector_names = EXCLUDED.vector_names,
        metadata = EXCLUDED.metadata,
        updated_at = NOW()
"""

INSERT_ANOMALY_SQL = """
    INSERT INTO telemetry.anomaly (
        id, type, event_id, severity, description, metadata
    ) VALUES ($1, $2, $3, $4, $5, $6)
    ON CONFLICT (id) DO NOTHING
"""


async def _init_connection(conn: asyncpg.Connection) -> None:
    # Pass dict/list values straight into JSON/JSONB columns.
    await conn.set_type_codec(
        "json",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
        format="text",
    )


class RelationalStore:
    """PostgreSQL persistence for structured telemetry."""

    def __init__(
        self,
        dsn: str,
        *,
        pool_size: int = 10,
        connect_timeout_ms: int = 2000,
        pool: asyncpg.Pool | None = None,
    ):
        self.dsn = dsn
        self.pool_size = max(1, pool_size)
        self.connect_timeout = connect_timeout_ms / 1000
        self._pool = pool

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "RelationalStore":
        return cls(
            settings.postgres_dsn,
            pool_size=settings.postgres_pool_size,
            connect_timeout_ms=settings.postgres_connect_timeout_ms,
            **kwargs,
        )

    @property
    def is_available(self) -> bool:
        return self._pool is not None

    async def connect(self) -> bool:
        """Open the pool. Returns False (logged once) when PostgreSQL is unreachable."""
        if self._pool is not None:
            return True
        try:
            pool = await asyncpg.create_pool(
                self.dsn,
                init=_init_connection,
                min_size=1,
                max_size=self.pool_size,
                timeout=self.connect_timeout,
            )
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
        except (OSError, asyncpg.PostgresError, TimeoutError) as exc:
            logger.warning(
                "PostgreSQL not available, continuing without it",
                dsn=mask_url(self.dsn),
                error=str(exc),
            )
            return False

        self._pool = pool
        logger.info("PostgreSQL connected", dsn=mask_url(self.dsn))
        return True

    async def persist_event(self, envelope: Envelope) -> None:
        """
        Upsert the event and, for completed calls, merge the hourly aggregate.

        Both writes share one transaction; any failure rolls back and raises.
        """
        if self._pool is None:
            logger.debug("Skipping PostgreSQL persistence, not connected", event_id=envelope.id)
            return

        timestamp = from_ms(envelope.timestamp_ms)
        tenant = envelope.tenant or "default"
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        UPSERT_EVENT_SQL,
                        envelope.id,
                        envelope.type,
                        tenant,
                        envelope.session_id,
                        envelope.server,
                        envelope.tool,
                        envelope.status,
                        envelope.latency_ms,
                        envelope.timestamp_ms,
                        _jsonable(envelope.to_dict()),
                    )
                    if envelope.type == EventType.CALL_COMPLETE.value:
                        await conn.execute(
                            UPSERT_TOOL_AGG_HOUR_SQL,
                            timestamp,
                            tenant,
                            envelope.server,
                            envelope.tool,
                            envelope.status,
                            float(envelope.latency_ms or 0),
                        )
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise StoreUnavailableError(
                "PostgreSQL event write failed",
                meta={"event_id": envelope.id, "error": str(exc)},
            ) from exc

    async def record_embedding_ref(
        self,
        event_id: str,
        collection_name: str,
        vector_names: list[str],
        metadata: dict[str, Any] | None = None,
    ) -> str | None:
        if self._pool is None:
            return None
        ref_id = new_event_id()
        async with self._pool.acquire() as conn:
            await conn.execute(
                UPSERT_EMBEDDING_REF_SQL,
                ref_id,
                event_id,
                collection_name,
                list(vector_names),
                _jsonable(metadata or {}),
            )
        return ref_id

    async def record_anomaly(self, anomaly: AnomalyRecord) -> None:
        if self._pool is None:
            logger.debug("Skipping PostgreSQL anomaly storage, not connected", anomaly_id=anomaly.id)
            return
        async with self._pool.acquire() as conn:
            await conn.execute(
                INSERT_ANOMALY_SQL,
                anomaly.id,
                anomaly.type,
                anomaly.event_id,
                anomaly.severity,
                anomaly.description,
                _jsonable(anomaly.metadata),
            )

    async def ping(self) -> bool:
        if self._pool is None:
            return False
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchval("SELECT 1") == 1
        except (OSError, asyncpg.PostgresError, TimeoutError):
            return False

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
