"""
Document Store

MongoDB archive of raw envelopes (collection `events`), keyed by envelope
id. Writes are idempotent so redelivered stream messages are harmless.
"""

from __future__ import annotations

from typing import Any

import structlog
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from mcp_telemetry.config import Settings
from mcp_telemetry.events.types import AnyEnvelope, SparseEnvelope
from mcp_telemetry.kernel.errors import StoreUnavailableError
from mcp_telemetry.kernel.time import from_ms, utc_now
from mcp_telemetry.logging_config import mask_url

logger = structlog.get_logger()

EVENTS_COLLECTION = "events"


class DocumentStore:
    """Raw envelope archive. Optional: the pipeline runs without it."""

    def __init__(
        self,
        url: str,
        database: str = "mcp_telemetry",
        *,
        pool_size: int = 10,
        server_selection_timeout_ms: int = 5000,
        db: AsyncIOMotorDatabase | None = None,
    ):
        self.url = url
        self.database = database
        self.pool_size = pool_size
        self.server_selection_timeout_ms = server_selection_timeout_ms
        self._client: AsyncIOMotorClient | None = None
        self._db = db

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "DocumentStore":
        return cls(
            settings.mongodb_url,
            settings.mongodb_db,
            pool_size=settings.mongodb_pool_size,
            server_selection_timeout_ms=settings.mongodb_server_selection_timeout_ms,
            **kwargs,
        )

    @property
    def is_available(self) -> bool:
        return self._db is not None

    async def connect(self) -> bool:
        """Connect and ping. Returns False (logged once) when MongoDB is unreachable."""
        if self._db is not None:
            return True
        client = AsyncIOMotorClient(
            self.url,
            maxPoolSize=self.pool_size,
            serverSelectionTimeoutMS=self.server_selection_timeout_ms,
        )
        try:
            await client.admin.command("ping")
        except PyMongoError as exc:
            logger.warning(
                "MongoDB not available, continuing without it",
                url=mask_url(self.url),
                error=str(exc),
            )
            client.close()
            return False

        self._client = client
        self._db = client[self.database]
        logger.info("MongoDB connected", url=mask_url(self.url), database=self.database)
        return True

    async def archive_envelope(self, envelope: AnyEnvelope) -> None:
        """
        Store the envelope under its id.

        A full envelope replaces any earlier copy; a sparse marker is only
        written when nothing is archived under that id yet.
        """
        if self._db is None:
            logger.debug("Skipping MongoDB persistence, not connected", event_id=envelope.id)
            return

        document = {
            "_id": envelope.id,
            "kind": envelope.kind,
            "type": envelope.type,
            "tenant": envelope.tenant,
            "envelope_version": getattr(envelope, "version", None),
            "timestamp": from_ms(envelope.timestamp_ms),
            "envelope": envelope.to_dict(),
            "archived_at": utc_now(),
        }
        collection = self._db[EVENTS_COLLECTION]
        try:
            if envelope.kind == SparseEnvelope.kind:
                # A phase marker shares its id with the full envelope and never replaces it.
                fields = {key: value for key, value in document.items() if key != "_id"}
                await collection.update_one({"_id": envelope.id}, {"$setOnInsert": fields}, upsert=True)
            else:
                await collection.replace_one({"_id": envelope.id}, document, upsert=True)
        except PyMongoError as exc:
            raise StoreUnavailableError(
                "MongoDB archive write failed",
                meta={"event_id": envelope.id, "error": str(exc)},
            ) from exc

    async def get_envelope(self, event_id: str) -> dict[str, Any] | None:
        """The archived envelope dict, or None."""
        if self._db is None:
            return None
        document = await self._db[EVENTS_COLLECTION].find_one({"_id": event_id})
        if document is None:
            return None
        return document.get("envelope")

    async def ping(self) -> bool:
        if self._db is None:
            return False
        try:
            await self._db.command("ping")
            return True
        except PyMongoError:
            return False

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
        self._db = None
