"""
Vector Index Client

Qdrant client for the telemetry collection, built on `AsyncQdrantClient`.
Each point carries up to three named vectors (input, output and error text)
plus a redacted payload.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog
from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from mcp_telemetry.config import Settings
from mcp_telemetry.events.envelope import EnvelopeNormalizer
from mcp_telemetry.kernel.errors import UpstreamError, VectorIndexNotReadyError, VectorValidationError
from mcp_telemetry.kernel.time import isoformat_z, utc_now
from mcp_telemetry.logging_config import mask_url

logger = structlog.get_logger()

T = TypeVar("T")


class VectorNames:
    INPUT_TEXT = "input_text"
    OUTPUT_TEXT = "output_text"
    ERROR_TEXT = "error_text"

    ALL = (INPUT_TEXT, OUTPUT_TEXT, ERROR_TEXT)


PAYLOAD_INDEXES = {
    "tenant": models.PayloadSchemaType.KEYWORD,
    "server": models.PayloadSchemaType.KEYWORD,
    "tool": models.PayloadSchemaType.KEYWORD,
    "status": models.PayloadSchemaType.KEYWORD,
    "source": models.PayloadSchemaType.KEYWORD,
    "created_at": models.PayloadSchemaType.DATETIME,
}

DISTANCE = models.Distance.COSINE


@dataclass
class VectorPoint:
    id: str
    vectors: dict[str, list[float]]
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchFilter:
    """Structured filter; every set field becomes a `must` clause."""

    tenant: str | None = None
    server: str | None = None
    tool: str | None = None
    status: str | None = None
    source: str | None = None
    created_from: str | None = None
    created_to: str | None = None

    def to_qdrant(self) -> models.Filter | None:
        must: list[models.FieldCondition] = []
        for key in ("tenant", "server", "tool", "status", "source"):
            value = getattr(self, key)
            if value is not None:
                must.append(models.FieldCondition(key=key, match=models.MatchValue(value=value)))
        if self.created_from or self.created_to:
            must.append(
                models.FieldCondition(
                    key="created_at",
                    range=models.DatetimeRange(gte=self.created_from, lte=self.created_to),
                )
            )
        return models.Filter(must=must) if must else None


@dataclass
class SearchQuery:
    vector: list[float]
    vector_name: str = VectorNames.OUTPUT_TEXT
    limit: int = 10
    filter: SearchFilter | None = None
    score_threshold: float | None = None
    with_payload: bool = True
    with_vector: bool = False


@dataclass
class SearchHit:
    id: str
    score: float
    payload: dict[str, Any] = field(default_factory=dict)
    vectors: dict[str, list[float]] | None = None


class VectorIndexClient:
    """Named-vector collection management, upsert and search over Qdrant."""

    def __init__(
        self,
        url: str = "http://localhost:6333",
        collection: str = "mcp_telemetry",
        *,
        timeout_ms: int = 30_000,
        retry_attempts: int = 3,
        retry_delay_ms: int = 1000,
        vector_dims: int | None = None,
        normalizer: EnvelopeNormalizer | None = None,
        client: AsyncQdrantClient | None = None,
    ):
        self.url = url.rstrip("/")
        self.collection = collection
        self.timeout = timeout_ms / 1000
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay_ms / 1000
        self.vector_dims = vector_dims
        self._normalizer = normalizer or EnvelopeNormalizer()
        self._client = client
        self._ready = False
        self._stats = {"upserts": 0, "points_upserted": 0, "searches": 0, "deletes": 0, "errors": 0}

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "VectorIndexClient":
        dims = settings.qdrant_vector_dims
        return cls(
            settings.qdrant_url,
            settings.qdrant_collection,
            timeout_ms=settings.qdrant_timeout_ms,
            retry_attempts=settings.qdrant_retry_attempts,
            retry_delay_ms=settings.qdrant_retry_delay_ms,
            vector_dims=int(dims) if dims and dims.isdigit() else None,
            **kwargs,
        )

    @property
    def is_ready(self) -> bool:
        return self._ready

    def _get_client(self) -> AsyncQdrantClient:
        if self._client is None:
            self._client = AsyncQdrantClient(url=self.url, timeout=max(1, int(self.timeout)))
        return self._client

    def _require_ready(self) -> None:
        if not self._ready:
            raise VectorIndexNotReadyError("Vector index client is not initialized")

    async def initialize(self, dimension: int | None = None) -> None:
        """
        Health-check the service and create or verify the collection.

        Args:
            dimension: Vector size; falls back to the configured fixed size.
        """
        dimension = dimension or self.vector_dims
        if not dimension:
            raise ValueError("Vector dimension is required to initialize the vector index")

        client = self._get_client()
        # Listing collections doubles as the reachability check.
        collections = await self._call("get_collections", client.get_collections)
        names = {description.name for description in collections.collections}
        if self.collection in names:
            info = await self._call("get_collection", client.get_collection, collection_name=self.collection)
            self._verify_collection(info, dimension)
        else:
            await self._create_collection(dimension)

        self.vector_dims = dimension
        self._ready = True
        logger.info(
            "Vector index initialized",
            url=mask_url(self.url),
            collection=self.collection,
            dimension=dimension,
        )

    async def _create_collection(self, dimension: int) -> None:
        client = self._get_client()
        await self._call(
            "create_collection",
            client.create_collection,
            collection_name=self.collection,
            vectors_config={name: models.VectorParams(size=dimension, distance=DISTANCE) for name in VectorNames.ALL},
            hnsw_config=models.HnswConfigDiff(m=16, ef_construct=100),
            optimizers_config=models.OptimizersConfigDiff(default_segment_number=2),
        )
        for field_name, schema in PAYLOAD_INDEXES.items():
            await self._call(
                "create_payload_index",
                client.create_payload_index,
                collection_name=self.collection,
                field_name=field_name,
                field_schema=schema,
                wait=True,
            )
        logger.info("Vector collection created", collection=self.collection, dimension=dimension)

    def _verify_collection(self, info: Any, dimension: int) -> None:
        # Mismatches are logged, the existing collection is kept.
        vectors = info.config.params.vectors
        if not isinstance(vectors, dict):
            vectors = {}
        for name in VectorNames.ALL:
            config = vectors.get(name)
            if config is None:
                logger.warning("Vector collection missing named vector", collection=self.collection, vector=name)
            elif config.size != dimension:
                logger.warning(
                    "Vector collection dimension mismatch",
                    collection=self.collection,
                    vector=name,
                    expected=dimension,
                    actual=config.size,
                )

    # ------------------------------------------------------------------
    # Points
    # ------------------------------------------------------------------

    async def upsert(self, points: list[VectorPoint]) -> int:
        """Insert or replace points. Returns the number written."""
        self._require_ready()
        if not points:
            return 0

        indexed_at = isoformat_z(utc_now())
        structs = []
        for point in points:
            vectors = {name: vector for name, vector in point.vectors.items() if vector}
            if not vectors:
                raise VectorValidationError(
                    "Vector point has no named vectors",
                    meta={"point_id": point.id},
                )
            unknown = set(vectors) - set(VectorNames.ALL)
            if unknown:
                raise VectorValidationError(
                    "Vector point has unknown named vectors",
                    meta={"point_id": point.id, "vectors": sorted(unknown)},
                )
            payload = self._normalizer.redact(dict(point.payload))
            payload["indexed_at"] = indexed_at
            structs.append(models.PointStruct(id=point.id, vector=vectors, payload=payload))

        client = self._get_client()
        await self._call("upsert", client.upsert, collection_name=self.collection, points=structs, wait=True)
        self._stats["upserts"] += 1
        self._stats["points_upserted"] += len(structs)
        return len(structs)

    async def search(self, query: SearchQuery) -> list[SearchHit]:
        self._require_ready()
        if query.vector_name not in VectorNames.ALL:
            raise VectorValidationError(f"Unknown vector name: {query.vector_name}")

        client = self._get_client()
        response = await self._call(
            "query_points",
            client.query_points,
            collection_name=self.collection,
            query=query.vector,
            using=query.vector_name,
            query_filter=query.filter.to_qdrant() if query.filter else None,
            limit=query.limit,
            score_threshold=query.score_threshold,
            with_payload=query.with_payload,
            with_vectors=query.with_vector,
        )
        self._stats["searches"] += 1
        return [
            SearchHit(
                id=str(hit.id),
                score=float(hit.score),
                payload=hit.payload or {},
                vectors=hit.vector if isinstance(hit.vector, dict) else None,
            )
            for hit in response.points
        ]

    async def search_similar(
        self,
        point_id: str,
        vector_name: str = VectorNames.OUTPUT_TEXT,
        *,
        limit: int = 10,
        filter: SearchFilter | None = None,
        score_threshold: float | None = None,
    ) -> list[SearchHit]:
        """Points most similar to an existing point's own vector, excluding the point."""
        point = await self.get_point(point_id)
        if point is None or not point.vectors.get(vector_name):
            return []
        hits = await self.search(
            SearchQuery(
                vector=point.vectors[vector_name],
                vector_name=vector_name,
                limit=limit + 1,
                filter=filter,
                score_threshold=score_threshold,
            )
        )
        return [hit for hit in hits if hit.id != str(point_id)][:limit]

    async def get_point(self, point_id: str) -> VectorPoint | None:
        self._require_ready()
        client = self._get_client()
        records = await self._call(
            "retrieve",
            client.retrieve,
            collection_name=self.collection,
            ids=[point_id],
            with_payload=True,
            with_vectors=True,
        )
        if not records:
            return None
        record = records[0]
        return VectorPoint(
            id=str(record.id),
            vectors=record.vector if isinstance(record.vector, dict) else {},
            payload=record.payload or {},
        )

    async def delete_points(self, point_ids: list[str]) -> None:
        self._require_ready()
        if not point_ids:
            return
        client = self._get_client()
        await self._call(
            "delete",
            client.delete,
            collection_name=self.collection,
            points_selector=models.PointIdsList(points=list(point_ids)),
            wait=True,
        )
        self._stats["deletes"] += len(point_ids)

    async def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {"collection": self.collection, "ready": self._ready, **self._stats}
        if not self._ready:
            return stats
        client = self._get_client()
        try:
            info = await self._call("get_collection", client.get_collection, collection_name=self.collection)
        except UpstreamError as exc:
            stats["error"] = str(exc)
            return stats
        stats.update(
            {
                "status": getattr(info.status, "value", info.status),
                "points_count": info.points_count,
                "indexed_vectors_count": info.indexed_vectors_count,
            }
        )
        return stats

    async def _call(self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Run a client call, retrying with exponential backoff unless Qdrant answered 4xx."""
        last_error: UpstreamError | None = None

        for attempt in range(self.retry_attempts):
            try:
                return await fn(*args, **kwargs)
            except UnexpectedResponse as exc:
                last_error = UpstreamError(
                    f"Vector index {operation} failed with HTTP {exc.status_code}",
                    status_code=exc.status_code,
                    code="vector.http_error",
                    meta={"body": exc.content[:200].decode("utf-8", "replace") if exc.content else ""},
                )
                if last_error.is_client_error:
                    self._stats["errors"] += 1
                    raise last_error from exc
            except ResponseHandlingException as exc:
                last_error = UpstreamError(
                    f"Vector index {operation} failed: {exc}",
                    code="vector.request_failed",
                )

            if attempt < self.retry_attempts - 1:
                delay = self.retry_delay * (2**attempt)
                delay = delay + random.uniform(0, delay / 2)
                logger.warning(
                    "Vector index request failed, retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    delay_s=delay,
                    error=str(last_error),
                )
                await asyncio.sleep(delay)

        self._stats["errors"] += 1
        assert last_error is not None
        raise last_error

    async def close(self) -> None:
        self._ready = False
        if self._client is not None:
            await self._client.close()
            self._client = None
