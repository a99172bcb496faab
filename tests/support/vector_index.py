from __future__ import annotations

from dataclasses import dataclass, field
from math import sqrt
from typing import Any

from mcp_telemetry.search.vector_index import SearchFilter, SearchHit, SearchQuery, VectorNames, VectorPoint


def _cosine(a: list[float], b: list[float]) -> float:
    def _dot(x: list[float], y: list[float]) -> float:
        return sum(p * q for p, q in zip(x, y))

    def _norm(x: list[float]) -> float:
        return sqrt(sum(p * p for p in x)) or 1.0

    return _dot(a, b) / (_norm(a) * _norm(b))


def _matches(payload: dict[str, Any], search_filter: SearchFilter | None) -> bool:
    if search_filter is None:
        return True
    for key in ("tenant", "server", "tool", "status", "source"):
        expected = getattr(search_filter, key)
        if expected is not None and payload.get(key) != expected:
            return False
    return True


@dataclass(slots=True)
class FakeVectorIndex:
    """In-memory cosine-similarity named-vector index for unit tests."""

    collection: str = "mcp_telemetry_test"
    vector_dims: int | None = None
    ready: bool = False
    points: dict[str, VectorPoint] = field(default_factory=dict)
    searches: list[SearchQuery] = field(default_factory=list)

    @property
    def is_ready(self) -> bool:
        return self.ready

    async def initialize(self, dimension: int | None = None) -> None:
        self.vector_dims = dimension or self.vector_dims
        self.ready = True

    async def upsert(self, points: list[VectorPoint]) -> int:
        for point in points:
            self.points[point.id] = VectorPoint(
                id=point.id,
                vectors={name: list(vector) for name, vector in point.vectors.items()},
                payload=dict(point.payload),
            )
        return len(points)

    async def search(self, query: SearchQuery) -> list[SearchHit]:
        self.searches.append(query)
        scored: list[tuple[float, VectorPoint]] = []
        for point in self.points.values():
            vector = point.vectors.get(query.vector_name)
            # Dimension mismatch: skip.
            if not vector or len(vector) != len(query.vector):
                continue
            if not _matches(point.payload, query.filter):
                continue
            score = _cosine(query.vector, vector)
            if query.score_threshold is not None and score < query.score_threshold:
                continue
            scored.append((score, point))

        scored.sort(key=lambda t: t[0], reverse=True)
        return [
            SearchHit(id=point.id, score=float(score), payload=dict(point.payload))
            for score, point in scored[: max(0, int(query.limit))]
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
        point = self.points.get(point_id)
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
        return [hit for hit in hits if hit.id != point_id][:limit]

    async def get_point(self, point_id: str) -> VectorPoint | None:
        return self.points.get(point_id)

    async def delete_points(self, point_ids: list[str]) -> None:
        for point_id in point_ids:
            self.points.pop(point_id, None)

    async def get_stats(self) -> dict[str, Any]:
        return {"collection": self.collection, "ready": self.ready, "points_count": len(self.points)}

    async def close(self) -> None:
        self.ready = False
