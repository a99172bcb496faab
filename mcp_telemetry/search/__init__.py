"""Embedding service client, circuit breaker and vector index client."""

from .circuit_breaker import CircuitBreaker, CircuitState
from .embeddings import EmbeddingClient, EmbeddingResult, MicroBatchQueue
from .vector_index import SearchFilter, SearchHit, SearchQuery, VectorIndexClient, VectorNames, VectorPoint

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "EmbeddingClient",
    "EmbeddingResult",
    "MicroBatchQueue",
    "SearchFilter",
    "SearchHit",
    "SearchQuery",
    "VectorIndexClient",
    "VectorNames",
    "VectorPoint",
]
