"""Persistence: PostgreSQL structured store and MongoDB raw archive."""

from .documents import DocumentStore
from .relational import RelationalStore

__all__ = ["DocumentStore", "RelationalStore"]
