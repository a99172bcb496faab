from __future__ import annotations

import hashlib

CONTENT_HASH_LENGTH = 16


def sha256_hexdigest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def content_hash(text: str) -> str:
    """Short content hash kept in place of discarded oversized payloads."""
    digest = sha256_hexdigest(text.encode("utf-8", errors="ignore"))
    return digest[:CONTENT_HASH_LENGTH]
