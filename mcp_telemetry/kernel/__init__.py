"""Kernel primitives (ids, hashing, serialization, time, errors)."""
