from __future__ import annotations

import dataclasses
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Union
from uuid import UUID

# The value tree envelopes, attrs and payloads are made of.
JSONValue = Union[str, int, float, bool, None, dict[str, "JSONValue"], list["JSONValue"]]


def to_jsonable(value: Any) -> Any:
    """Coerce common Python types into JSON-compatible primitives.

    This is intentionally explicit (and limited). If you need to serialize
    a new type, add a branch and tests.
    """
    if value is None:
        return None

    if isinstance(value, Enum):
        return to_jsonable(value.value)

    if isinstance(value, (str, int, float, bool)):
        return value

    if isinstance(value, datetime):
        return value.isoformat()

    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, UUID):
        return str(value)

    if isinstance(value, Decimal):
        return str(value)

    if isinstance(value, Path):
        return str(value)

    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")

    if isinstance(value, MappingProxyType):
        return {str(k): to_jsonable(v) for (k, v) in dict(value).items()}

    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_jsonable(to_dict())

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {str(k): to_jsonable(v) for (k, v) in dataclasses.asdict(value).items()}

    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for (k, v) in value.items()}

    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        return to_jsonable(model_dump())

    raise TypeError(f"Unsupported type for JSON serialization: {type(value)!r}")


def json_dumps_canonical(value: Any) -> str:
    """Stable JSON encoding for envelopes, hashing, cache keys and logs."""
    return json.dumps(
        to_jsonable(value),
        ensure_ascii=False,
        sort_keys=True,
        separators=(",", ":"),
    )


def json_dumps_lenient(value: Any) -> str:
    """JSON encoding for measuring arbitrary tool payloads; never raises on odd types."""
    try:
        return json_dumps_canonical(value)
    except (TypeError, ValueError):
        return json.dumps(value, default=str, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def json_loads(value: str | bytes) -> Any:
    return json.loads(value)
