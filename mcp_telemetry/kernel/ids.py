from __future__ import annotations

import os
import secrets
import time
from datetime import datetime
from uuid import UUID

from mcp_telemetry.kernel.time import utc_now

_GID_TENANT_MAX = 20


def new_event_id(now_ms: int | None = None) -> str:
    """Generate a time-sortable event id (UUIDv7 layout).

    48 bits of unix milliseconds, then version/variant bits, then randomness.
    Ids created in later milliseconds sort after earlier ones as strings.
    """
    ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    rand = int.from_bytes(os.urandom(10), "big")
    rand_a = (rand >> 68) & 0xFFF
    rand_b = rand & ((1 << 62) - 1)
    value = (ms & ((1 << 48) - 1)) << 80
    value |= 0x7 << 76
    value |= rand_a << 64
    value |= 0b10 << 62
    value |= rand_b
    return str(UUID(int=value))


def event_id_timestamp_ms(event_id: str) -> int:
    """Recover the millisecond timestamp embedded in `new_event_id` output."""
    return UUID(event_id).int >> 80


def new_gid(event_type: str, tenant: str, when: datetime | None = None) -> str:
    """Build a human-diagnosable global id.

    Format: `TYPE:YYYY-MM-DD:tenant:suffix`, e.g.
    `MCP_CALL_COMPLETE:2026-01-01:acme:1a2b3c4d`.
    """
    day = (when or utc_now()).date().isoformat()
    kind = (event_type or "mcp.call").replace(".", "_").upper()
    scope = (tenant or "default")[:_GID_TENANT_MAX]
    return f"{kind}:{day}:{scope}:{secrets.token_hex(4)}"
