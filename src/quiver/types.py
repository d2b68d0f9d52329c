"""Core type definitions and helpers shared across Quiver.

PyArrow is the interchange format for adapter scans. Timestamps are always
normalized to timezone-aware UTC before any comparison so that point-in-time
filtering never mixes naive and aware values.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

import pyarrow as pa

# =============================================================================
# PyArrow Type Aliases
# =============================================================================

ArrowTable = pa.Table
ArrowSchema = pa.Schema

Int32 = pa.int32()
Int64 = pa.int64()
Float32 = pa.float32()
Float64 = pa.float64()
String = pa.string()
Binary = pa.binary()
Bool = pa.bool_()
Timestamp = pa.timestamp("us", tz="UTC")  # microsecond precision, UTC

# An entity row maps entity-key names to typed values.
EntityRow = Mapping[str, Any]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def ensure_utc(value: datetime | str | int | float) -> datetime:
    """Normalize a timestamp-like value to an aware UTC datetime.

    Naive datetimes are interpreted as UTC. Strings are parsed as ISO 8601
    and numbers as seconds since the epoch.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        raise TypeError(f"Cannot interpret {type(value).__name__} as a timestamp")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def canonical_key(entity_key: Mapping[str, Any]) -> str:
    """Convert an entity key mapping to canonical JSON (sorted keys)."""
    return json.dumps(dict(entity_key), sort_keys=True, default=str)
