"""Deterministic JSON for dispatch record hashes.

Two encodings of the same record must hash alike regardless of dict order,
Decimal scale (``6`` vs ``6.000``) or whether the database handed back a
naive or an aware UTC timestamp.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from hashlib import sha256
from typing import Any


class CanonicalError(ValueError):
    pass


def _iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.astimezone(timezone.utc).isoformat(timespec="microseconds")
    return text.replace("+00:00", "Z")


def decimal_text(value: Decimal) -> str:
    """Fixed-point text with trailing zeros trimmed, e.g. ``6.000`` -> ``6``."""
    text = format(value.normalize(), "f")
    return "0" if text == "-0" else text


def _canonical_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, Decimal):
        return decimal_text(value)
    if isinstance(value, datetime):
        return _iso_utc(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _canonical_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical_value(item) for item in value]
    if isinstance(value, float):
        raise CanonicalError("floats are ambiguous in hashed records; use Decimal or str")
    raise CanonicalError(f"cannot canonicalize {type(value).__name__}")


def canonical_json(value: Any) -> bytes:
    return json.dumps(_canonical_value(value), sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode(
        "utf-8"
    )


def sha256_hex(value: Any) -> str:
    return sha256(canonical_json(value)).hexdigest()
