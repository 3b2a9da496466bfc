"""Canonical JSON, hashing and redaction helpers.

One implementation is shared by the guardrail gates, the planner, the run/step
idempotency keys and the audit payload hasher, so that "same inputs" means the
same bytes everywhere:

- object keys are sorted recursively
- separators are compact (``","`` / ``":"``)
- datetimes become UTC ISO-8601 strings with a ``Z`` suffix
- tuples/sets become lists (sets are sorted)
"""

from __future__ import annotations

import dataclasses
import hashlib
import json
import re
from collections.abc import Mapping
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

REDACTED = "********"

_SENSITIVE_KEY_MARKERS = (
    "SECRET",
    "TOKEN",
    "PASSWORD",
    "KEY",
    "AUTH",
    "COOKIE",
    "HEADER",
    "BEARER",
    "CREDENTIAL",
)
_JWT_RE = re.compile(r"^[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}$")
_API_KEY_RE = re.compile(r"^(sk|pk|api|key)-[A-Za-z0-9_-]+$")


def to_jsonable(value: Any) -> Any:
    """Convert a value to a JSON-friendly structure with stable representations."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value

    if isinstance(value, datetime):
        dt = value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    if isinstance(value, date):
        return value.isoformat()

    if isinstance(value, Decimal):
        return format(value, "f")

    if isinstance(value, bytes):
        return value.hex()

    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return to_jsonable(dataclasses.asdict(value))

    if hasattr(value, "model_dump"):
        return to_jsonable(value.model_dump(mode="json", by_alias=True))

    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}

    if isinstance(value, (set, frozenset)):
        return sorted((to_jsonable(v) for v in value), key=lambda v: json.dumps(v, sort_keys=True))

    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]

    return str(value)


def canonical_json(value: Any) -> str:
    """Serialize a value to canonical (key-sorted, compact) JSON."""
    return json.dumps(
        to_jsonable(value),
        ensure_ascii=False,
        separators=(",", ":"),
        sort_keys=True,
    )


def sha256_hex(text: str) -> str:
    """Return the hex SHA-256 digest of a UTF-8 string."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def canonical_hash(value: Any) -> str:
    """Return the SHA-256 of the canonical JSON form of a value."""
    return sha256_hex(canonical_json(value))


def _is_sensitive_key(key: str) -> bool:
    upper = key.upper()
    return any(marker in upper for marker in _SENSITIVE_KEY_MARKERS)


def _looks_like_secret(value: str) -> bool:
    text = value.strip()
    return bool(_JWT_RE.match(text) or _API_KEY_RE.match(text))


def sanitize_redact(value: Any) -> Any:
    """Return a copy of ``value`` with secret-looking keys and values masked.

    Keys containing SECRET/TOKEN/PASSWORD/KEY/AUTH/COOKIE/HEADER/BEARER/CREDENTIAL
    (case-insensitive) have their values replaced. String values that look like a
    JWT or a prefixed API key (``sk-``, ``pk-``, ``api-``, ``key-``) are masked
    regardless of key.
    """
    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        for raw_key, item in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key) and item is not None:
                out[key] = REDACTED
            else:
                out[key] = sanitize_redact(item)
        return out
    if isinstance(value, (list, tuple)):
        return [sanitize_redact(item) for item in value]
    if isinstance(value, str) and _looks_like_secret(value):
        return REDACTED
    return value


def utc_iso(dt: datetime) -> str:
    """Format a datetime as UTC ISO-8601 with a ``Z`` suffix."""
    return to_jsonable(dt)
