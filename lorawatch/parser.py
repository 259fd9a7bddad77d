"""
lorawatch Row Parser
====================
Turns stored rows into typed Readings.

The row's stored timestamp is authoritative: it reflects receipt order at
the store, while any timestamp embedded in the payload comes from the device
clock and is kept as an ordinary field.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from .errors import ParseError, ParseErrorKind
from .models import RawRow, Reading

logger = logging.getLogger("lorawatch.parser")

# Gateway firmware before the node_id rename published the identity as "node"
IDENTITY_KEYS: tuple[str, ...] = ("node_id", "node")


def parse_timestamp(value: Any) -> datetime:
    """
    Interpret a stored timestamp as an aware UTC datetime.
    Accepts datetime (naive = UTC), ISO-8601 strings (incl. trailing 'Z')
    and epoch seconds.
    """
    if isinstance(value, bool):
        raise ValueError(f"not a timestamp: {value!r}")
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    else:
        raise ValueError(f"not a timestamp: {value!r}")

    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _decode_payload(row: RawRow) -> dict:
    raw = row.raw_payload
    if isinstance(raw, dict):
        return raw
    if raw is None or (isinstance(raw, (str, bytes)) and not raw.strip()):
        return {}
    if not isinstance(raw, (str, bytes)):
        raise ParseError(
            ParseErrorKind.MALFORMED_PAYLOAD, row.id,
            f"unsupported payload type {type(raw).__name__}",
            captured_at=row.captured_at,
        )
    try:
        decoded = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ParseError(
            ParseErrorKind.MALFORMED_PAYLOAD, row.id, str(e), captured_at=row.captured_at
        )
    if not isinstance(decoded, dict):
        raise ParseError(
            ParseErrorKind.MALFORMED_PAYLOAD, row.id,
            f"expected a JSON object, got {type(decoded).__name__}",
            captured_at=row.captured_at,
        )
    return decoded


def _extract_identity(payload: dict) -> tuple[Optional[str], Optional[str]]:
    """Returns (node_id, key it was read from)."""
    for key in IDENTITY_KEYS:
        if key not in payload:
            continue
        value = payload[key]
        if isinstance(value, bool):
            return None, key
        if isinstance(value, int):
            return str(value), key
        if isinstance(value, str) and value.strip():
            return value.strip(), key
        return None, key
    return None, None


def parse_row(row: RawRow) -> Reading:
    """Decode one stored row. Raises ParseError if the row cannot become a Reading."""
    # row id is the ordering tie-breaker and window key
    if isinstance(row.id, bool) or not isinstance(row.id, int):
        raise ParseError(
            ParseErrorKind.INVALID_ROW_ID, row.id,
            f"row id must be an integer, got {type(row.id).__name__}",
            captured_at=row.captured_at,
        )
    payload = _decode_payload(row)

    node_id, key = _extract_identity(payload)
    if node_id is None:
        detail = f"empty or invalid '{key}'" if key else "payload has no node identity"
        raise ParseError(
            ParseErrorKind.MISSING_IDENTITY, row.id, detail, captured_at=row.captured_at
        )

    try:
        captured_at = parse_timestamp(row.captured_at)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        raise ParseError(
            ParseErrorKind.INVALID_TIMESTAMP, row.id, str(e),
            node_id=node_id, captured_at=row.captured_at,
        )

    fields = {k: v for k, v in payload.items() if k != key}
    return Reading(row_id=row.id, node_id=node_id, captured_at=captured_at, fields=fields)


def parse_batch(rows: Iterable[RawRow]) -> tuple[list[Reading], list[ParseError]]:
    """
    Parse a batch without aborting on bad rows.
    Every failure is logged and returned alongside the good readings.
    """
    readings: list[Reading] = []
    errors: list[ParseError] = []
    for row in rows:
        try:
            readings.append(parse_row(row))
        except ParseError as e:
            logger.warning(f"[PARSER] Dropped row: {e}")
            errors.append(e)
    return readings, errors
