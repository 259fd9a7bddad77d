"""
lorawatch error taxonomy
========================
  ParseError   - a stored row could not become a Reading (dropped, logged)
  FetchError   - the row store could not be queried (transient, retried)
  WriteError   - the row store rejected an insert
  ConfigError  - invalid tracker configuration (fatal at startup)
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional


class LoraWatchError(Exception):
    """Base class for every error raised by lorawatch."""


class ParseErrorKind(str, Enum):
    MALFORMED_PAYLOAD = "malformed_payload"
    MISSING_IDENTITY = "missing_identity"
    INVALID_TIMESTAMP = "invalid_timestamp"
    INVALID_ROW_ID = "invalid_row_id"


class ParseError(LoraWatchError):
    def __init__(
        self,
        kind: ParseErrorKind,
        row_id: Any,
        detail: str = "",
        node_id: Optional[str] = None,
        captured_at: Any = None,
    ):
        self.kind = kind
        self.row_id = row_id
        self.detail = detail
        self.node_id = node_id
        self.captured_at = captured_at
        super().__init__(self._format())

    def _format(self) -> str:
        ts = self.captured_at.isoformat() if isinstance(self.captured_at, datetime) else self.captured_at
        parts = [f"{self.kind.value} (row={self.row_id}"]
        if self.node_id:
            parts.append(f", node={self.node_id}")
        if ts is not None:
            parts.append(f", ts={ts}")
        parts.append(")")
        if self.detail:
            parts.append(f": {self.detail}")
        return "".join(parts)


class FetchError(LoraWatchError):
    """Row store unreachable or query failed. Existing node state is kept."""

    def __init__(
        self,
        detail: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ):
        self.detail = detail
        self.start = start
        self.end = end
        window = ""
        if start is not None and end is not None:
            window = f" [window {start.isoformat()} .. {end.isoformat()}]"
        super().__init__(f"{detail}{window}")


class WriteError(LoraWatchError):
    """An insert through a writable row store failed. Nothing was stored."""


class ConfigError(LoraWatchError):
    """Invalid threshold, interval or node list. The tracker must not start."""
