from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional, Union


@dataclass(frozen=True)
class RawRow:
    """One row exactly as the store returned it."""
    id: int
    raw_payload: Union[str, dict, None]          # JSON text, or a decoded jsonb column
    captured_at: Union[datetime, str, float, None]  # store insertion time


@dataclass(frozen=True)
class Reading:
    """A decoded telemetry sample from one node."""
    row_id: int
    node_id: str
    captured_at: datetime                          # UTC, from the store, never the payload
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def sort_key(self) -> tuple[datetime, int]:
        return (self.captured_at, self.row_id)

    def to_dict(self) -> dict:
        return {
            "row_id": self.row_id,
            "node_id": self.node_id,
            "captured_at": self.captured_at.isoformat(),
            "fields": dict(self.fields),
        }


@dataclass
class NodeState:
    """Tracks the last resolved reading and liveness of a single node."""
    node_id: str
    latest: Optional[Reading] = None
    consecutive_stale_checks: int = 0
    online: bool = False

    def copy(self) -> "NodeState":
        return replace(self)

    def to_dict(self) -> dict:
        return {
            "node_id": self.node_id,
            "online": self.online,
            "consecutive_stale_checks": self.consecutive_stale_checks,
            "last_seen": self.latest.captured_at.isoformat() if self.latest else None,
            "latest": self.latest.to_dict() if self.latest else None,
        }
