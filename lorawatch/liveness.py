"""
lorawatch Liveness Evaluator
============================
Decides online/offline per node from the age of its latest reading.

  age <= threshold  → online, stale counter reset (recovery is immediate)
  age >  threshold  → stale counter + 1; offline at once when hysteresis is
                      off, otherwise only once the counter reaches the limit

A node goes stale through the passage of time alone, so this has to run on
a fixed tick and cannot be driven by ingestion events.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import NamedTuple, Optional

from .config import DEFAULT_HYSTERESIS_LIMIT, DEFAULT_STALENESS_THRESHOLD, TrackerConfig
from .models import NodeState, Reading


class LivenessResult(NamedTuple):
    online: bool
    consecutive_stale_checks: int


def reading_age(reading: Reading, now: datetime) -> timedelta:
    return now - reading.captured_at


def evaluate_liveness(
    latest: Optional[Reading],
    consecutive_stale_checks: int,
    online: bool,
    now: datetime,
    staleness_threshold: timedelta = DEFAULT_STALENESS_THRESHOLD,
    hysteresis_limit: int = DEFAULT_HYSTERESIS_LIMIT,
) -> LivenessResult:
    if latest is None:
        # Never heard from: offline by definition, nothing to count
        return LivenessResult(False, consecutive_stale_checks)

    if reading_age(latest, now) <= staleness_threshold:
        return LivenessResult(True, 0)

    stale_checks = consecutive_stale_checks + 1
    if hysteresis_limit == 0 or stale_checks >= hysteresis_limit:
        return LivenessResult(False, stale_checks)
    return LivenessResult(online, stale_checks)


def evaluate_node(state: NodeState, now: datetime, config: TrackerConfig) -> NodeState:
    """Apply one liveness tick to a copy of state."""
    result = evaluate_liveness(
        state.latest,
        state.consecutive_stale_checks,
        state.online,
        now,
        staleness_threshold=config.staleness_threshold,
        hysteresis_limit=config.hysteresis_limit,
    )
    updated = state.copy()
    updated.online = result.online
    updated.consecutive_stale_checks = result.consecutive_stale_checks
    return updated
