"""
lorawatch Latest-Reading Resolver
=================================
Pure, order-independent selection of the newest Reading per node.

Ordering key: (captured_at, row_id). The store assigns ids monotonically, so
the larger id wins a timestamp tie. Two deliveries of the same row compare
equal on both; their canonical payload rendering keeps the pick deterministic.

The coordinator re-runs this over its whole window on every trigger instead
of patching state incrementally, so poll and push deliveries compose.
"""
from __future__ import annotations

import json
import logging
from typing import Iterable, Optional

from .models import Reading

logger = logging.getLogger("lorawatch.resolver")


def _canonical_fields(reading: Reading) -> str:
    return json.dumps(reading.fields, sort_keys=True, default=str)


def _order_key(reading: Reading) -> tuple:
    return (reading.captured_at, reading.row_id, reading.node_id, _canonical_fields(reading))


def is_newer(candidate: Optional[Reading], current: Optional[Reading]) -> bool:
    """True if candidate strictly supersedes current."""
    if candidate is None:
        return False
    if current is None:
        return True
    return _order_key(candidate) > _order_key(current)


def dedupe_readings(readings: Iterable[Reading]) -> dict[int, Reading]:
    """Collapse duplicate deliveries by row id."""
    by_id: dict[int, Reading] = {}
    for reading in readings:
        held = by_id.get(reading.row_id)
        if held is None or is_newer(reading, held):
            by_id[reading.row_id] = reading
    return by_id


def resolve_latest(
    readings: Iterable[Reading],
    known_nodes: Iterable[str],
) -> dict[str, Optional[Reading]]:
    """
    For each known node, the Reading with the greatest (captured_at, row_id),
    or None when the batch holds nothing for it.
    """
    latest: dict[str, Optional[Reading]] = {node_id: None for node_id in known_nodes}
    unknown = 0
    for reading in readings:
        if not reading.node_id:
            continue
        if reading.node_id not in latest:
            unknown += 1
            continue
        if is_newer(reading, latest[reading.node_id]):
            latest[reading.node_id] = reading

    if unknown:
        logger.debug(f"[RESOLVE] Ignored {unknown} readings from unconfigured nodes")
    return latest
