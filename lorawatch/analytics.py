"""
lorawatch History Analytics
===========================
Simple summaries over a node's readings, as shown by the dashboard's
analytics and trend panels:
  - average / min / max / count of one numeric field
  - first-vs-last trend ('improving' | 'declining' | 'steady')
  - per-day, per-week or per-month (UTC) mean for trend charts

Non-numeric, missing and non-finite values are skipped.
"""
from __future__ import annotations

import math
from typing import Any, Iterable, Optional

import numpy as np
import pandas as pd

from .models import Reading

DEFAULT_FIELD: str = "airQualityPercentage"


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _series(readings: Iterable[Reading], field: str, node_id: Optional[str]) -> list[tuple[Reading, float]]:
    """Chronological (reading, value) pairs for one field."""
    pairs = []
    for reading in readings:
        if node_id is not None and reading.node_id != node_id:
            continue
        value = _as_number(reading.fields.get(field))
        if value is not None:
            pairs.append((reading, value))
    pairs.sort(key=lambda p: p[0].sort_key)
    return pairs


def readings_frame(readings: Iterable[Reading], node_id: Optional[str] = None) -> pd.DataFrame:
    """One row per reading: row_id, node_id, captured_at, then payload fields."""
    records = [
        {"row_id": r.row_id, "node_id": r.node_id, "captured_at": r.captured_at, **r.fields}
        for r in readings
        if node_id is None or r.node_id == node_id
    ]
    frame = pd.DataFrame.from_records(records)
    if frame.empty:
        return pd.DataFrame(columns=["row_id", "node_id", "captured_at"])
    return frame.sort_values(["captured_at", "row_id"]).reset_index(drop=True)


def summarize_field(
    readings: Iterable[Reading],
    field: str = DEFAULT_FIELD,
    node_id: Optional[str] = None,
) -> Optional[dict]:
    """Returns None when there is no numeric data for the field."""
    pairs = _series(readings, field, node_id)
    if not pairs:
        return None

    values = np.array([v for _, v in pairs], dtype=np.float64)
    first, last = float(values[0]), float(values[-1])
    if last > first:
        trend = "improving"
    elif last < first:
        trend = "declining"
    else:
        trend = "steady"

    return {
        "field": field,
        "count": int(values.size),
        "average": round(float(np.mean(values)), 1),
        "min": float(np.min(values)),
        "max": float(np.max(values)),
        "first": first,
        "last": last,
        "trend": trend,
        "since": pairs[0][0].captured_at.isoformat(),
        "until": pairs[-1][0].captured_at.isoformat(),
    }


PERIOD_FREQUENCIES: dict[str, str] = {
    "day": "D",
    "week": "W-MON",   # weeks start on Monday
    "month": "MS",
}


def period_means(
    readings: Iterable[Reading],
    field: str = DEFAULT_FIELD,
    node_id: Optional[str] = None,
    period: str = "day",
) -> list[dict]:
    """
    Mean of the field per UTC day, week or month, oldest first.
    Each entry's date is the first day of its period; empty periods are omitted.
    """
    if period not in PERIOD_FREQUENCIES:
        raise ValueError(f"Unknown period '{period}', expected one of {', '.join(PERIOD_FREQUENCIES)}")
    pairs = _series(readings, field, node_id)
    if not pairs:
        return []

    series = pd.Series(
        [v for _, v in pairs],
        index=pd.DatetimeIndex([r.captured_at for r, _ in pairs]),
    )
    grouped = series.resample(PERIOD_FREQUENCIES[period], closed="left", label="left").agg(["mean", "count"])
    grouped = grouped[grouped["count"] > 0]
    return [
        {"date": start.strftime("%Y-%m-%d"), "mean": round(float(row["mean"]), 2), "count": int(row["count"])}
        for start, row in grouped.iterrows()
    ]


def daily_means(
    readings: Iterable[Reading],
    field: str = DEFAULT_FIELD,
    node_id: Optional[str] = None,
) -> list[dict]:
    """Mean of the field per UTC calendar day, oldest day first."""
    return period_means(readings, field, node_id, period="day")
