"""
Progress history and sparkline rendering.

History payloads come in several shapes (bare array, or wrapped under
``items`` / ``values`` / ``history`` / ``data``) and several field spellings.
All of them are normalized to ascending ProgressSample lists, which
``sparkline`` reduces to a fixed-width glyph string.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence

from okrlens.core.client import RemoteClient, history_path
from okrlens.core.errors import NotFoundError
from okrlens.core.payloads import DEFAULT_MATCHERS, ShapeMatcher, first_present, unwrap_collection
from okrlens.core.store import ProgressSample, parse_timestamp

logger = logging.getLogger(__name__)

SPARK_GLYPHS = "▁▂▃▄▅▆▇█"
EMPTY_SPARKLINE = "—"
FLAT_GLYPH = SPARK_GLYPHS[len(SPARK_GLYPHS) // 2 - 1]  # mid-height

DATE_KEYS = ["date", "createdAt", "timestamp", "created_at"]
VALUE_KEYS = ["progress", "value", "attainment", "progressValue"]

HISTORY_MATCHERS: List[ShapeMatcher] = [
    m
    for m in DEFAULT_MATCHERS
    if m.name in ("bare_list", "wrapped_items", "wrapped_values", "wrapped_history", "wrapped_data")
]


def _to_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def normalize_history(payload: Any, since: Optional[datetime] = None) -> List[ProgressSample]:
    """
    Normalize a history payload to ascending samples.

    Parameters
    ----------
    payload : Any
        Parsed JSON body of a history endpoint
    since : Optional[datetime]
        Samples strictly before this instant are dropped

    Returns
    -------
    List[ProgressSample]
        Samples sorted by date; entries without a date or numeric value are
        ignored
    """
    samples: List[ProgressSample] = []
    for entry in unwrap_collection(payload, HISTORY_MATCHERS):
        if not isinstance(entry, dict):
            continue
        ts = parse_timestamp(first_present(entry, DATE_KEYS))
        value = _to_float(first_present(entry, VALUE_KEYS))
        if ts is None or value is None:
            continue
        if since is not None and ts < since:
            continue
        samples.append(ProgressSample(date=ts, progress_value=value))

    samples.sort(key=lambda s: s.date)
    return samples


def _resample(values: List[float], width: int) -> List[float]:
    if len(values) > width:
        if width == 1:
            return [values[-1]]
        step = (len(values) - 1) / (width - 1)
        return [values[round(i * step)] for i in range(width)]
    if len(values) < width:
        return values + [values[-1]] * (width - len(values))
    return values


def sparkline(samples: Sequence[ProgressSample], width: int = 10) -> str:
    """
    Render samples as a fixed-width trend line.

    More samples than ``width`` are stride-sampled evenly (first and last
    kept); fewer are padded by repeating the last value. Values are scaled
    between the window's min and max over 8 block glyphs. A flat series
    renders as a mid-height line; no samples render as a single dash.
    """
    if not samples:
        return EMPTY_SPARKLINE

    ordered = sorted(samples, key=lambda s: s.date)
    values = _resample([s.progress_value for s in ordered], width)

    low, high = min(values), max(values)
    span = high - low
    if span == 0:
        return FLAT_GLYPH * len(values)

    top = len(SPARK_GLYPHS) - 1
    return "".join(SPARK_GLYPHS[round((v - low) / span * top)] for v in values)


class ProgressHistoryService:
    """Single-item history lookups."""

    def __init__(self, client: RemoteClient):
        self.client = client

    async def history(
        self, metric_id: str, window_days: int, now: Optional[datetime] = None
    ) -> List[ProgressSample]:
        """
        Fetch the last ``window_days`` of progress for one metric.

        A 404 means the metric has no recorded history and yields [].
        """
        since = (now or datetime.now(timezone.utc)) - timedelta(days=window_days)
        try:
            payload = await self.client.get_json(history_path(metric_id, since.date().isoformat()))
        except NotFoundError:
            logger.debug(f"No history for metric {metric_id}")
            return []
        return normalize_history(payload, since)
