"""
Tests for progress history normalization and sparkline rendering.
"""

from datetime import datetime, timedelta, timezone

import pytest

from okrlens.core.history import (
    EMPTY_SPARKLINE,
    FLAT_GLYPH,
    ProgressHistoryService,
    normalize_history,
    sparkline,
)
from okrlens.core.store import ProgressSample

START = datetime(2024, 11, 1, tzinfo=timezone.utc)


def series(values):
    return [ProgressSample(date=START + timedelta(days=i), progress_value=v) for i, v in enumerate(values)]


class TestNormalizeHistory:
    @pytest.mark.parametrize(
        "payload",
        [
            [{"date": "2024-11-02T00:00:00Z", "progress": 20}, {"date": "2024-11-01T00:00:00Z", "progress": 10}],
            {"items": [{"createdAt": "2024-11-01T00:00:00Z", "value": 10}, {"createdAt": "2024-11-02T00:00:00Z", "value": 20}]},
            {"history": [{"timestamp": "2024-11-01T00:00:00Z", "progressValue": 10}, {"timestamp": "2024-11-02T00:00:00Z", "progressValue": 20}]},
            {"data": [{"date": "2024-11-01", "attainment": 10}, {"date": "2024-11-02", "attainment": 20}]},
        ],
    )
    def test_shapes_normalize_to_ascending_samples(self, payload):
        samples = normalize_history(payload)

        assert [s.progress_value for s in samples] == [10.0, 20.0]
        assert samples[0].date < samples[1].date
        assert all(s.date.tzinfo is not None for s in samples)

    def test_attainment_fraction_taken_literally(self):
        samples = normalize_history([{"date": "2024-11-01", "attainment": 0.4}])
        assert samples[0].progress_value == 0.4

    def test_entries_without_date_or_value_dropped(self):
        payload = [
            {"date": "2024-11-01", "progress": 5},
            {"progress": 7},
            {"date": "2024-11-03", "progress": "n/a"},
            "garbage",
        ]
        assert len(normalize_history(payload)) == 1

    def test_samples_before_window_dropped(self):
        payload = [{"date": "2024-10-01", "progress": 1}, {"date": "2024-11-05", "progress": 2}]
        samples = normalize_history(payload, since=START)
        assert [s.progress_value for s in samples] == [2.0]

    def test_unknown_shape_is_empty(self):
        assert normalize_history({"results": [{"date": "2024-11-01", "progress": 1}]}) == []


class TestSparkline:
    def test_empty_history(self):
        assert sparkline([]) == EMPTY_SPARKLINE == "—"

    def test_flat_series_renders_mid_height_run(self):
        assert sparkline(series([50, 50, 50]), width=10) == FLAT_GLYPH * 10 == "▄" * 10

    def test_rising_series_spans_glyph_range(self):
        line = sparkline(series([0, 10, 20, 30, 40, 50, 60, 70, 80, 100]))
        assert len(line) == 10
        assert line[0] == "▁"
        assert line[-1] == "█"

    def test_short_series_padded_with_last_value(self):
        assert sparkline(series([0, 50, 100]), width=5) == "▁▅███"

    def test_long_series_keeps_first_and_last(self):
        values = [0] + [50] * 28 + [100]
        line = sparkline(series(values), width=10)
        assert len(line) == 10
        assert line[0] == "▁" and line[-1] == "█"

    def test_unsorted_input_sorted_by_date(self):
        samples = list(reversed(series([0, 100])))
        assert sparkline(samples, width=2) == "▁█"


class TestProgressHistoryService:
    @pytest.mark.asyncio
    async def test_missing_history_is_empty(self, client):
        assert await ProgressHistoryService(client).history("m404", 30) == []

    @pytest.mark.asyncio
    async def test_window_applied(self, client, fake_api, now):
        fake_api.add(
            "/metrics/m1/history",
            [
                {"date": (now - timedelta(days=40)).isoformat(), "progress": 1},
                {"date": (now - timedelta(days=3)).isoformat(), "progress": 2},
            ],
        )

        samples = await ProgressHistoryService(client).history("m1", 30, now=now)

        assert [s.progress_value for s in samples] == [2.0]
        assert fake_api.requests[0].startswith("/metrics/m1/history?from=")
