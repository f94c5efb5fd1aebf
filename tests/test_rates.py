"""
Unit tests for rate calculations.
"""

from datetime import datetime, timedelta, timezone

import pytest

from glm_monitor.core.exceptions import InsufficientDataError, InvalidRangeError
from glm_monitor.core.rates import calculate_rate_series, calculate_rates, filter_window
from glm_monitor.storage.models import Snapshot

NOON = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


def _entry(hours_before_noon: float, tokens: int, calls: int) -> Snapshot:
    return Snapshot(
        timestamp=NOON - timedelta(hours=hours_before_noon),
        tokens_used=tokens,
        model_calls=calls,
    )


@pytest.fixture
def hourly_entries():
    """Three samples at 10:00, 11:00 and 12:00."""
    return [
        _entry(2, 1_000_000, 100),
        _entry(1, 1_500_000, 150),
        _entry(0, 2_200_000, 220),
    ]


class TestCalculateRates:
    """Test window rates."""

    def test_two_hour_window(self, hourly_entries):
        """Test rates from the first and last sample of the window."""
        stats = calculate_rates(hourly_entries, window_hours=2, now=NOON)

        assert stats.tokens_per_hour == 600_000
        assert stats.calls_per_hour == 60
        assert stats.avg_tokens_per_call == 10_000
        assert stats.entries_count == 3
        assert stats.hours_elapsed == 2

    def test_window_excludes_older_entries(self, hourly_entries):
        stats = calculate_rates(hourly_entries, window_hours=1, now=NOON)

        assert stats.entries_count == 2
        assert stats.tokens_per_hour == 700_000

    def test_identical_timestamps_raise_invalid_range(self):
        """Test that zero elapsed time is an error, never infinity."""
        entries = [_entry(0, 100, 1), _entry(0, 200, 2)]
        with pytest.raises(InvalidRangeError):
            calculate_rates(entries, window_hours=1, now=NOON)

    def test_single_entry_is_insufficient(self, hourly_entries):
        with pytest.raises(InsufficientDataError) as exc_info:
            calculate_rates(hourly_entries[-1:], window_hours=1, now=NOON)
        assert exc_info.value.available == 1

    def test_no_calls_gives_zero_tokens_per_call(self):
        entries = [_entry(1, 100, 5), _entry(0, 200, 5)]
        stats = calculate_rates(entries, window_hours=2, now=NOON)
        assert stats.avg_tokens_per_call == 0.0

    def test_counter_reset_passes_through(self):
        """Test that a decreasing counter yields a negative rate as-is."""
        entries = [_entry(1, 1000, 10), _entry(0, 0, 0)]
        stats = calculate_rates(entries, window_hours=2, now=NOON)
        assert stats.tokens_per_hour == -1000

    def test_unsorted_input(self, hourly_entries):
        stats = calculate_rates(list(reversed(hourly_entries)), window_hours=2, now=NOON)
        assert stats.tokens_per_hour == 600_000


class TestRateSeries:
    """Test per-interval rates."""

    def test_intervals_and_peak(self, hourly_entries):
        report = calculate_rate_series(hourly_entries)

        assert [r.tokens_per_hour for r in report.intervals] == [500_000, 700_000]
        assert report.avg_tokens_per_hour == 600_000
        assert report.peak.timestamp == NOON

    def test_zero_length_intervals_are_skipped(self):
        entries = [_entry(1, 0, 0), _entry(0, 100, 1), _entry(0, 100, 1)]
        report = calculate_rate_series(entries)
        assert len(report.intervals) == 1

    def test_tie_keeps_earliest_peak(self):
        entries = [_entry(2, 0, 0), _entry(1, 100, 1), _entry(0, 200, 2)]
        report = calculate_rate_series(entries)
        assert report.peak.timestamp == NOON - timedelta(hours=1)

    def test_no_interval_is_insufficient(self):
        with pytest.raises(InsufficientDataError):
            calculate_rate_series([_entry(0, 1, 1)])


class TestFilterWindow:
    """Test time-based window filtering."""

    def test_cutoff_is_inclusive(self, hourly_entries):
        window = filter_window(hourly_entries, 2, now=NOON)
        assert len(window) == 3

    def test_sorted_oldest_first(self, hourly_entries):
        window = filter_window(list(reversed(hourly_entries)), 24, now=NOON)
        assert [e.timestamp for e in window] == sorted(e.timestamp for e in hourly_entries)
