"""
Usage rate calculations.

Rates are derived from cumulative counters over elapsed wall-clock time.
Counter resets are not detected: a counter that drops between samples
produces a negative rate, which callers see as-is.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from glm_monitor.storage.models import UsagePoint, utc_now

from .exceptions import InsufficientDataError, InvalidRangeError

MIN_POINTS = 2
SECONDS_PER_HOUR = 3600.0


@dataclass(frozen=True)
class RateStats:
    """Average consumption rates over a trailing window."""
    window_hours: int
    tokens_per_hour: float
    calls_per_hour: float
    avg_tokens_per_call: float
    entries_count: int
    hours_elapsed: float


@dataclass(frozen=True)
class IntervalRate:
    """Consumption rate between two consecutive samples."""
    timestamp: datetime
    tokens_per_hour: float
    calls_per_hour: float


@dataclass(frozen=True)
class RatesReport:
    """Per-interval rates with their averages and the peak interval."""
    intervals: List[IntervalRate]
    avg_tokens_per_hour: float
    avg_calls_per_hour: float
    peak: IntervalRate


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / SECONDS_PER_HOUR


def filter_window(
    entries: Sequence[UsagePoint],
    window_hours: float,
    now: Optional[datetime] = None,
) -> List[UsagePoint]:
    """Keep entries with ``timestamp >= now - window_hours``, oldest first."""
    now = now or utc_now()
    cutoff = now - timedelta(hours=window_hours)
    return sorted(
        (entry for entry in entries if entry.timestamp >= cutoff),
        key=lambda entry: entry.timestamp,
    )


def calculate_rates(
    entries: Sequence[UsagePoint],
    window_hours: int,
    now: Optional[datetime] = None,
) -> RateStats:
    """Calculate token and call rates over a trailing window.

    Uses the first and last sample inside the window, so irregular
    sampling in between does not bias the result.

    Args:
        entries: Usage samples
        window_hours: Length of the trailing window
        now: End of the window; defaults to the current time

    Returns:
        RateStats for the window

    Raises:
        InsufficientDataError: If fewer than 2 samples fall in the window
        InvalidRangeError: If the window spans no time (equal or
            out-of-order timestamps)
    """
    window = filter_window(entries, window_hours, now)
    if len(window) < MIN_POINTS:
        raise InsufficientDataError(
            f"Insufficient data for the {window_hours}h window",
            required=MIN_POINTS,
            available=len(window),
        )

    first, last = window[0], window[-1]
    hours_elapsed = hours_between(first.timestamp, last.timestamp)
    if hours_elapsed <= 0:
        raise InvalidRangeError(
            "Invalid time window: samples span no elapsed time",
            {"window": f"{window_hours}h"},
        )

    tokens_per_hour = (last.tokens_used - first.tokens_used) / hours_elapsed
    calls_per_hour = (last.model_calls - first.model_calls) / hours_elapsed
    avg_tokens_per_call = tokens_per_hour / calls_per_hour if calls_per_hour > 0 else 0.0

    return RateStats(
        window_hours=window_hours,
        tokens_per_hour=tokens_per_hour,
        calls_per_hour=calls_per_hour,
        avg_tokens_per_call=avg_tokens_per_call,
        entries_count=len(window),
        hours_elapsed=hours_elapsed,
    )


def calculate_rate_series(entries: Sequence[UsagePoint]) -> RatesReport:
    """Calculate the rate of every interval between consecutive samples.

    Intervals with no elapsed time are skipped. The peak is the interval
    with the highest token rate; the earliest one wins ties.

    Raises:
        InsufficientDataError: If no interval has positive elapsed time
    """
    ordered = sorted(entries, key=lambda entry: entry.timestamp)
    intervals: List[IntervalRate] = []

    for prev, curr in zip(ordered, ordered[1:]):
        elapsed = hours_between(prev.timestamp, curr.timestamp)
        if elapsed > 0:
            intervals.append(IntervalRate(
                timestamp=curr.timestamp,
                tokens_per_hour=(curr.tokens_used - prev.tokens_used) / elapsed,
                calls_per_hour=(curr.model_calls - prev.model_calls) / elapsed,
            ))

    if not intervals:
        raise InsufficientDataError(
            "Insufficient data to calculate rates",
            required=MIN_POINTS,
            available=len(ordered),
        )

    peak = intervals[0]
    for interval in intervals[1:]:
        if interval.tokens_per_hour > peak.tokens_per_hour:
            peak = interval

    return RatesReport(
        intervals=intervals,
        avg_tokens_per_hour=sum(r.tokens_per_hour for r in intervals) / len(intervals),
        avg_calls_per_hour=sum(r.calls_per_hour for r in intervals) / len(intervals),
        peak=peak,
    )
