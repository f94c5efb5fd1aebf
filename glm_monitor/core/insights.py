"""
Usage insights and summary reports.

Peak reports group consumption by hour of day and day of week. Summary
reports compare the first and last sample of a range.
"""

from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Dict, List, Optional, Sequence

from glm_monitor.storage.models import UsagePoint

from .exceptions import InsufficientDataError, NotFoundError
from .rates import MIN_POINTS

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass
class PeakBucket:
    """Consumption attributed to one hour of day or day of week."""
    key: int
    label: str
    tokens: float = 0
    calls: float = 0
    intervals: int = 0

    @property
    def avg_tokens(self) -> float:
        return self.tokens / self.intervals if self.intervals else 0.0

    @property
    def avg_calls(self) -> float:
        return self.calls / self.intervals if self.intervals else 0.0


@dataclass(frozen=True)
class PeakReport:
    """Consumption grouped by hour of day and by day of week."""
    by_hour: List[PeakBucket]
    by_weekday: List[PeakBucket]
    peak_hour: PeakBucket
    peak_weekday: PeakBucket
    entries_count: int


@dataclass(frozen=True)
class UsageSummary:
    """Totals and growth over a range of samples."""
    total_model_calls: float
    total_tokens_used: float
    total_mcp_calls: float
    token_quota_percent: float
    time_quota_percent: float
    token_growth: float
    entry_count: int
    start: datetime
    end: datetime


def _hour_label(hour: int) -> str:
    return f"{hour:02d}:00-{(hour + 1) % 24:02d}:00"


def _peak(buckets: Dict[int, PeakBucket]) -> PeakBucket:
    # Strict comparison keeps the first-encountered bucket on ties
    best: Optional[PeakBucket] = None
    for bucket in buckets.values():
        if best is None or bucket.tokens > best.tokens:
            best = bucket
    return best


def build_peak_report(entries: Sequence[UsagePoint], tz: Optional[tzinfo] = None) -> PeakReport:
    """Find the busiest hour of day and day of week.

    Consumption of each interval between consecutive samples (the counter
    delta) is attributed to the local hour and weekday of the later sample.
    Buckets therefore hold usage that happened in that hour, not a plain sum
    of the cumulative counters of the samples taken in it.

    Args:
        entries: Usage samples
        tz: Zone defining hour of day; None means the system zone

    Raises:
        InsufficientDataError: If fewer than 2 samples are given
    """
    ordered = sorted(entries, key=lambda entry: entry.timestamp)
    if len(ordered) < MIN_POINTS:
        raise InsufficientDataError(
            "Insufficient data for a peak usage report",
            required=MIN_POINTS,
            available=len(ordered),
        )

    by_hour: Dict[int, PeakBucket] = {}
    by_weekday: Dict[int, PeakBucket] = {}

    for prev, curr in zip(ordered, ordered[1:]):
        local = curr.timestamp.astimezone(tz)
        tokens = curr.tokens_used - prev.tokens_used
        calls = curr.model_calls - prev.model_calls

        hour = by_hour.setdefault(local.hour, PeakBucket(local.hour, _hour_label(local.hour)))
        day = by_weekday.setdefault(
            local.weekday(), PeakBucket(local.weekday(), WEEKDAY_NAMES[local.weekday()])
        )
        for bucket in (hour, day):
            bucket.tokens += tokens
            bucket.calls += calls
            bucket.intervals += 1

    return PeakReport(
        by_hour=sorted(by_hour.values(), key=lambda b: b.key),
        by_weekday=sorted(by_weekday.values(), key=lambda b: b.key),
        peak_hour=_peak(by_hour),
        peak_weekday=_peak(by_weekday),
        entries_count=len(ordered),
    )


def build_usage_summary(entries: Sequence[UsagePoint]) -> UsageSummary:
    """Summarize a range of samples.

    Totals come from the last sample since counters are cumulative. Growth
    is measured against the first sample; a first value of 0 is treated
    as 1 so the result stays finite (an approximation, not an exact
    percentage).

    Raises:
        NotFoundError: If no samples are given
    """
    if not entries:
        raise NotFoundError("No data for the specified range")

    ordered = sorted(entries, key=lambda entry: entry.timestamp)
    first, last = ordered[0], ordered[-1]
    token_growth = (last.tokens_used - first.tokens_used) / (first.tokens_used or 1) * 100

    return UsageSummary(
        total_model_calls=last.model_calls,
        total_tokens_used=last.tokens_used,
        total_mcp_calls=last.mcp_calls,
        token_quota_percent=last.token_quota_percent,
        time_quota_percent=last.time_quota_percent,
        token_growth=token_growth,
        entry_count=len(ordered),
        start=first.timestamp,
        end=last.timestamp,
    )
