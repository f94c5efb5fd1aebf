"""
Range and retention tokens.

Maps the symbolic tokens accepted by the CLI and API to explicit time
spans. Filtering always uses timestamp cutoffs; entry counts derived from
the sampling cadence are only a storage-size heuristic.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from enum import Enum
from typing import Dict, Optional, Union

from .exceptions import InvalidRangeError

# Collector cadence: one sample every 5 minutes
ENTRIES_PER_HOUR = 12

# Raw snapshots kept at full resolution when archiving (24 hours)
RAW_WINDOW_HOURS = 24
RAW_ENTRIES_LIMIT = RAW_WINDOW_HOURS * ENTRIES_PER_HOUR


class RetentionPeriod(Enum):
    """How long usage data is kept."""
    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"

    @property
    def hours(self) -> int:
        return _RETENTION_HOURS[self]

    @property
    def raw_entry_cap(self) -> int:
        """Maximum raw entries the history document may hold."""
        return self.hours * ENTRIES_PER_HOUR

    @property
    def archives(self) -> bool:
        """Whether data older than the raw window is summarized."""
        return self.hours > RAW_WINDOW_HOURS


_RETENTION_HOURS: Dict[RetentionPeriod, int] = {
    RetentionPeriod.DAY: 24,
    RetentionPeriod.WEEK: 7 * 24,
    RetentionPeriod.MONTH: 30 * 24,
}


@dataclass(frozen=True)
class RangeSpec:
    """A resolved query range."""
    token: str
    hours: int
    max_entries: int

    @property
    def includes_summaries(self) -> bool:
        """Ranges longer than the raw window also read hourly summaries."""
        return self.hours > RAW_WINDOW_HOURS

    def cutoff(self, now: datetime) -> datetime:
        return now - timedelta(hours=self.hours)


RANGE_HOURS: Dict[str, int] = {
    "1h": 1,
    "6h": 6,
    "12h": 12,
    "24h": 24,
    "7d": 7 * 24,
    "30d": 30 * 24,
}

_WINDOW_PATTERN = re.compile(r"^\s*(\d+)\s*h?\s*$", re.IGNORECASE)


def resolve_range(token: str) -> RangeSpec:
    """Resolve a range token such as ``"6h"`` or ``"7d"``.

    Raises:
        InvalidRangeError: If the token is not recognized
    """
    if token not in RANGE_HOURS:
        raise InvalidRangeError(
            f"Unknown range '{token}'",
            {"valid": ", ".join(RANGE_HOURS)},
        )
    return window_range(RANGE_HOURS[token], token)


def window_range(hours: int, token: Optional[str] = None) -> RangeSpec:
    """Wrap a trailing window of ``hours`` as a range."""
    return RangeSpec(
        token=token or f"{hours}h",
        hours=hours,
        max_entries=int(hours * ENTRIES_PER_HOUR),
    )


def parse_retention(value: Union[str, RetentionPeriod]) -> RetentionPeriod:
    """Parse a retention token (``24h``, ``7d`` or ``30d``).

    Raises:
        InvalidRangeError: If the token is not a retention period
    """
    if isinstance(value, RetentionPeriod):
        return value
    try:
        return RetentionPeriod(value)
    except ValueError:
        valid = [period.value for period in RetentionPeriod]
        raise InvalidRangeError(
            f"Invalid retention period '{value}'",
            {"valid": ", ".join(valid)},
        )


def parse_window_hours(value: Union[str, int, None], default: int) -> int:
    """Parse a rate/prediction window given as ``6``, ``"6"`` or ``"6h"``.

    Raises:
        InvalidRangeError: If the value is not a positive number of hours
    """
    if value is None:
        return default
    if isinstance(value, bool):
        raise InvalidRangeError(f"Invalid window '{value}'")
    if isinstance(value, int):
        hours = value
    else:
        match = _WINDOW_PATTERN.match(str(value))
        if not match:
            raise InvalidRangeError(f"Invalid window '{value}'")
        hours = int(match.group(1))
    if hours <= 0:
        raise InvalidRangeError(f"Window must be at least 1 hour, got {hours}")
    return hours


def hour_bucket(timestamp: datetime, tz: Optional[tzinfo] = None) -> datetime:
    """Truncate a timestamp to the start of its local calendar hour.

    The result is expressed in UTC: datetimes sharing a tzinfo compare by
    wall clock, which would merge the two identical hours around a DST
    fall-back transition.

    Args:
        timestamp: Aware timestamp
        tz: Zone defining "local"; None means the system zone
    """
    local = timestamp.astimezone(tz)
    start = local.replace(minute=0, second=0, microsecond=0)
    return start.astimezone(timezone.utc)
