"""
Quota exhaustion prediction.

Linear extrapolation of recent token-quota growth to estimate the hours
left until the quota reaches 100%.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from glm_monitor.storage.models import QuotaPrediction, UsagePoint

from .exceptions import InsufficientDataError, InvalidRangeError
from .rates import MIN_POINTS, filter_window, hours_between

DEFAULT_WINDOW_HOURS = 6
WARNING_THRESHOLD_HOURS = 24


class PredictionStatus(Enum):
    """Classification of a prediction."""
    OK = "ok"
    WARNING = "warning"            # exhausted within a day
    NOT_DEPLETING = "not_depleting"  # flat or decreasing quota


@dataclass(frozen=True)
class PredictionResult:
    """Estimated time until the token quota is exhausted."""
    quota_percent: float
    hours_until_exhausted: Optional[int]
    rate: float  # percent per hour
    window_hours: int
    status: PredictionStatus

    @property
    def message(self) -> str:
        if self.status == PredictionStatus.NOT_DEPLETING:
            return "Quota not being consumed or decreasing"
        return f"Quota exhausted in about {self.hours_until_exhausted}h"

    def to_quota_prediction(self) -> QuotaPrediction:
        """Convert to the record stored on the history document."""
        return QuotaPrediction(
            hours_until_exhausted=self.hours_until_exhausted,
            rate=self.rate,
            status=self.status.value,
        )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def predict_exhaustion(
    quota_percent_now: float,
    history: Sequence[UsagePoint],
    window_hours: int = DEFAULT_WINDOW_HOURS,
    now: Optional[datetime] = None,
) -> PredictionResult:
    """Predict when the token quota runs out.

    Args:
        quota_percent_now: Current token quota percentage
        history: Samples carrying ``token_quota_percent``
        window_hours: Trailing window used for the growth rate
        now: End of the window; defaults to the current time

    Returns:
        PredictionResult. A flat or decreasing quota yields
        ``NOT_DEPLETING`` with no estimate, never a negative or
        infinite one.

    Raises:
        InsufficientDataError: If fewer than 2 samples fall in the window
        InvalidRangeError: If the window spans no time
    """
    window = filter_window(history, window_hours, now)
    if len(window) < MIN_POINTS:
        raise InsufficientDataError(
            f"Insufficient data for prediction in the {window_hours}h window",
            required=MIN_POINTS,
            available=len(window),
        )

    oldest, latest = window[0], window[-1]
    hours_elapsed = hours_between(oldest.timestamp, latest.timestamp)
    if hours_elapsed <= 0:
        raise InvalidRangeError(
            "Invalid time window: samples span no elapsed time",
            {"window": f"{window_hours}h"},
        )

    percent_per_hour = (latest.token_quota_percent - oldest.token_quota_percent) / hours_elapsed

    if percent_per_hour <= 0:
        return PredictionResult(
            quota_percent=quota_percent_now,
            hours_until_exhausted=None,
            rate=0.0,
            window_hours=window_hours,
            status=PredictionStatus.NOT_DEPLETING,
        )

    remaining = max(100 - quota_percent_now, 0)
    hours_left = remaining / percent_per_hour
    status = (
        PredictionStatus.WARNING
        if hours_left < WARNING_THRESHOLD_HOURS
        else PredictionStatus.OK
    )

    return PredictionResult(
        quota_percent=quota_percent_now,
        hours_until_exhausted=_round_half_up(hours_left),
        rate=round(percent_per_hour, 2),
        window_hours=window_hours,
        status=status,
    )
