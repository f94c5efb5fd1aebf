"""
Query engine over raw history and hourly summaries.

Stateless: every call re-reads the persisted documents, so the CLI, the
API and the collector always see the latest written state.
"""

from dataclasses import dataclass
from datetime import datetime, tzinfo
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from glm_monitor.storage.files import DEFAULT_PROFILE
from glm_monitor.storage.models import (
    HistoryDocument,
    QuotaLimits,
    QuotaPrediction,
    Snapshot,
    UsagePoint,
    utc_now,
)
from glm_monitor.storage.repository import SnapshotStore, SummaryStore

from .exceptions import InvalidRangeError, NotFoundError
from .insights import PeakReport, UsageSummary, build_peak_report, build_usage_summary
from .prediction import DEFAULT_WINDOW_HOURS, PredictionResult, predict_exhaustion
from .ranges import RangeSpec, RetentionPeriod, hour_bucket, resolve_range, window_range
from .rates import RateStats, RatesReport, calculate_rate_series, calculate_rates
from .summarizer import ArchiveResult, archive_old_data

DEFAULT_RATE_WINDOW_HOURS = 1


class HistoryFormat(Enum):
    """Shape of a history response."""
    RAW = "raw"
    SUMMARY = "summary"


@dataclass(frozen=True)
class CurrentUsage:
    """Latest snapshot with the quota details stored next to it."""
    snapshot: Snapshot
    quota_limits: Optional[QuotaLimits]
    quota_prediction: Optional[QuotaPrediction]
    last_updated: Optional[datetime]


@dataclass(frozen=True)
class HistoryView:
    """Composite raw + summary points for a range, oldest first."""
    range: str
    points: List[UsagePoint]
    last_updated: Optional[datetime]


@dataclass(frozen=True)
class DocumentStats:
    """Size and record count of one persisted document."""
    path: Path
    exists: bool = False
    size: int = 0
    records: int = 0


@dataclass(frozen=True)
class StorageStats:
    """Storage usage of a profile."""
    history: DocumentStats
    summary: DocumentStats

    @property
    def total_size(self) -> int:
        return self.history.size + self.summary.size


def parse_format(value: Union[str, HistoryFormat, None]) -> HistoryFormat:
    """Parse a history format token, defaulting to raw.

    Raises:
        InvalidRangeError: If the token is neither ``raw`` nor ``summary``
    """
    if value is None:
        return HistoryFormat.RAW
    if isinstance(value, HistoryFormat):
        return value
    try:
        return HistoryFormat(value)
    except ValueError:
        raise InvalidRangeError(f"Unknown history format '{value}'", {"valid": "raw, summary"})


class QueryEngine:
    """Read-side operations over a profile's documents."""

    def __init__(
        self,
        history_store: SnapshotStore,
        summary_store: SummaryStore,
        clock: Callable[[], datetime] = utc_now,
        tz: Optional[tzinfo] = None,
    ):
        """Initialize the engine.

        Args:
            history_store: Raw history store
            summary_store: Summary log store
            clock: Source of the current time
            tz: Zone defining calendar hours; None means the system zone
        """
        self.history_store = history_store
        self.summary_store = summary_store
        self.clock = clock
        self.tz = tz

    def _require_history(self, profile: str) -> HistoryDocument:
        if not self.history_store.exists(profile):
            raise NotFoundError("No data available", {"profile": profile})
        return self.history_store.load(profile)

    def _points_since(
        self, profile: str, range_spec: RangeSpec, history: Optional[HistoryDocument] = None
    ) -> Tuple[HistoryDocument, List[UsagePoint]]:
        """Raw entries, plus summaries for spans beyond the raw window.

        A summary whose hour bucket also holds a raw entry is dropped, so
        each hour is represented at the finest resolution available.
        """
        if history is None:
            history = self.history_store.load(profile)
        cutoff = range_spec.cutoff(self.clock())
        entries = [entry for entry in history.entries if entry.timestamp >= cutoff]

        summaries = []
        if range_spec.includes_summaries:
            summaries = [
                summary for summary in self.summary_store.load(profile).summaries
                if summary.timestamp >= cutoff
            ]

        raw_hours = {hour_bucket(entry.timestamp, self.tz) for entry in entries}
        kept = [s for s in summaries if hour_bucket(s.timestamp, self.tz) not in raw_hours]

        points: List[UsagePoint] = [*kept, *entries]
        points.sort(key=lambda point: point.timestamp)
        return history, points

    def get_combined_entries(self, profile: str = DEFAULT_PROFILE, range_token: str = "24h") -> List[UsagePoint]:
        """Get the composite view of a range.

        Raises:
            InvalidRangeError: If the range token is unknown
            CorruptDataError: If a stored document cannot be parsed
        """
        range_spec = resolve_range(range_token)
        _, points = self._points_since(profile, range_spec)
        return points

    def get_current(self, profile: str = DEFAULT_PROFILE) -> CurrentUsage:
        """Get the latest snapshot of a profile.

        Raises:
            NotFoundError: If no snapshot has been collected
        """
        history = self._require_history(profile)
        if history.latest is None:
            raise NotFoundError("No data available", {"profile": profile})
        return CurrentUsage(
            snapshot=history.latest,
            quota_limits=history.quota_limits,
            quota_prediction=history.quota_prediction,
            last_updated=history.last_updated,
        )

    def get_history(
        self,
        profile: str = DEFAULT_PROFILE,
        range_token: str = "24h",
        fmt: Union[str, HistoryFormat, None] = HistoryFormat.RAW,
    ) -> Union[HistoryView, UsageSummary]:
        """Get the history of a range as raw points or as a summary.

        Raises:
            InvalidRangeError: If the range or format token is unknown
            NotFoundError: If there is no document or the range is empty
        """
        range_spec = resolve_range(range_token)
        history_format = parse_format(fmt)
        history = self._require_history(profile)
        _, points = self._points_since(profile, range_spec, history)
        if not points:
            raise NotFoundError("No data for the specified range", {"range": range_spec.token})

        if history_format == HistoryFormat.SUMMARY:
            return build_usage_summary(points)
        return HistoryView(range=range_spec.token, points=points, last_updated=history.last_updated)

    def get_rates(self, profile: str = DEFAULT_PROFILE, window_hours: int = DEFAULT_RATE_WINDOW_HOURS) -> RateStats:
        """Get consumption rates over a trailing window.

        Raises:
            NotFoundError: If no document exists
            InsufficientDataError: If fewer than 2 samples fall in the window
            InvalidRangeError: If the window spans no time
        """
        history = self._require_history(profile)
        _, points = self._points_since(profile, window_range(window_hours), history)
        return calculate_rates(points, window_hours, now=self.clock())

    def get_rate_series(self, profile: str = DEFAULT_PROFILE, range_token: str = "24h") -> RatesReport:
        """Get per-interval rates over a range.

        Raises:
            NotFoundError: If no document exists
            InsufficientDataError: If the range has no usable interval
        """
        range_spec = resolve_range(range_token)
        history = self._require_history(profile)
        _, points = self._points_since(profile, range_spec, history)
        return calculate_rate_series(points)

    def get_prediction(self, profile: str = DEFAULT_PROFILE, window_hours: int = DEFAULT_WINDOW_HOURS) -> PredictionResult:
        """Predict token quota exhaustion from the latest snapshot.

        Raises:
            NotFoundError: If no snapshot has been collected
            InsufficientDataError: If fewer than 2 samples fall in the window
            InvalidRangeError: If the window spans no time
        """
        history = self._require_history(profile)
        if history.latest is None:
            raise NotFoundError("No data available", {"profile": profile})
        _, points = self._points_since(profile, window_range(window_hours), history)
        return predict_exhaustion(
            history.latest.token_quota_percent,
            points,
            window_hours=window_hours,
            now=self.clock(),
        )

    def get_insights(self, profile: str = DEFAULT_PROFILE, range_token: str = "24h") -> PeakReport:
        """Get the peak usage report over a range.

        Raises:
            NotFoundError: If no document exists or the range is empty
            InsufficientDataError: If the range has a single sample
        """
        range_spec = resolve_range(range_token)
        history = self._require_history(profile)
        _, points = self._points_since(profile, range_spec, history)
        if not points:
            raise NotFoundError("No data for the specified range", {"range": range_spec.token})
        return build_peak_report(points, self.tz)

    def cleanup(self, profile: str, retention: Union[str, RetentionPeriod]) -> ArchiveResult:
        """Archive raw data beyond the 24-hour window and prune old summaries."""
        return archive_old_data(
            profile,
            retention,
            history_store=self.history_store,
            summary_store=self.summary_store,
            now=self.clock(),
            tz=self.tz,
        )

    def get_storage_stats(self, profile: str = DEFAULT_PROFILE) -> StorageStats:
        """Report size and record counts of a profile's documents.

        Raises:
            CorruptDataError: If a stored document cannot be parsed
        """
        history_path = self.history_store.paths.history_path(profile)
        summary_path = self.summary_store.paths.summary_path(profile)

        history_stats = DocumentStats(path=history_path)
        if history_path.exists():
            history_stats = DocumentStats(
                path=history_path,
                exists=True,
                size=history_path.stat().st_size,
                records=len(self.history_store.load(profile).entries),
            )

        summary_stats = DocumentStats(path=summary_path)
        if summary_path.exists():
            summary_stats = DocumentStats(
                path=summary_path,
                exists=True,
                size=summary_path.stat().st_size,
                records=len(self.summary_store.load(profile).summaries),
            )

        return StorageStats(history=history_stats, summary=summary_stats)
