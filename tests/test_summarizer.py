"""
Unit tests for hourly archival.
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from glm_monitor.core.exceptions import InvalidRangeError
from glm_monitor.core.ranges import RAW_ENTRIES_LIMIT, RetentionPeriod
from glm_monitor.core.summarizer import archive_old_data, generate_summaries, merge_summaries
from glm_monitor.storage.files import ProfilePaths
from glm_monitor.storage.models import HistoryDocument, Snapshot, Summary, SummaryDocument
from glm_monitor.storage.repository import SnapshotStore, SummaryStore

UTC = timezone.utc
BASE_TIME = datetime(2024, 1, 1, 0, 0, tzinfo=UTC)


def _at(minutes: int, **fields) -> Snapshot:
    return Snapshot(timestamp=BASE_TIME + timedelta(minutes=minutes), **fields)


class TestGenerateSummaries:
    """Test grouping snapshots into hourly buckets."""

    def test_one_summary_per_occupied_hour(self):
        """Test that empty hours produce no summary and counts are conserved."""
        entries = [
            _at(0, tokens_used=10),
            _at(5, tokens_used=20),
            _at(55, tokens_used=30),
            _at(180, tokens_used=40),
        ]
        summaries = generate_summaries(entries, tz=UTC)

        assert [s.timestamp for s in summaries] == [BASE_TIME, BASE_TIME + timedelta(hours=3)]
        assert [s.entry_count for s in summaries] == [3, 1]
        assert sum(s.entry_count for s in summaries) == len(entries)

    def test_counters_keep_bucket_maximum(self):
        entries = [
            _at(0, tokens_used=500, model_calls=5, mcp_calls=1),
            _at(30, tokens_used=300, model_calls=9, mcp_calls=0),
        ]
        summary = generate_summaries(entries, tz=UTC)[0]

        assert summary.tokens_used == 500
        assert summary.model_calls == 9
        assert summary.mcp_calls == 1

    def test_zero_gauge_does_not_overwrite_reading(self):
        """Test that a missing quota sample keeps the last real reading."""
        entries = [
            _at(0, token_quota_percent=40, time_quota_percent=5),
            _at(10, token_quota_percent=45, time_quota_percent=0),
            _at(20, token_quota_percent=0, time_quota_percent=0),
        ]
        summary = generate_summaries(entries, tz=UTC)[0]

        assert summary.token_quota_percent == 45
        assert summary.time_quota_percent == 5

    def test_input_order_does_not_matter(self):
        entries = [_at(70, tokens_used=2), _at(0, tokens_used=1)]
        summaries = generate_summaries(entries, tz=UTC)
        assert [s.tokens_used for s in summaries] == [1, 2]

    def test_dst_fall_back_hours_stay_separate(self):
        """Test that the repeated 01:00 hour at fall-back yields two buckets."""
        new_york = ZoneInfo("America/New_York")
        # 05:30Z is 01:30 EDT and 06:30Z is 01:30 EST on 2024-11-03
        entries = [
            Snapshot(timestamp=datetime(2024, 11, 3, 5, 30, tzinfo=UTC), tokens_used=1),
            Snapshot(timestamp=datetime(2024, 11, 3, 6, 30, tzinfo=UTC), tokens_used=2),
        ]
        summaries = generate_summaries(entries, tz=new_york)

        assert len(summaries) == 2
        assert [s.entry_count for s in summaries] == [1, 1]

    def test_non_utc_zone_aligns_to_local_hour(self):
        """Test that buckets follow local hours in half-hour offset zones."""
        kolkata = ZoneInfo("Asia/Kolkata")
        entries = [
            Snapshot(timestamp=datetime(2024, 1, 1, 0, 20, tzinfo=UTC)),
            Snapshot(timestamp=datetime(2024, 1, 1, 0, 40, tzinfo=UTC)),
        ]
        summaries = generate_summaries(entries, tz=kolkata)

        # 05:50 and 06:10 IST fall in different local hours
        assert len(summaries) == 2
        assert summaries[1].timestamp == datetime(2024, 1, 1, 0, 30, tzinfo=UTC)


class TestMergeSummaries:
    """Test bucket deduplication on merge."""

    def test_new_summary_replaces_existing_bucket(self):
        existing = [Summary(timestamp=BASE_TIME, tokens_used=1, entry_count=5)]
        new = [Summary(timestamp=BASE_TIME, tokens_used=2, entry_count=3)]

        merged = merge_summaries(existing, new)

        assert len(merged) == 1
        assert merged[0].tokens_used == 2
        assert merged[0].entry_count == 3

    def test_merge_keeps_distinct_buckets_sorted(self):
        later = Summary(timestamp=BASE_TIME + timedelta(hours=1))
        earlier = Summary(timestamp=BASE_TIME)
        merged = merge_summaries([later], [earlier])
        assert [s.timestamp for s in merged] == [earlier.timestamp, later.timestamp]


class TestArchiveOldData:
    """Test the archival pass over stored documents."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.paths = ProfilePaths(Path(self.temp_dir))
        self.history_store = SnapshotStore(self.paths, RetentionPeriod.WEEK)
        self.summary_store = SummaryStore(self.paths)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _seed(self, count: int) -> datetime:
        """Store ``count`` entries five minutes apart; return the time after the last."""
        entries = [_at(i * 5, tokens_used=i * 100) for i in range(count)]
        self.history_store.save("default", HistoryDocument(entries=entries))
        return BASE_TIME + timedelta(minutes=count * 5)

    def _archive(self, now: datetime, retention=RetentionPeriod.WEEK):
        return archive_old_data(
            "default",
            retention,
            history_store=self.history_store,
            summary_store=self.summary_store,
            now=now,
            tz=UTC,
        )

    def test_day_retention_is_noop(self):
        now = self._seed(RAW_ENTRIES_LIMIT + 12)
        result = self._archive(now, RetentionPeriod.DAY)

        assert (result.archived, result.trimmed) == (0, 0)
        assert not self.summary_store.exists("default")
        assert len(self.history_store.load("default").entries) == RAW_ENTRIES_LIMIT + 12

    def test_archives_entries_beyond_raw_window(self):
        """Test that the oldest overflow is folded into hourly summaries."""
        now = self._seed(RAW_ENTRIES_LIMIT + 12)
        result = self._archive(now)

        assert result.archived == 12
        assert result.trimmed == 0

        summaries = self.summary_store.load("default").summaries
        assert len(summaries) == 1
        assert summaries[0].timestamp == BASE_TIME
        assert summaries[0].entry_count == 12
        assert summaries[0].tokens_used == 11 * 100

        history = self.history_store.load("default")
        assert len(history.entries) == RAW_ENTRIES_LIMIT
        assert history.entries[0].timestamp == BASE_TIME + timedelta(hours=1)

    def test_summary_never_below_raw_maximum(self):
        now = self._seed(RAW_ENTRIES_LIMIT + 30)
        self._archive(now)

        summaries = self.summary_store.load("default").summaries
        assert summaries[0].tokens_used >= max(i * 100 for i in range(12))
        assert summaries[1].tokens_used >= max(i * 100 for i in range(12, 24))

    def test_rerun_is_idempotent(self):
        """Test that a second pass changes nothing."""
        now = self._seed(RAW_ENTRIES_LIMIT + 24)
        self._archive(now)
        summaries_before = self.summary_store.load("default").summaries

        result = self._archive(now)

        assert (result.archived, result.trimmed) == (0, 0)
        assert self.summary_store.load("default").summaries == summaries_before
        assert len(self.history_store.load("default").entries) == RAW_ENTRIES_LIMIT

    def test_prunes_expired_summaries_without_new_data(self):
        """Test that pruning runs even when nothing is archived."""
        now = self._seed(10)
        self.summary_store.save("default", SummaryDocument(summaries=[
            Summary(timestamp=now - timedelta(days=8), entry_count=12),
            Summary(timestamp=now - timedelta(days=2), entry_count=12),
        ]))

        result = self._archive(now)

        assert result.archived == 0
        assert result.trimmed == 1
        remaining = self.summary_store.load("default").summaries
        assert [s.timestamp for s in remaining] == [now - timedelta(days=2)]

    def test_empty_history(self):
        result = self._archive(BASE_TIME)
        assert (result.archived, result.trimmed) == (0, 0)

    def test_unknown_retention_token(self):
        with pytest.raises(InvalidRangeError):
            self._archive(BASE_TIME, "90d")
