"""
Unit tests for storage layer.

Tests document paths, atomic writes and the bounded raw history.
"""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from glm_monitor.core.exceptions import CorruptDataError
from glm_monitor.core.ranges import RetentionPeriod
from glm_monitor.storage.files import ProfilePaths, read_json, write_json_atomic
from glm_monitor.storage.models import HistoryDocument, QuotaLimit, QuotaLimits, Snapshot
from glm_monitor.storage.repository import SnapshotStore, SummaryStore

BASE_TIME = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def _snapshot(minutes: int, tokens: int = 0) -> Snapshot:
    return Snapshot(timestamp=BASE_TIME + timedelta(minutes=minutes), tokens_used=tokens)


class TestProfilePaths:
    """Test per-profile file naming."""

    def test_default_profile_uses_plain_names(self):
        paths = ProfilePaths(Path("/data"))
        assert paths.history_path("default") == Path("/data/usage-history.json")
        assert paths.summary_path("default") == Path("/data/usage-summary.json")

    def test_named_profile_is_prefixed(self):
        paths = ProfilePaths(Path("/data"))
        assert paths.history_path("work") == Path("/data/work-usage-history.json")
        assert paths.summary_path("work") == Path("/data/work-usage-summary.json")


class TestAtomicWrite:
    """Test JSON file primitives."""

    def test_write_creates_parent_directories(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "nested" / "doc.json"
            write_json_atomic(path, {"a": 1})
            assert read_json(path) == {"a": 1}

    def test_write_leaves_no_temporary_files(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = Path(temp_dir) / "doc.json"
            write_json_atomic(path, {"a": 1})
            write_json_atomic(path, {"a": 2})
            assert [p.name for p in Path(temp_dir).iterdir()] == ["doc.json"]
            assert read_json(path) == {"a": 2}

    def test_read_missing_file_returns_none(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            assert read_json(Path(temp_dir) / "missing.json") is None


class TestSnapshotStore:
    """Test append, trimming and validation of the raw history."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.paths = ProfilePaths(Path(self.temp_dir))
        self.now = BASE_TIME + timedelta(days=1)
        self.store = SnapshotStore(self.paths, clock=lambda: self.now)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_load_missing_document_is_empty(self):
        document = self.store.load("default")
        assert document.entries == []
        assert document.latest is None
        assert not self.store.exists("default")

    def test_append_persists_snapshot(self):
        """Test that an appended snapshot is written to disk."""
        limits = QuotaLimits(token_quota=QuotaLimit(current=10, max=100, percentage=10))
        self.store.append("default", _snapshot(0, tokens=100), limits)

        raw = read_json(self.paths.history_path("default"))
        assert len(raw["entries"]) == 1
        assert raw["entries"][0]["tokensUsed"] == 100
        assert raw["lastUpdated"] == "2024-01-16T10:00:00.000Z"
        assert raw["quotaLimits"]["tokenQuota"]["max"] == 100

    def test_append_same_timestamp_is_noop(self):
        """Test that a duplicate timestamp changes neither entries nor lastUpdated."""
        self.store.append("default", _snapshot(0, tokens=100))
        before = read_json(self.paths.history_path("default"))

        self.now = self.now + timedelta(hours=1)
        document = self.store.append("default", _snapshot(0, tokens=999))

        after = read_json(self.paths.history_path("default"))
        assert after == before
        assert len(document.entries) == 1
        assert document.entries[0].tokens_used == 100

    def test_append_sub_millisecond_timestamp_twice_is_noop(self):
        """Test that a repeated append matches the stored millisecond timestamp."""
        snapshot = Snapshot(timestamp=BASE_TIME.replace(microsecond=123456), tokens_used=100)
        self.store.append("default", snapshot)
        before = read_json(self.paths.history_path("default"))

        self.now = self.now + timedelta(minutes=5)
        self.store.append("default", snapshot)

        assert read_json(self.paths.history_path("default")) == before
        assert len(self.store.load("default").entries) == 1

    def test_append_trims_to_cap(self):
        """Test that the history never exceeds the retention cap."""
        cap = RetentionPeriod.DAY.raw_entry_cap
        entries = [_snapshot(i * 5, tokens=i) for i in range(cap)]
        self.store.save("default", HistoryDocument(entries=entries))

        document = self.store.append("default", _snapshot(cap * 5, tokens=cap))

        assert len(document.entries) == cap
        assert document.entries[0].tokens_used == 1
        assert document.entries[-1].tokens_used == cap

    def test_longer_retention_raises_cap(self):
        store = SnapshotStore(self.paths, RetentionPeriod.WEEK)
        assert store.max_entries == 7 * 24 * 12

    def test_profiles_are_isolated(self):
        self.store.append("default", _snapshot(0))
        self.store.append("work", _snapshot(0))
        self.store.append("work", _snapshot(5))

        assert len(self.store.load("default").entries) == 1
        assert len(self.store.load("work").entries) == 2

    def test_invalid_json_raises_corrupt_data(self):
        path = self.paths.history_path("default")
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(CorruptDataError) as exc_info:
            self.store.load("default")
        assert exc_info.value.path == path

    def test_wrong_shape_raises_corrupt_data(self):
        """Test that a document with a malformed entry is rejected, not defaulted."""
        path = self.paths.history_path("default")
        path.write_text(json.dumps({"entries": [{"timestamp": 42}]}), encoding="utf-8")

        with pytest.raises(CorruptDataError):
            self.store.load("default")

    def test_delete(self):
        self.store.append("work", _snapshot(0))
        assert self.store.delete("work") is True
        assert self.store.delete("work") is False


class TestSummaryStore:
    """Test the long-term summary log."""

    def test_load_missing_document_is_empty(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            store = SummaryStore(ProfilePaths(Path(temp_dir)))
            assert store.load("default").summaries == []

    def test_corrupt_summary_document(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            paths = ProfilePaths(Path(temp_dir))
            paths.summary_path("default").write_text("[]", encoding="utf-8")

            with pytest.raises(CorruptDataError):
                SummaryStore(paths).load("default")
