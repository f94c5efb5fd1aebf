"""
Tests for the metering API collector.
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from glm_monitor.collector import MeteringClient, collect_usage, normalize_usage
from glm_monitor.collector.client import UsagePayload
from glm_monitor.core.exceptions import CollectorError
from glm_monitor.core.prediction import PredictionStatus
from glm_monitor.core.ranges import RAW_ENTRIES_LIMIT, RetentionPeriod
from glm_monitor.storage.files import ProfilePaths
from glm_monitor.storage.models import HistoryDocument, Snapshot
from glm_monitor.storage.repository import SnapshotStore, SummaryStore

UTC = timezone.utc
NOW = datetime(2024, 1, 15, 12, 0, 30, 750000, tzinfo=UTC)


def _responses(tokens=2_000_000, calls=200, token_percent=60, time_percent=20):
    return {
        "/api/monitor/usage/model-usage": {
            "data": {"totalUsage": {"totalModelCallCount": calls, "totalTokensUsage": tokens}}
        },
        "/api/monitor/usage/tool-usage": {
            "data": {"totalUsage": {
                "totalSearchMcpCount": 7,
                "totalNetworkSearchCount": 4,
                "totalWebReadMcpCount": 3,
            }}
        },
        "/api/monitor/usage/quota/limit": {
            "data": {"limits": [
                {"type": "TOKENS_LIMIT", "currentValue": 600, "usage": 1000, "percentage": token_percent},
                {"type": "TIME_LIMIT", "currentValue": 20, "usage": 100, "percentage": time_percent},
            ]}
        },
    }


def _client(responses, status_code=200, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status_code, json=responses.get(request.url.path, {}))

    return MeteringClient(
        "https://api.example.test/api/anthropic",
        "secret-token",
        transport=httpx.MockTransport(handler),
    )


class TestMeteringClient:
    """Test HTTP behavior of the client."""

    def test_requires_token(self):
        with pytest.raises(ValueError):
            MeteringClient("https://api.example.test", "")

    def test_requires_valid_base_url(self):
        with pytest.raises(ValueError):
            MeteringClient("not a url", "token")

    def test_fetch_uses_base_domain_and_auth_header(self):
        """Test that requests go to the API host with the token attached."""
        seen = []
        payload = _client(_responses(), seen=seen).fetch(NOW)

        assert len(seen) == 3
        assert all(r.url.host == "api.example.test" for r in seen)
        assert all(r.headers["Authorization"] == "secret-token" for r in seen)
        assert all("startTime" in r.url.params and "endTime" in r.url.params for r in seen)
        assert payload.model_usage["data"]["totalUsage"]["totalTokensUsage"] == 2_000_000

    def test_http_error_status(self):
        with pytest.raises(CollectorError, match="HTTP 401"):
            _client(_responses(), status_code=401).fetch(NOW)

    def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = MeteringClient(
            "https://api.example.test",
            "token",
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(CollectorError, match="failed"):
            client.fetch(NOW)

    def test_invalid_json(self):
        def handler(request):
            return httpx.Response(200, text="<html>")

        client = MeteringClient(
            "https://api.example.test",
            "token",
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(CollectorError, match="parse"):
            client.fetch(NOW)


class TestNormalizeUsage:
    """Test mapping raw responses to a snapshot."""

    def _payload(self, **kwargs) -> UsagePayload:
        responses = _responses(**kwargs)
        return UsagePayload(
            model_usage=responses["/api/monitor/usage/model-usage"],
            tool_usage=responses["/api/monitor/usage/tool-usage"],
            quota_limit=responses["/api/monitor/usage/quota/limit"],
        )

    def test_snapshot_fields(self):
        snapshot, limits = normalize_usage(self._payload(), NOW)

        assert snapshot.tokens_used == 2_000_000
        assert snapshot.model_calls == 200
        assert snapshot.mcp_calls == 7
        assert snapshot.token_quota_percent == 60
        assert snapshot.time_quota_percent == 20
        assert limits.token_quota.current == 600
        assert limits.token_quota.max == 1000

    def test_tool_breakdown_names(self):
        snapshot, _ = normalize_usage(self._payload(), NOW)
        assert snapshot.mcp_tool_breakdown == {
            "searchMcp": 7,
            "networkSearch": 4,
            "webReadMcp": 3,
        }

    def test_timestamp_truncated_to_second(self):
        snapshot, _ = normalize_usage(self._payload(), NOW)
        assert snapshot.timestamp == NOW.replace(microsecond=0)

    def test_missing_total_usage(self):
        payload = UsagePayload(model_usage={"data": {}}, tool_usage={}, quota_limit={})
        with pytest.raises(CollectorError, match="totalUsage"):
            normalize_usage(payload, NOW)

    def test_missing_quota_limits_default_to_zero(self):
        payload = self._payload()
        payload = UsagePayload(payload.model_usage, payload.tool_usage, {"data": {"limits": []}})
        snapshot, limits = normalize_usage(payload, NOW)

        assert snapshot.token_quota_percent == 0
        assert limits.time_quota.max == 0


class TestCollectUsage:
    """Test a full collection run against temporary storage."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        paths = ProfilePaths(Path(self.temp_dir))
        self.history_store = SnapshotStore(paths, clock=lambda: NOW)
        self.summary_store = SummaryStore(paths)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_first_run_stores_snapshot(self):
        result = collect_usage(_client(_responses()), self.history_store, self.summary_store, "default", now=NOW)

        assert result.stored
        assert result.entries_count == 1
        assert result.prediction is None
        assert result.archive is None
        assert self.history_store.load("default").quota_limits.token_quota.percentage == 60

    def test_same_second_is_not_stored_twice(self):
        """Test that two runs within one second leave a single entry."""
        client = _client(_responses())
        collect_usage(client, self.history_store, self.summary_store, "default", now=NOW)
        result = collect_usage(
            client, self.history_store, self.summary_store, "default",
            now=NOW + timedelta(milliseconds=100),
        )

        assert not result.stored
        assert len(self.history_store.load("default").entries) == 1

    def test_prediction_is_stored(self):
        self.history_store.save("default", HistoryDocument(entries=[
            Snapshot(timestamp=NOW.replace(microsecond=0) - timedelta(hours=4), token_quota_percent=50),
        ]))

        result = collect_usage(_client(_responses()), self.history_store, self.summary_store, "default", now=NOW)

        assert result.prediction.hours_until_exhausted == 16
        assert result.prediction.status == PredictionStatus.WARNING
        stored = self.history_store.load("default").quota_prediction
        assert stored.hours_until_exhausted == 16

    def test_quota_warnings(self):
        result = collect_usage(
            _client(_responses(token_percent=85, time_percent=90)),
            self.history_store, self.summary_store, "default", now=NOW,
        )
        assert result.warnings == ["Token quota at 85%", "Time quota at 90%"]

    def test_long_retention_archives(self):
        """Test that a 7d retention run folds overflow into summaries."""
        base = NOW.replace(microsecond=0) - timedelta(minutes=5 * RAW_ENTRIES_LIMIT)
        entries = [Snapshot(timestamp=base + timedelta(minutes=5 * i)) for i in range(RAW_ENTRIES_LIMIT)]
        store = SnapshotStore(self.history_store.paths, RetentionPeriod.WEEK, clock=lambda: NOW)
        store.save("default", HistoryDocument(entries=entries))

        result = collect_usage(
            _client(_responses()), store, self.summary_store, "default",
            retention=RetentionPeriod.WEEK, now=NOW, tz=UTC,
        )

        assert result.archive.archived == 1
        assert len(store.load("default").entries) == RAW_ENTRIES_LIMIT
        assert len(self.summary_store.load("default").summaries) == 1

    def test_upstream_failure_stores_nothing(self):
        with pytest.raises(CollectorError):
            collect_usage(
                _client(_responses(), status_code=500),
                self.history_store, self.summary_store, "default", now=NOW,
            )
        assert not self.history_store.exists("default")
