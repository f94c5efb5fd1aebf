"""
Metering API client and collection run.

Queries the usage endpoints once per run and appends the normalized
snapshot to the profile history. There are no retries: a failed run is
simply repeated by the next scheduled collection.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from glm_monitor.core.exceptions import CollectorError, InsufficientDataError, InvalidRangeError
from glm_monitor.core.prediction import PredictionResult, predict_exhaustion
from glm_monitor.core.ranges import RetentionPeriod
from glm_monitor.core.summarizer import ArchiveResult, archive_old_data
from glm_monitor.storage.models import QuotaLimit, QuotaLimits, Snapshot, utc_now
from glm_monitor.storage.repository import SnapshotStore, SummaryStore

logger = logging.getLogger(__name__)

MODEL_USAGE_PATH = "/api/monitor/usage/model-usage"
TOOL_USAGE_PATH = "/api/monitor/usage/tool-usage"
QUOTA_LIMIT_PATH = "/api/monitor/usage/quota/limit"

TOKENS_LIMIT_TYPE = "TOKENS_LIMIT"
TIME_LIMIT_TYPE = "TIME_LIMIT"

QUOTA_WARNING_PERCENT = 80

_TOOL_COUNT_KEY = re.compile(r"^total(?P<name>\w+?)Count$")


@dataclass(frozen=True)
class UsagePayload:
    """Raw responses of one collection run."""
    model_usage: Dict[str, Any]
    tool_usage: Dict[str, Any]
    quota_limit: Dict[str, Any]


@dataclass(frozen=True)
class CollectionResult:
    """Outcome of one collection run."""
    snapshot: Snapshot
    stored: bool
    entries_count: int
    prediction: Optional[PredictionResult] = None
    archive: Optional[ArchiveResult] = None
    warnings: List[str] = field(default_factory=list)


class MeteringClient:
    """Client for the usage metering API.

    Every request is made exactly once; any failure is loud.
    """

    def __init__(
        self,
        base_url: str,
        auth_token: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """Initialize the client.

        Args:
            base_url: Configured API base URL; only its scheme and host are used
            auth_token: Token sent in the Authorization header (required)
            timeout: Request timeout in seconds
            transport: Optional httpx transport, for testing

        Raises:
            ValueError: If the token or base URL is missing
        """
        if not auth_token or not auth_token.strip():
            raise ValueError("auth_token is required and cannot be empty")
        parsed = urlsplit(base_url or "")
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid base URL: {base_url!r}")

        self.base_domain = f"{parsed.scheme}://{parsed.netloc}"
        self.auth_token = auth_token
        self.timeout = timeout
        self.transport = transport

    def fetch(self, now: Optional[datetime] = None) -> UsagePayload:
        """Query model usage, tool usage and quota limits.

        The query covers the previous day up to the end of the current hour,
        in local time.

        Raises:
            CollectorError: If any request fails or returns invalid JSON
        """
        local_now = (now or utc_now()).astimezone()
        start = (local_now - timedelta(days=1)).replace(minute=0, second=0, microsecond=0)
        end = local_now.replace(minute=59, second=59, microsecond=0)
        params = {
            "startTime": start.strftime("%Y-%m-%d %H:%M:%S"),
            "endTime": end.strftime("%Y-%m-%d %H:%M:%S"),
        }
        headers = {
            "Authorization": self.auth_token,
            "Accept-Language": "en-US,en",
            "Content-Type": "application/json",
        }

        with httpx.Client(
            base_url=self.base_domain,
            headers=headers,
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            return UsagePayload(
                model_usage=self._get(client, MODEL_USAGE_PATH, params),
                tool_usage=self._get(client, TOOL_USAGE_PATH, params),
                quota_limit=self._get(client, QUOTA_LIMIT_PATH, params),
            )

    def _get(self, client: httpx.Client, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        try:
            response = client.get(path, params=params)
        except httpx.HTTPError as e:
            raise CollectorError(f"Request to {path} failed: {e}")

        if response.status_code != 200:
            raise CollectorError(
                f"HTTP {response.status_code} from {path}",
                {"body": response.text[:200]},
            )
        try:
            data = response.json()
        except ValueError as e:
            raise CollectorError(f"Failed to parse response from {path}: {e}")
        if not isinstance(data, dict):
            raise CollectorError(f"Unexpected response shape from {path}")
        return data


def _find_limit(quota_data: Dict[str, Any], limit_type: str) -> Dict[str, Any]:
    limits = (quota_data.get("data") or {}).get("limits") or []
    for limit in limits:
        if isinstance(limit, dict) and limit.get("type") == limit_type:
            return limit
    return {}


def _tool_breakdown(tool_total: Dict[str, Any]) -> Dict[str, Any]:
    """Per-tool counts from ``total<Tool>Count`` fields."""
    breakdown = {}
    for key, value in tool_total.items():
        match = _TOOL_COUNT_KEY.match(key)
        if match and isinstance(value, (int, float)) and not isinstance(value, bool):
            name = match.group("name")
            breakdown[name[0].lower() + name[1:]] = value
    return breakdown


def normalize_usage(payload: UsagePayload, now: Optional[datetime] = None) -> Tuple[Snapshot, QuotaLimits]:
    """Build a snapshot and quota limits from raw API responses.

    The snapshot timestamp is truncated to the second, so two runs within
    the same second produce the same timestamp and the second one is a
    no-op on append.

    Raises:
        CollectorError: If the usage responses lack ``data.totalUsage``
    """
    model_total = (payload.model_usage.get("data") or {}).get("totalUsage")
    tool_total = (payload.tool_usage.get("data") or {}).get("totalUsage")
    if not isinstance(model_total, dict) or not isinstance(tool_total, dict):
        raise CollectorError("API response missing expected totalUsage data structure")

    token_quota = _find_limit(payload.quota_limit, TOKENS_LIMIT_TYPE)
    time_quota = _find_limit(payload.quota_limit, TIME_LIMIT_TYPE)

    timestamp = (now or utc_now()).replace(microsecond=0)
    snapshot = Snapshot.from_payload({
        "timestamp": timestamp,
        "modelCalls": model_total.get("totalModelCallCount"),
        "tokensUsed": model_total.get("totalTokensUsage"),
        "mcpCalls": tool_total.get("totalSearchMcpCount"),
        "tokenQuotaPercent": token_quota.get("percentage"),
        "timeQuotaPercent": time_quota.get("percentage"),
        "mcpToolBreakdown": _tool_breakdown(tool_total),
    })

    quota_limits = QuotaLimits(
        token_quota=QuotaLimit.from_dict({
            "current": token_quota.get("currentValue"),
            "max": token_quota.get("usage"),
            "percentage": token_quota.get("percentage"),
        }),
        time_quota=QuotaLimit.from_dict({
            "current": time_quota.get("currentValue"),
            "max": time_quota.get("usage"),
            "percentage": time_quota.get("percentage"),
        }),
    )
    return snapshot, quota_limits


def collect_usage(
    client: MeteringClient,
    history_store: SnapshotStore,
    summary_store: SummaryStore,
    profile: str,
    retention: RetentionPeriod = RetentionPeriod.DAY,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> CollectionResult:
    """Run one collection: fetch, append, predict, archive.

    Args:
        client: Metering API client
        history_store: Raw history store of the profile
        summary_store: Summary log store of the profile
        profile: Profile to record into
        retention: Retention period; archives when longer than 24h
        now: Collection time; defaults to the current time
        tz: Zone defining calendar hours for archival

    Raises:
        CollectorError: If the upstream call fails
        CorruptDataError: If a stored document cannot be parsed
    """
    now = now or utc_now()
    logger.info(f"Collecting usage data for '{profile}'")

    snapshot, quota_limits = normalize_usage(client.fetch(now), now)
    document = history_store.append(profile, snapshot, quota_limits)
    stored = bool(document.entries) and document.entries[-1] is snapshot
    if not stored:
        logger.info("Entry already exists for this second, skipping")

    prediction = None
    try:
        prediction = predict_exhaustion(
            snapshot.token_quota_percent,
            document.entries,
            now=snapshot.timestamp,
        )
    except (InsufficientDataError, InvalidRangeError) as e:
        logger.debug(f"No quota prediction: {e}")
    if prediction is not None and stored:
        history_store.set_prediction(profile, prediction.to_quota_prediction())

    archive = None
    if retention.archives:
        archive = archive_old_data(
            profile,
            retention,
            history_store=history_store,
            summary_store=summary_store,
            now=now,
            tz=tz,
        )

    warnings = []
    if snapshot.token_quota_percent > QUOTA_WARNING_PERCENT:
        warnings.append(f"Token quota at {snapshot.token_quota_percent}%")
    if snapshot.time_quota_percent > QUOTA_WARNING_PERCENT:
        warnings.append(f"Time quota at {snapshot.time_quota_percent}%")
    for warning in warnings:
        logger.warning(warning)

    return CollectionResult(
        snapshot=snapshot,
        stored=stored,
        entries_count=len(document.entries),
        prediction=prediction,
        archive=archive,
        warnings=warnings,
    )
