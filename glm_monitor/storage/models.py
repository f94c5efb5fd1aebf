"""
Data models for storage layer.

Defines the snapshot and summary records and the documents that persist
them. Records are immutable; documents are mutated only by their owning
store.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

Number = Union[int, float]

COUNTER_FIELDS = ("modelCalls", "tokensUsed", "mcpCalls")
GAUGE_FIELDS = ("tokenQuotaPercent", "timeQuotaPercent")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive values are taken to be UTC.

    Raises:
        ValueError: If the value is not an ISO-8601 string
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def truncate_to_millis(value: datetime) -> datetime:
    """Drop sub-millisecond digits, matching the stored precision."""
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    utc = value.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def _number(data: Mapping[str, Any], key: str, strict: bool) -> Number:
    """Read a numeric field, defaulting missing values to 0.

    In strict mode a present but non-numeric value is rejected; otherwise
    it is treated as missing.
    """
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        if strict:
            raise ValueError(f"'{key}' must be a number, got {value!r}")
        return 0
    if isinstance(value, float) and value.is_integer() and key in COUNTER_FIELDS:
        return int(value)
    return value


def _breakdown(data: Mapping[str, Any], strict: bool) -> Dict[str, Number]:
    raw = data.get("mcpToolBreakdown")
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        if strict:
            raise ValueError("'mcpToolBreakdown' must be a mapping")
        return {}
    return {str(name): _number(raw, name, strict) for name in raw}


@dataclass(frozen=True)
class Snapshot:
    """One timestamped usage sample.

    Counters are cumulative and expected to be non-decreasing; gauges are
    point-in-time percentages.
    """
    timestamp: datetime
    model_calls: Number = 0
    tokens_used: Number = 0
    mcp_calls: Number = 0
    token_quota_percent: Number = 0
    time_quota_percent: Number = 0
    mcp_tool_breakdown: Dict[str, Number] = field(default_factory=dict)

    def __post_init__(self):
        """Normalize the timestamp to aware UTC at stored precision."""
        object.__setattr__(self, "timestamp", truncate_to_millis(parse_timestamp(self.timestamp)))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Snapshot":
        """Build a snapshot from a stored entry, validating its shape.

        Raises:
            ValueError: If the entry is malformed
        """
        return cls._build(data, strict=True)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "Snapshot":
        """Build a snapshot from collector output, defaulting missing fields."""
        return cls._build(data, strict=False)

    @classmethod
    def _build(cls, data: Mapping[str, Any], strict: bool) -> "Snapshot":
        if not isinstance(data, Mapping):
            raise ValueError("Snapshot must be a mapping")
        if "timestamp" not in data:
            raise ValueError("Snapshot missing 'timestamp'")
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            model_calls=_number(data, "modelCalls", strict),
            tokens_used=_number(data, "tokensUsed", strict),
            mcp_calls=_number(data, "mcpCalls", strict),
            token_quota_percent=_number(data, "tokenQuotaPercent", strict),
            time_quota_percent=_number(data, "timeQuotaPercent", strict),
            mcp_tool_breakdown=_breakdown(data, strict),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "modelCalls": self.model_calls,
            "tokensUsed": self.tokens_used,
            "mcpCalls": self.mcp_calls,
            "tokenQuotaPercent": self.token_quota_percent,
            "timeQuotaPercent": self.time_quota_percent,
            "mcpToolBreakdown": dict(self.mcp_tool_breakdown),
        }


@dataclass(frozen=True)
class Summary:
    """Hourly aggregate of raw snapshots.

    Counters hold the bucket maximum, gauges the last non-zero reading.
    """
    timestamp: datetime
    model_calls: Number = 0
    tokens_used: Number = 0
    mcp_calls: Number = 0
    token_quota_percent: Number = 0
    time_quota_percent: Number = 0
    entry_count: int = 0

    def __post_init__(self):
        """Validate the bucket."""
        object.__setattr__(self, "timestamp", truncate_to_millis(parse_timestamp(self.timestamp)))
        if self.entry_count < 0:
            raise ValueError("entry_count cannot be negative")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Summary":
        """Build a summary from a stored record.

        Raises:
            ValueError: If the record is malformed
        """
        if not isinstance(data, Mapping):
            raise ValueError("Summary must be a mapping")
        if "timestamp" not in data:
            raise ValueError("Summary missing 'timestamp'")
        return cls(
            timestamp=parse_timestamp(data["timestamp"]),
            model_calls=_number(data, "modelCalls", True),
            tokens_used=_number(data, "tokensUsed", True),
            mcp_calls=_number(data, "mcpCalls", True),
            token_quota_percent=_number(data, "tokenQuotaPercent", True),
            time_quota_percent=_number(data, "timeQuotaPercent", True),
            entry_count=int(_number(data, "entryCount", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "modelCalls": self.model_calls,
            "tokensUsed": self.tokens_used,
            "mcpCalls": self.mcp_calls,
            "tokenQuotaPercent": self.token_quota_percent,
            "timeQuotaPercent": self.time_quota_percent,
            "entryCount": self.entry_count,
        }


# A point in a composite history view
UsagePoint = Union[Snapshot, Summary]


@dataclass(frozen=True)
class QuotaLimit:
    """One quota as reported by the metering API."""
    current: Number = 0
    max: Number = 0
    percentage: Number = 0

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "QuotaLimit":
        if not data:
            return cls()
        if not isinstance(data, Mapping):
            raise ValueError("Quota limit must be a mapping")
        return cls(
            current=_number(data, "current", True),
            max=_number(data, "max", True),
            percentage=_number(data, "percentage", True),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"current": self.current, "max": self.max, "percentage": self.percentage}


@dataclass(frozen=True)
class QuotaLimits:
    """Token and time quotas from the latest collection."""
    token_quota: QuotaLimit = field(default_factory=QuotaLimit)
    time_quota: QuotaLimit = field(default_factory=QuotaLimit)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QuotaLimits":
        if not isinstance(data, Mapping):
            raise ValueError("'quotaLimits' must be a mapping")
        return cls(
            token_quota=QuotaLimit.from_dict(data.get("tokenQuota")),
            time_quota=QuotaLimit.from_dict(data.get("timeQuota")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tokenQuota": self.token_quota.to_dict(),
            "timeQuota": self.time_quota.to_dict(),
        }


@dataclass(frozen=True)
class QuotaPrediction:
    """Latest quota exhaustion estimate stored alongside the history."""
    hours_until_exhausted: Optional[int]
    rate: float
    status: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "QuotaPrediction":
        if not isinstance(data, Mapping):
            raise ValueError("'quotaPrediction' must be a mapping")
        hours = data.get("hoursUntilExhausted")
        if hours is not None and (isinstance(hours, bool) or not isinstance(hours, (int, float))):
            raise ValueError("'hoursUntilExhausted' must be a number or null")
        return cls(
            hours_until_exhausted=None if hours is None else int(hours),
            rate=float(_number(data, "rate", True)),
            status=str(data.get("status", "ok")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hoursUntilExhausted": self.hours_until_exhausted,
            "rate": self.rate,
            "status": self.status,
        }


@dataclass
class HistoryDocument:
    """Persisted raw history of one profile."""
    entries: List[Snapshot] = field(default_factory=list)
    last_updated: Optional[datetime] = None
    quota_limits: Optional[QuotaLimits] = None
    quota_prediction: Optional[QuotaPrediction] = None

    @property
    def latest(self) -> Optional[Snapshot]:
        return self.entries[-1] if self.entries else None

    @classmethod
    def from_dict(cls, data: Any) -> "HistoryDocument":
        """Validate and build a history document.

        Raises:
            ValueError: If the document is malformed
        """
        if not isinstance(data, dict):
            raise ValueError("History document must be a JSON object")
        raw_entries = data.get("entries", [])
        if not isinstance(raw_entries, list):
            raise ValueError("'entries' must be a list")

        entries = []
        for i, raw in enumerate(raw_entries):
            try:
                entries.append(Snapshot.from_dict(raw))
            except ValueError as e:
                raise ValueError(f"Entry at index {i} is invalid: {e}")

        last_updated = data.get("lastUpdated")
        quota_limits = data.get("quotaLimits")
        prediction = data.get("quotaPrediction")
        return cls(
            entries=entries,
            last_updated=parse_timestamp(last_updated) if last_updated else None,
            quota_limits=QuotaLimits.from_dict(quota_limits) if quota_limits else None,
            quota_prediction=QuotaPrediction.from_dict(prediction) if prediction else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "entries": [entry.to_dict() for entry in self.entries],
            "lastUpdated": format_timestamp(self.last_updated) if self.last_updated else None,
            "quotaLimits": self.quota_limits.to_dict() if self.quota_limits else None,
        }
        if self.quota_prediction is not None:
            data["quotaPrediction"] = self.quota_prediction.to_dict()
        return data


@dataclass
class SummaryDocument:
    """Persisted hourly summaries of one profile."""
    summaries: List[Summary] = field(default_factory=list)
    last_updated: Optional[datetime] = None
    retention_period: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "SummaryDocument":
        """Validate and build a summary document.

        Raises:
            ValueError: If the document is malformed
        """
        if not isinstance(data, dict):
            raise ValueError("Summary document must be a JSON object")
        raw_summaries = data.get("summaries", [])
        if not isinstance(raw_summaries, list):
            raise ValueError("'summaries' must be a list")

        summaries = []
        for i, raw in enumerate(raw_summaries):
            try:
                summaries.append(Summary.from_dict(raw))
            except ValueError as e:
                raise ValueError(f"Summary at index {i} is invalid: {e}")

        last_updated = data.get("lastUpdated")
        retention = data.get("retentionPeriod")
        return cls(
            summaries=summaries,
            last_updated=parse_timestamp(last_updated) if last_updated else None,
            retention_period=str(retention) if retention is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summaries": [summary.to_dict() for summary in self.summaries],
            "lastUpdated": format_timestamp(self.last_updated) if self.last_updated else None,
            "retentionPeriod": self.retention_period,
        }
