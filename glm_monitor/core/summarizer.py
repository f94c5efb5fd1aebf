"""
Archival and compaction of raw history.

Raw snapshots are kept for 24 hours; older snapshots are folded into
hourly summaries that live in a separate long-term log.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Dict, Iterable, List, Optional, Union

from glm_monitor.storage.models import Snapshot, Summary, SummaryDocument, utc_now
from glm_monitor.storage.repository import SnapshotStore, SummaryStore

from .ranges import RAW_ENTRIES_LIMIT, RetentionPeriod, hour_bucket, parse_retention

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ArchiveResult:
    """Outcome of an archival pass."""
    archived: int  # raw entries folded into summaries
    trimmed: int   # summaries pruned past the retention window


@dataclass
class _Bucket:
    timestamp: datetime
    model_calls: Union[int, float] = 0
    tokens_used: Union[int, float] = 0
    mcp_calls: Union[int, float] = 0
    token_quota_percent: Union[int, float] = 0
    time_quota_percent: Union[int, float] = 0
    entry_count: int = 0


def generate_summaries(entries: Iterable[Snapshot], tz: Optional[tzinfo] = None) -> List[Summary]:
    """Group snapshots into hourly summaries.

    Counters keep the bucket maximum. Gauges keep the latest non-zero
    reading, so a zero or missing quota sample never overwrites a real one.

    Args:
        entries: Raw snapshots in any order
        tz: Zone defining the calendar hour; None means the system zone

    Returns:
        One summary per occupied hour, oldest first
    """
    buckets: Dict[datetime, _Bucket] = {}

    for entry in entries:
        key = hour_bucket(entry.timestamp, tz)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = buckets[key] = _Bucket(timestamp=key)

        bucket.model_calls = max(bucket.model_calls, entry.model_calls or 0)
        bucket.tokens_used = max(bucket.tokens_used, entry.tokens_used or 0)
        bucket.mcp_calls = max(bucket.mcp_calls, entry.mcp_calls or 0)

        bucket.token_quota_percent = entry.token_quota_percent or bucket.token_quota_percent
        bucket.time_quota_percent = entry.time_quota_percent or bucket.time_quota_percent

        bucket.entry_count += 1

    return [
        Summary(
            timestamp=bucket.timestamp,
            model_calls=bucket.model_calls,
            tokens_used=bucket.tokens_used,
            mcp_calls=bucket.mcp_calls,
            token_quota_percent=bucket.token_quota_percent,
            time_quota_percent=bucket.time_quota_percent,
            entry_count=bucket.entry_count,
        )
        for bucket in sorted(buckets.values(), key=lambda b: b.timestamp)
    ]


def merge_summaries(existing: Iterable[Summary], new: Iterable[Summary]) -> List[Summary]:
    """Merge summary lists, one record per bucket.

    A new summary for a bucket that already exists replaces the old one.
    """
    merged: Dict[datetime, Summary] = {}
    for summary in existing:
        merged.setdefault(summary.timestamp, summary)
    for summary in new:
        merged[summary.timestamp] = summary
    return sorted(merged.values(), key=lambda s: s.timestamp)


def archive_old_data(
    profile: str,
    retention: Union[str, RetentionPeriod],
    history_store: SnapshotStore,
    summary_store: SummaryStore,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> ArchiveResult:
    """Summarize raw entries older than the 24-hour raw window.

    Safe to re-run: buckets are deduplicated on merge, and a pass with
    nothing beyond the raw window only prunes expired summaries.

    Args:
        profile: Profile whose documents are archived
        retention: Long-term retention period
        history_store: Raw history store
        summary_store: Summary log store
        now: Current time, for the retention cutoff
        tz: Zone defining the calendar hour

    Returns:
        ArchiveResult with the number of archived entries and pruned summaries

    Raises:
        InvalidRangeError: If the retention token is unknown
        CorruptDataError: If either stored document cannot be parsed
    """
    period = parse_retention(retention)
    if not period.archives:
        logger.debug("24h retention - no archiving needed")
        return ArchiveResult(archived=0, trimmed=0)

    now = now or utc_now()
    history = history_store.load(profile)
    if not history.entries:
        logger.debug(f"No entries to archive for '{profile}'")
        return ArchiveResult(archived=0, trimmed=0)

    archived = max(len(history.entries) - RAW_ENTRIES_LIMIT, 0)
    new_summaries = generate_summaries(history.entries[:archived], tz) if archived else []

    existing = summary_store.load(profile)
    merged = merge_summaries(existing.summaries, new_summaries)

    cutoff = now - timedelta(hours=period.hours)
    kept = [s for s in merged if s.timestamp >= cutoff]
    trimmed = len(merged) - len(kept)

    if new_summaries or trimmed:
        summary_store.save(profile, SummaryDocument(
            summaries=kept,
            last_updated=now,
            retention_period=period.value,
        ))
    if new_summaries:
        logger.info(
            f"Archived {archived} entries into {len(new_summaries)} hourly summaries for '{profile}'"
        )
    if trimmed:
        logger.info(f"Removed {trimmed} summaries older than {period.value}")

    if archived:
        original_count = len(history.entries)
        history.entries = history.entries[-RAW_ENTRIES_LIMIT:]
        history.last_updated = now
        history_store.save(profile, history)
        logger.info(f"Trimmed raw data from {original_count} to {len(history.entries)} entries")

    return ArchiveResult(archived=archived, trimmed=trimmed)
