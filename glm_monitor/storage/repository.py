"""
Repository pattern for data access.

Handles loading and persisting the per-profile history and summary
documents.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from glm_monitor.core.exceptions import CorruptDataError
from glm_monitor.core.ranges import RetentionPeriod

from .files import DEFAULT_PROFILE, ProfilePaths, read_json, remove_file, write_json_atomic
from .models import (
    HistoryDocument,
    QuotaLimits,
    QuotaPrediction,
    Snapshot,
    SummaryDocument,
    utc_now,
)

logger = logging.getLogger(__name__)


def _load_document(path: Path, parse):
    """Read and validate a document, mapping parse failures to CorruptDataError."""
    try:
        raw = read_json(path)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise CorruptDataError(f"Could not parse {path.name}: {e}", path=path)
    if raw is None:
        return None
    try:
        return parse(raw)
    except (ValueError, TypeError) as e:
        raise CorruptDataError(f"Invalid document {path.name}: {e}", path=path)


class SnapshotStore:
    """Append-only, size-bounded raw history per profile.

    Not safe for concurrent collectors: append is a read-modify-write
    without locking, so overlapping writers get last-writer-wins. Each
    write is atomic, so readers always see a complete document.
    """

    def __init__(
        self,
        paths: ProfilePaths,
        retention: RetentionPeriod = RetentionPeriod.DAY,
        clock: Callable[[], datetime] = utc_now,
    ):
        """Initialize the store.

        Args:
            paths: Resolver for per-profile document paths
            retention: Retention period; fixes the raw entry cap
            clock: Source of the current time
        """
        self.paths = paths
        self.retention = retention
        self.clock = clock

    @property
    def max_entries(self) -> int:
        return self.retention.raw_entry_cap

    def exists(self, profile: str = DEFAULT_PROFILE) -> bool:
        return self.paths.history_path(profile).exists()

    def load(self, profile: str = DEFAULT_PROFILE) -> HistoryDocument:
        """Load the history document of a profile.

        Returns:
            The stored document, or an empty one if none exists

        Raises:
            CorruptDataError: If the stored document cannot be parsed
        """
        document = _load_document(self.paths.history_path(profile), HistoryDocument.from_dict)
        return document if document is not None else HistoryDocument()

    def save(self, profile: str, document: HistoryDocument) -> None:
        write_json_atomic(self.paths.history_path(profile), document.to_dict())

    def append(
        self,
        profile: str,
        snapshot: Snapshot,
        quota_limits: Optional[QuotaLimits] = None,
    ) -> HistoryDocument:
        """Append a snapshot to the history of a profile.

        A snapshot whose timestamp equals the latest stored one is skipped
        and the document is returned unchanged. Entries beyond the cap are
        dropped oldest-first whether or not they have been archived.

        Args:
            profile: Profile name
            snapshot: Sample to append
            quota_limits: Quota details from the same collection, if any

        Returns:
            The document after the append

        Raises:
            CorruptDataError: If the stored document cannot be parsed
        """
        document = self.load(profile)

        latest = document.latest
        if latest is not None and latest.timestamp == snapshot.timestamp:
            logger.debug(f"Snapshot at {snapshot.timestamp.isoformat()} already stored, skipping")
            return document

        document.entries.append(snapshot)

        if len(document.entries) > self.max_entries:
            dropped = len(document.entries) - self.max_entries
            document.entries = document.entries[-self.max_entries:]
            logger.debug(f"Trimmed {dropped} oldest entries from '{profile}' history")

        document.last_updated = self.clock()
        if quota_limits is not None:
            document.quota_limits = quota_limits

        self.save(profile, document)
        logger.info(f"Stored snapshot for '{profile}' ({len(document.entries)} entries)")
        return document

    def set_prediction(self, profile: str, prediction: QuotaPrediction) -> HistoryDocument:
        """Store the latest quota prediction on the history document."""
        document = self.load(profile)
        document.quota_prediction = prediction
        self.save(profile, document)
        return document

    def delete(self, profile: str) -> bool:
        return remove_file(self.paths.history_path(profile))


class SummaryStore:
    """Long-term hourly summary log per profile."""

    def __init__(self, paths: ProfilePaths):
        self.paths = paths

    def exists(self, profile: str = DEFAULT_PROFILE) -> bool:
        return self.paths.summary_path(profile).exists()

    def load(self, profile: str = DEFAULT_PROFILE) -> SummaryDocument:
        """Load the summary document of a profile.

        Returns:
            The stored document, or an empty one if none exists

        Raises:
            CorruptDataError: If the stored document cannot be parsed
        """
        document = _load_document(self.paths.summary_path(profile), SummaryDocument.from_dict)
        return document if document is not None else SummaryDocument()

    def save(self, profile: str, document: SummaryDocument) -> None:
        write_json_atomic(self.paths.summary_path(profile), document.to_dict())

    def delete(self, profile: str) -> bool:
        return remove_file(self.paths.summary_path(profile))
