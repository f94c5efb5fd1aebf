"""
File persistence primitives.

Resolves per-profile document paths and reads/writes JSON documents.
Writes go to a temporary file in the target directory and are renamed
into place, so readers never observe a partially written document.
"""

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

DEFAULT_PROFILE = "default"
HISTORY_FILENAME = "usage-history.json"
SUMMARY_FILENAME = "usage-summary.json"


@dataclass(frozen=True)
class ProfilePaths:
    """Maps profile names to their document paths under a data directory."""
    data_dir: Path

    def history_path(self, profile: str = DEFAULT_PROFILE) -> Path:
        return self._path(profile, HISTORY_FILENAME)

    def summary_path(self, profile: str = DEFAULT_PROFILE) -> Path:
        return self._path(profile, SUMMARY_FILENAME)

    def _path(self, profile: str, filename: str) -> Path:
        if profile == DEFAULT_PROFILE:
            return Path(self.data_dir) / filename
        return Path(self.data_dir) / f"{profile}-{filename}"


def read_json(path: Path) -> Optional[Any]:
    """Read a JSON document.

    Args:
        path: Document path

    Returns:
        Parsed content, or None if the file does not exist

    Raises:
        json.JSONDecodeError: If the content is not valid JSON
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None


def write_json_atomic(path: Path, data: Any) -> None:
    """Write a JSON document atomically.

    Args:
        path: Destination path
        data: JSON-serializable content
    """
    write_text_atomic(path, json.dumps(data, indent=2))


def write_text_atomic(path: Path, text: str) -> None:
    """Write a text file atomically.

    The content is written to a temporary file next to the target,
    flushed to disk, then renamed over the target.

    Args:
        path: Destination path
        text: File content
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except Exception:
        # Leave no temp files behind on failure
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def remove_file(path: Path) -> bool:
    """Delete a file if it exists.

    Returns:
        True if a file was removed
    """
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False
