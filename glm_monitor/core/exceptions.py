"""
Error taxonomy for GLM Monitor.

Each error kind maps to a different remedy for the caller.
"""

from pathlib import Path
from typing import Any, Dict, Optional


class MonitorError(Exception):
    """Base exception for all GLM Monitor errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class NotFoundError(MonitorError):
    """No persisted document exists, or a filtered range has no entries.

    Remedy: run collection.
    """


class InsufficientDataError(MonitorError):
    """Data exists but has fewer points than a computation needs.

    Remedy: wait for more samples.
    """

    def __init__(self, message: str, required: int = 2, available: int = 0):
        super().__init__(message, {"required": required, "available": available})
        self.required = required
        self.available = available


class InvalidRangeError(MonitorError):
    """Unrecognized range/window token, or a window with no elapsed time."""


class CorruptDataError(MonitorError):
    """A persisted document could not be parsed or has the wrong shape."""

    def __init__(self, message: str, path: Optional[Path] = None):
        details = {"path": str(path)} if path else {}
        super().__init__(message, details)
        self.path = path


class ProfileError(MonitorError):
    """A profile registry rule was violated."""


class UnknownProfileError(ProfileError):
    """The named profile does not exist."""


class ConfigError(MonitorError):
    """The configuration file is invalid."""


class CollectorError(MonitorError):
    """The upstream metering API call failed."""
