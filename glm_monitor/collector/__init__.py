"""
Collector for GLM Monitor.

Fetches usage counters from the metering API and records them as snapshots.
"""

from .client import CollectionResult, MeteringClient, collect_usage, normalize_usage

__all__ = ["CollectionResult", "MeteringClient", "collect_usage", "normalize_usage"]
