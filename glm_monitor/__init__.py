"""
GLM Monitor.

Collects usage and quota snapshots, keeps them as a bounded time series
on disk and serves rates, predictions and summaries.
"""

__version__ = "1.0.0"
