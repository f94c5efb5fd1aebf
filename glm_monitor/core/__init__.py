"""
Core modules for GLM Monitor.

This package contains the usage analytics: hourly archival, rate and
exhaustion calculations, peak insights and the query engine.
"""
