"""
REST API for GLM Monitor.

Localhost-only read API over the active profile's data, plus settings
and profile management. Each request loads the config and documents
afresh; no state is shared between requests except the filesystem.
"""

import logging
from datetime import datetime, tzinfo
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from glm_monitor import __version__
from glm_monitor.config.loader import (
    MonitorConfig,
    default_config_path,
    load_monitor_config,
    save_monitor_config,
)
from glm_monitor.config.profiles import ProfileRegistry
from glm_monitor.core.exceptions import (
    ConfigError,
    CorruptDataError,
    InsufficientDataError,
    InvalidRangeError,
    MonitorError,
    NotFoundError,
    ProfileError,
    UnknownProfileError,
)
from glm_monitor.core.insights import PeakBucket, UsageSummary
from glm_monitor.core.query import HistoryView, QueryEngine
from glm_monitor.core.ranges import parse_retention, parse_window_hours
from glm_monitor.storage.files import ProfilePaths
from glm_monitor.storage.models import format_timestamp, utc_now
from glm_monitor.storage.repository import SnapshotStore, SummaryStore

logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS_CODES = (
    (UnknownProfileError, 404),
    (NotFoundError, 404),
    (InsufficientDataError, 404),
    (InvalidRangeError, 400),
    (ProfileError, 409),
    (ConfigError, 500),
    (CorruptDataError, 500),
)


class SettingsUpdateRequest(BaseModel):
    """Body of ``POST /api/settings``."""

    retention: Optional[str] = Field(None, description="24h, 7d or 30d")


class ProfileCreateRequest(BaseModel):
    """Body of ``POST /api/profiles``."""

    name: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)
    base_url: Optional[str] = Field(None, alias="baseUrl")


def _status_for(error: MonitorError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def _iso(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value) if value else None


def _bucket_to_dict(bucket: PeakBucket) -> Dict[str, Any]:
    return {
        "label": bucket.label,
        "tokens": bucket.tokens,
        "calls": bucket.calls,
        "intervals": bucket.intervals,
        "avgTokens": round(bucket.avg_tokens),
        "avgCalls": round(bucket.avg_calls, 2),
    }


def _summary_to_dict(summary: UsageSummary, profile: str) -> Dict[str, Any]:
    return {
        "totalModelCalls": summary.total_model_calls,
        "totalTokensUsed": summary.total_tokens_used,
        "totalMcpCalls": summary.total_mcp_calls,
        "tokenQuotaPercent": summary.token_quota_percent,
        "timeQuotaPercent": summary.time_quota_percent,
        "tokenGrowth": summary.token_growth,
        "entryCount": summary.entry_count,
        "timeRange": {"start": _iso(summary.start), "end": _iso(summary.end)},
        "profile": profile,
    }


def create_app(
    config_path: Optional[Path] = None,
    clock: Callable[[], datetime] = utc_now,
    tz: Optional[tzinfo] = None,
) -> FastAPI:
    """Build the API application.

    Args:
        config_path: Config file to read on each request; None uses the
            default location
        clock: Source of the current time
        tz: Zone defining calendar hours; None means the system zone
    """
    app = FastAPI(title="GLM Monitor API", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    def load_config() -> MonitorConfig:
        return load_monitor_config(config_path)

    def engine_for(config: MonitorConfig) -> QueryEngine:
        paths = ProfilePaths(config.data_dir)
        return QueryEngine(
            SnapshotStore(paths, config.retention, clock),
            SummaryStore(paths),
            clock=clock,
            tz=tz,
        )

    def registry() -> ProfileRegistry:
        return ProfileRegistry(config_path or default_config_path(), clock)

    @app.exception_handler(MonitorError)
    async def monitor_error_handler(request: Request, exc: MonitorError) -> JSONResponse:
        status_code = _status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"error": exc.message, **{k: str(v) for k, v in exc.details.items()}},
        )

    @app.get("/api/health")
    def health() -> Dict[str, Any]:
        """API status and data availability."""
        config = load_config()
        profile = config.active_profile
        engine = engine_for(config)
        stats = engine.get_storage_stats(profile)
        last_updated = None
        if stats.history.exists:
            last_updated = engine.history_store.load(profile).last_updated
        return {
            "status": "ok",
            "version": __version__,
            "dataAvailable": stats.history.exists,
            "lastUpdated": _iso(last_updated),
            "entriesCount": stats.history.records,
            "summariesCount": stats.summary.records,
            "activeProfile": profile,
        }

    @app.get("/api/current")
    def current() -> Dict[str, Any]:
        """Most recent usage snapshot."""
        config = load_config()
        profile = config.active_profile
        usage = engine_for(config).get_current(profile)
        return {
            **usage.snapshot.to_dict(),
            "quotaLimits": usage.quota_limits.to_dict() if usage.quota_limits else None,
            "quotaPrediction": usage.quota_prediction.to_dict() if usage.quota_prediction else None,
            "lastUpdated": _iso(usage.last_updated),
            "profile": profile,
        }

    @app.get("/api/history")
    def history(
        range_token: str = Query("24h", alias="range"),
        fmt: str = Query("raw", alias="format"),
    ) -> Dict[str, Any]:
        """Raw + summarized history for a range, or a summary of it."""
        config = load_config()
        profile = config.active_profile
        result = engine_for(config).get_history(profile, range_token, fmt)
        if isinstance(result, HistoryView):
            return {
                "entries": [point.to_dict() for point in result.points],
                "range": result.range,
                "lastUpdated": _iso(result.last_updated),
                "profile": profile,
            }
        return _summary_to_dict(result, profile)

    @app.get("/api/predict")
    def predict(time_window: str = Query("6h", alias="timeWindow")) -> Dict[str, Any]:
        """Token quota exhaustion prediction."""
        window_hours = parse_window_hours(time_window, default=6)
        config = load_config()
        profile = config.active_profile
        engine = engine_for(config)
        prediction = engine.get_prediction(profile, window_hours)
        latest = engine.get_current(profile).snapshot
        return {
            "tokenQuotaPercent": prediction.quota_percent,
            "timeQuotaPercent": latest.time_quota_percent,
            "hoursUntilExhausted": prediction.hours_until_exhausted,
            "rate": prediction.rate,
            "status": prediction.status.value,
            "message": prediction.message,
            "window": f"{window_hours}h",
            "profile": profile,
        }

    @app.get("/api/rates")
    def rates(window: str = Query("1h")) -> Dict[str, Any]:
        """Token and call rates over a trailing window."""
        window_hours = parse_window_hours(window, default=1)
        config = load_config()
        profile = config.active_profile
        stats = engine_for(config).get_rates(profile, window_hours)
        return {
            "window": f"{window_hours}h",
            "tokensPerHour": round(stats.tokens_per_hour),
            "callsPerHour": round(stats.calls_per_hour),
            "avgTokensPerCall": round(stats.avg_tokens_per_call),
            "entriesCount": stats.entries_count,
            "profile": profile,
        }

    @app.get("/api/insights")
    def insights(range_token: str = Query("24h", alias="range")) -> Dict[str, Any]:
        """Peak usage by hour of day and day of week."""
        config = load_config()
        profile = config.active_profile
        report = engine_for(config).get_insights(profile, range_token)
        return {
            "range": range_token,
            "peakHour": _bucket_to_dict(report.peak_hour),
            "peakWeekday": _bucket_to_dict(report.peak_weekday),
            "byHour": [_bucket_to_dict(b) for b in report.by_hour],
            "byWeekday": [_bucket_to_dict(b) for b in report.by_weekday],
            "entriesCount": report.entries_count,
            "profile": profile,
        }

    @app.get("/api/settings")
    def get_settings() -> Dict[str, Any]:
        """Current configuration, without credentials."""
        config = load_config()
        return {
            "retention": config.retention.value,
            "activeProfile": config.active_profile,
            "profiles": [
                {"name": p.name, "isActive": p.is_active, "createdAt": p.created_at}
                for p in registry().list()
            ],
            "baseUrl": config.base_url,
        }

    @app.post("/api/settings")
    def update_settings(body: SettingsUpdateRequest) -> Dict[str, Any]:
        """Update the retention period."""
        config = load_config()
        if body.retention:
            config = config.with_changes(retention=parse_retention(body.retention))
            save_monitor_config(config, config_path)
        return {
            "success": True,
            "settings": {
                "retention": config.retention.value,
                "activeProfile": config.active_profile,
            },
        }

    @app.get("/api/profiles")
    def list_profiles() -> Dict[str, Any]:
        """Known profiles."""
        profiles = registry().list()
        return {
            "profiles": [
                {"name": p.name, "isActive": p.is_active, "createdAt": p.created_at}
                for p in profiles
            ],
        }

    @app.post("/api/profiles", status_code=201)
    def create_profile(body: ProfileCreateRequest) -> Dict[str, Any]:
        """Create a profile."""
        profile = registry().create(body.name, body.token, body.base_url)
        return {"name": profile.name, "createdAt": profile.created_at}

    @app.post("/api/profiles/{name}/activate")
    def activate_profile(name: str) -> Dict[str, Any]:
        """Switch the active profile."""
        profile = registry().switch(name)
        return {"activeProfile": profile.name}

    @app.delete("/api/profiles/{name}")
    def delete_profile(name: str) -> Dict[str, Any]:
        """Delete a profile and its data files."""
        removed = registry().delete(name)
        return {"deleted": name, "removedFiles": [str(path) for path in removed]}

    return app


def run_server(host: str, port: int, config_path: Optional[Path] = None) -> None:
    """Serve the API with uvicorn until interrupted."""
    import uvicorn

    logger.info(f"Starting API server on http://{host}:{port}")
    uvicorn.run(create_app(config_path), host=host, port=port, log_level="info")
