"""
CLI interface for GLM Monitor.

Provides command-line access to collection, reports, predictions,
maintenance and profile management.
"""

import logging
import platform
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from glm_monitor.api.server import run_server
from glm_monitor.collector import MeteringClient, collect_usage
from glm_monitor.config.loader import (
    MonitorConfig,
    default_config_path,
    load_monitor_config,
    save_monitor_config,
)
from glm_monitor.config.profiles import ProfileRegistry
from glm_monitor.core.exceptions import MonitorError
from glm_monitor.core.query import QueryEngine
from glm_monitor.core.ranges import parse_retention, parse_window_hours
from glm_monitor.storage.files import ProfilePaths
from glm_monitor.storage.models import utc_now
from glm_monitor.storage.repository import SnapshotStore, SummaryStore

app = typer.Typer(help="Track and analyze GLM Coding Plan usage.")
profile_app = typer.Typer(help="Manage usage profiles.")
app.add_typer(profile_app, name="profile")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

REPORT_TYPES = ("summary", "rates", "peak")
QUOTA_ISSUE_PERCENT = 80
STALE_HOURS = 24
MIN_ANALYTICS_ENTRIES = 10


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )


def _config_path(ctx: typer.Context) -> Path:
    return (ctx.obj or {}).get("config_path") or default_config_path()


def _load_config(ctx: typer.Context) -> MonitorConfig:
    try:
        return load_monitor_config(_config_path(ctx))
    except MonitorError as e:
        _fail(str(e))


def _stores(config: MonitorConfig):
    paths = ProfilePaths(config.data_dir)
    return SnapshotStore(paths, config.retention), SummaryStore(paths)


def _engine(config: MonitorConfig) -> QueryEngine:
    history_store, summary_store = _stores(config)
    return QueryEngine(history_store, summary_store)


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _local(value: Optional[datetime]) -> str:
    if value is None:
        return "never"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the YAML config file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging"
    ),
):
    """GLM Monitor CLI."""
    ctx.obj = {"config_path": config}
    _setup_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("GLM Monitor - Use --help to see available commands")


@app.command()
def init(
    ctx: typer.Context,
    token: Optional[str] = typer.Option(None, "--token", "-t", help="API auth token"),
    base_url: Optional[str] = typer.Option(None, "--url", "-u", help="API base URL"),
    data_dir: Optional[Path] = typer.Option(None, "--data-dir", help="Where usage data is stored"),
):
    """Write the configuration file."""
    config = _load_config(ctx)
    changes = {}
    if token:
        changes["auth_token"] = token
    if base_url:
        changes["base_url"] = base_url
    if data_dir:
        changes["data_dir"] = data_dir.expanduser()

    path = save_monitor_config(config.with_changes(**changes), _config_path(ctx))
    console.print(f"[green]✓[/] Configuration saved to {path}")
    if not token and not config.auth_token:
        console.print("[yellow]No auth token set; ANTHROPIC_AUTH_TOKEN will be used if present[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def collect(
    ctx: typer.Context,
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile to collect for"),
):
    """Collect one usage snapshot from the metering API."""
    config = _load_config(ctx)
    try:
        selected = ProfileRegistry(_config_path(ctx)).get(profile)
        if not selected.auth_token:
            _fail("No auth token configured. Run `glm-monitor init --token YOUR_TOKEN`")

        client = MeteringClient(selected.base_url, selected.auth_token)
        history_store, summary_store = _stores(config)
        result = collect_usage(
            client,
            history_store,
            summary_store,
            selected.name,
            retention=config.retention,
        )
    except (MonitorError, ValueError) as e:
        _fail(str(e))

    snapshot = result.snapshot
    if result.stored:
        console.print(
            f"[green]✓[/] Stored snapshot for [bold]{selected.name}[/] "
            f"({result.entries_count} entries)"
        )
    else:
        console.print("[yellow]Snapshot for this second already stored[/]")
    console.print(f"  Model calls: {snapshot.model_calls:,}")
    console.print(f"  Tokens used: {snapshot.tokens_used:,}")
    console.print(f"  MCP calls: {snapshot.mcp_calls:,}")
    console.print(f"  Token quota: {snapshot.token_quota_percent}%")
    console.print(f"  Time quota: {snapshot.time_quota_percent}%")
    if result.prediction is not None:
        console.print(f"  Prediction: {result.prediction.message}")
    if result.archive is not None and (result.archive.archived or result.archive.trimmed):
        console.print(
            f"  Archived {result.archive.archived} entries, "
            f"pruned {result.archive.trimmed} summaries"
        )
    for warning in result.warnings:
        console.print(f"[bold yellow]⚠ {warning}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def cleanup(
    ctx: typer.Context,
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="Profile to clean up"),
):
    """Archive raw data older than 24 hours and prune old summaries."""
    config = _load_config(ctx)
    name = profile or config.active_profile
    try:
        result = _engine(config).cleanup(name, config.retention)
    except MonitorError as e:
        _fail(str(e))

    if not config.retention.archives:
        console.print(f"Retention is {config.retention.value}; nothing to archive")
    else:
        console.print(
            f"[green]✓[/] Archived {result.archived} entries, "
            f"pruned {result.trimmed} summaries"
        )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def report(
    ctx: typer.Context,
    report_type: str = typer.Option(
        "summary",
        "--type",
        "-t",
        help="Report type: summary, rates or peak"
    ),
    period: str = typer.Option("24h", "--period", help="1h, 6h, 12h, 24h, 7d or 30d"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p"),
):
    """Show a usage report over a period."""
    if report_type not in REPORT_TYPES:
        _fail(f"Unknown report type '{report_type}'. Use one of: {', '.join(REPORT_TYPES)}")

    config = _load_config(ctx)
    name = profile or config.active_profile
    engine = _engine(config)
    try:
        if report_type == "summary":
            _display_summary(engine.get_history(name, period, "summary"), period)
        elif report_type == "rates":
            _display_rates(engine.get_rate_series(name, period), period)
        else:
            _display_peaks(engine.get_insights(name, period), period)
    except MonitorError as e:
        _fail(str(e))
    sys.exit(EXIT_CODE_PASS)


def _display_summary(summary, period: str) -> None:
    table = Table(title=f"Usage summary ({period})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Model calls", f"{summary.total_model_calls:,}")
    table.add_row("Tokens used", f"{summary.total_tokens_used:,}")
    table.add_row("MCP calls", f"{summary.total_mcp_calls:,}")
    table.add_row("Token quota", f"{summary.token_quota_percent}%")
    table.add_row("Time quota", f"{summary.time_quota_percent}%")
    table.add_row("Token growth", f"{summary.token_growth:+.1f}%")
    table.add_row("Entries", str(summary.entry_count))
    table.add_row("From", _local(summary.start))
    table.add_row("To", _local(summary.end))
    console.print(table)


def _display_rates(rates, period: str) -> None:
    console.print(f"\n[bold]Consumption rates ({period})[/bold]")
    console.print(f"Average: {rates.avg_tokens_per_hour:,.0f} tokens/hour, "
                  f"{rates.avg_calls_per_hour:,.1f} calls/hour")
    if rates.intervals:
        console.print(f"Peak: {rates.peak.tokens_per_hour:,.0f} tokens/hour "
                      f"ending {_local(rates.peak.timestamp)}")

    table = Table()
    table.add_column("Interval end")
    table.add_column("Tokens/hour", justify="right")
    table.add_column("Calls/hour", justify="right")
    for interval in rates.intervals[-12:]:
        table.add_row(
            _local(interval.timestamp),
            f"{interval.tokens_per_hour:,.0f}",
            f"{interval.calls_per_hour:,.1f}",
        )
    console.print(table)


def _display_peaks(peaks, period: str) -> None:
    console.print(f"\n[bold]Peak usage ({period}, {peaks.entries_count} entries)[/bold]")
    console.print(f"Busiest hour: {peaks.peak_hour.label} ({peaks.peak_hour.tokens:,} tokens)")
    console.print(f"Busiest day: {peaks.peak_weekday.label} ({peaks.peak_weekday.tokens:,} tokens)")

    table = Table(title="By hour of day")
    table.add_column("Hour")
    table.add_column("Tokens", justify="right")
    table.add_column("Calls", justify="right")
    for bucket in peaks.by_hour:
        table.add_row(bucket.label, f"{bucket.tokens:,}", f"{bucket.calls:,}")
    console.print(table)


@app.command()
def predict(
    ctx: typer.Context,
    window: str = typer.Option("6h", "--window", "-w", help="Trailing window, e.g. 6h"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p"),
):
    """Predict when the token quota runs out."""
    config = _load_config(ctx)
    name = profile or config.active_profile
    try:
        window_hours = parse_window_hours(window, default=6)
        prediction = _engine(config).get_prediction(name, window_hours)
    except MonitorError as e:
        _fail(str(e))

    color = {"ok": "green", "warning": "yellow"}.get(prediction.status.value, "cyan")
    console.print(f"Token quota: {prediction.quota_percent}%")
    console.print(f"Rate: {prediction.rate}%/hour over the last {window_hours}h")
    console.print(f"[{color}]{prediction.message}[/]")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def current(
    ctx: typer.Context,
    profile: Optional[str] = typer.Option(None, "--profile", "-p"),
):
    """Show the latest usage snapshot."""
    config = _load_config(ctx)
    name = profile or config.active_profile
    try:
        usage = _engine(config).get_current(name)
    except MonitorError as e:
        _fail(str(e))

    snapshot = usage.snapshot
    table = Table(title=f"Current usage ({name})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Model calls", f"{snapshot.model_calls:,}")
    table.add_row("Tokens used", f"{snapshot.tokens_used:,}")
    table.add_row("MCP calls", f"{snapshot.mcp_calls:,}")
    table.add_row("Token quota", f"{snapshot.token_quota_percent}%")
    table.add_row("Time quota", f"{snapshot.time_quota_percent}%")
    for tool, count in sorted(snapshot.mcp_tool_breakdown.items()):
        table.add_row(f"  {tool}", f"{count:,}")
    table.add_row("Collected", _local(snapshot.timestamp))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command("config")
def config_command(
    ctx: typer.Context,
    retention: Optional[str] = typer.Option(None, "--retention", "-r", help="24h, 7d or 30d"),
):
    """Show or change settings."""
    config = _load_config(ctx)
    if retention:
        try:
            config = config.with_changes(retention=parse_retention(retention))
        except MonitorError as e:
            _fail(str(e))
        save_monitor_config(config, _config_path(ctx))
        console.print(f"[green]✓[/] Retention set to {config.retention.value}")

    console.print(f"Retention: {config.retention.value}")
    console.print(f"Base URL: {config.base_url}")
    console.print(f"Data directory: {config.data_dir}")
    console.print(f"Active profile: {config.active_profile}")
    console.print(f"API: http://{config.api.host}:{config.api.port}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def doctor(ctx: typer.Context):
    """Diagnose common setup and data problems."""
    config = _load_config(ctx)
    registry = ProfileRegistry(_config_path(ctx))
    name = config.active_profile
    engine = _engine(config)
    issues = []

    console.print("\n[bold]GLM Monitor Diagnostics[/bold]\n")

    try:
        if not registry.get(name).auth_token:
            issues.append(("No auth token configured", "Run `glm-monitor init --token YOUR_TOKEN`"))
    except MonitorError as e:
        issues.append((str(e), "Run `glm-monitor profile list`"))

    entries_count = 0
    last_updated = None
    size = 0
    try:
        stats = engine.get_storage_stats(name)
        size = stats.total_size
        if not stats.history.exists:
            issues.append(("No usage data file", "Run `glm-monitor collect`"))
        else:
            history = engine.history_store.load(name)
            entries_count = len(history.entries)
            last_updated = history.last_updated
            _check_history(history, issues)
    except MonitorError as e:
        issues.append((str(e), "Delete the file and run `glm-monitor collect`"))

    for issue, fix in issues:
        console.print(f"[yellow]⚠ Issue:[/] {issue}")
        console.print(f"  Fix: {fix}")

    console.print("\n[bold]System Information[/bold]")
    console.print(f"  Platform: {platform.system()}")
    console.print(f"  Python: {platform.python_version()}")
    console.print(f"  Config file: {_config_path(ctx)}")
    console.print(f"  Data directory: {config.data_dir}")
    console.print(f"  Active profile: {name}")
    console.print(f"  Retention: {config.retention.value}")
    console.print(f"  Storage: {size:,} bytes")
    console.print(f"  Entries: {entries_count}")
    console.print(f"  Last updated: {_local(last_updated)}")

    console.print("-" * 50)
    if issues:
        console.print(f"[yellow]{len(issues)} issue(s) found[/]")
    else:
        console.print("[green]✓[/] No issues found")
    sys.exit(EXIT_CODE_PASS)


def _check_history(history, issues) -> None:
    if history.last_updated is not None:
        stale_hours = (utc_now() - history.last_updated).total_seconds() / 3600
        if stale_hours > STALE_HOURS:
            issues.append((
                f"Data is very old ({stale_hours:.0f} hours)",
                "Run `glm-monitor collect` or schedule it",
            ))
    if len(history.entries) < MIN_ANALYTICS_ENTRIES:
        issues.append((
            f"Insufficient data for analytics ({len(history.entries)} entries)",
            "Run the collector a few more times",
        ))
    latest = history.latest
    if latest is not None:
        if latest.token_quota_percent > QUOTA_ISSUE_PERCENT:
            issues.append((
                f"Token quota nearly exhausted ({latest.token_quota_percent}%)",
                "Reduce usage or wait for the quota reset",
            ))
        if latest.time_quota_percent > QUOTA_ISSUE_PERCENT:
            issues.append((
                f"Time quota nearly exhausted ({latest.time_quota_percent}%)",
                "Reduce usage or wait for the quota reset",
            ))


@app.command()
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Start the local REST API."""
    config = _load_config(ctx)
    run_server(host or config.api.host, port or config.api.port, _config_path(ctx))


@profile_app.command("create")
def profile_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Profile name"),
    token: str = typer.Option(..., "--token", "-t", help="API auth token"),
    base_url: Optional[str] = typer.Option(None, "--url", "-u", help="API base URL"),
):
    """Create a profile."""
    try:
        ProfileRegistry(_config_path(ctx)).create(name, token, base_url)
    except MonitorError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Created profile '{name}'")
    sys.exit(EXIT_CODE_PASS)


@profile_app.command("switch")
def profile_switch(ctx: typer.Context, name: str = typer.Argument(..., help="Profile name")):
    """Make a profile the active one."""
    try:
        ProfileRegistry(_config_path(ctx)).switch(name)
    except MonitorError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Switched to profile '{name}'")
    sys.exit(EXIT_CODE_PASS)


@profile_app.command("list")
def profile_list(ctx: typer.Context):
    """List profiles."""
    try:
        profiles = ProfileRegistry(_config_path(ctx)).list()
    except MonitorError as e:
        _fail(str(e))

    table = Table(title="Profiles")
    table.add_column("")
    table.add_column("Name")
    table.add_column("Created")
    for info in profiles:
        table.add_row("*" if info.is_active else "", info.name, info.created_at or "")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@profile_app.command("delete")
def profile_delete(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Profile name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
):
    """Delete a profile and its usage data."""
    if not yes and not typer.confirm(f"Delete profile '{name}' and all its data?"):
        console.print("Aborted")
        sys.exit(EXIT_CODE_FAIL)
    try:
        removed = ProfileRegistry(_config_path(ctx)).delete(name)
    except MonitorError as e:
        _fail(str(e))
    console.print(f"[green]✓[/] Deleted profile '{name}' ({len(removed)} data file(s) removed)")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
