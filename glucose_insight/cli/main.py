"""
CLI interface for Glucose Insight.

Operator commands for the database, pricing, usage reports, period
statistics and re-running event analysis.
"""

import asyncio
import sqlite3
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from glucose_insight.config.loader import AppConfig, FileSettingsProvider, load_config
from glucose_insight.core.analyzer import AnalysisOutcome, AnalysisStatus, EventAnalyzer
from glucose_insight.core.errors import EventNotFoundError
from glucose_insight.core.stats import compute_period_stats
from glucose_insight.core.usage_report import UsageReport
from glucose_insight.logging_setup import setup_logging
from glucose_insight.sdk.notifier import RecordingNotifier
from glucose_insight.sdk.openai_client import OpenAIAnalysisClient
from glucose_insight.storage.repository import (
    SqliteEventStore,
    SqliteReadingStore,
    SqliteUsageStore,
    fetch_history,
    fetch_readings,
    fetch_usage_logs,
    initialize_schema,
    is_missing_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_PATH = "glucose_insight.yaml"

_CONFIG_HELP = "Path to YAML configuration file"


def _load_app_config(config_path: Optional[str]) -> AppConfig:
    """Load the config file, or fall back to defaults when none is given."""
    if config_path is None:
        return AppConfig()
    return load_config(config_path)


def _parse_instant(value: str, name: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"{name} must be an ISO 8601 timestamp, got '{value}'")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _format_currency(amount: float) -> str:
    """Format a USD cost; AI calls are cheap, so keep four decimals."""
    return f"${amount:,.4f}"


def _format_optional(value: Optional[float], suffix: str = "") -> str:
    return "-" if value is None else f"{value:g}{suffix}"


def _print_missing_schema() -> None:
    console.print("\n[bold yellow]Database is not initialized[/]")
    console.print("Run `glucose-insight init` to create the tables.\n")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase log output"),
):
    """Glucose Insight CLI."""
    setup_logging(verbose)
    if ctx.invoked_subcommand is None:
        console.print("Glucose Insight - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = typer.Option(None, "--config", "-c", help=_CONFIG_HELP)):
    """Initialize the Glucose Insight database."""
    try:
        app_config = _load_app_config(config)
        initialize_schema(app_config.database)
        console.print(f"[green]✓[/] Database initialized at {app_config.database}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def pricing(config: Optional[str] = typer.Option(None, "--config", "-c", help=_CONFIG_HELP)):
    """Show the model pricing table (USD per 1M tokens)."""
    try:
        app_config = _load_app_config(config)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Model pricing (USD per 1M tokens)")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    for model, model_pricing in app_config.pricing.entries():
        table.add_row(model, f"{model_pricing.input_per_million}", f"{model_pricing.output_per_million}")
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    days: Optional[int] = typer.Option(
        None,
        "--days",
        "-d",
        help="Only include calls from the last N days",
    ),
    config: Optional[str] = typer.Option(None, "--config", "-c", help=_CONFIG_HELP),
):
    """Summarize AI usage and recomputed cost."""
    try:
        app_config = _load_app_config(config)
        since = None
        if days is not None:
            if days <= 0:
                raise ValueError("--days must be > 0")
            since = datetime.now(timezone.utc) - timedelta(days=days)

        records = fetch_usage_logs(since=since, db_path=app_config.database)
        if not records:
            console.print("\n[bold yellow]No AI usage recorded yet[/]\n")
            sys.exit(EXIT_CODE_PASS)

        _display_usage_report(UsageReport.from_records(records, app_config.pricing))
        sys.exit(EXIT_CODE_PASS)

    except sqlite3.OperationalError as e:
        if is_missing_schema(e):
            _print_missing_schema()
            sys.exit(EXIT_CODE_PASS)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _display_usage_report(report: UsageReport) -> None:
    """Display a usage report as summary lines and two tables."""
    console.print("\n[bold]AI Usage Summary[/bold]")
    console.print("-" * 40)
    console.print(
        f"Calls: {report.total_calls} "
        f"([green]{report.successful_calls} ok[/], [red]{report.failed_calls} failed[/])"
    )
    console.print(
        f"Tokens: {report.total_tokens:,} "
        f"({report.total_input_tokens:,} in / {report.total_output_tokens:,} out)"
    )
    console.print(f"Total cost: {_format_currency(report.total_cost)}")
    console.print(f"Average cost per call: {_format_currency(report.avg_cost_per_call)}")
    console.print(f"Average duration: {report.avg_duration_ms:g} ms")

    models = Table(title="By model")
    models.add_column("Model")
    models.add_column("Calls", justify="right")
    models.add_column("Failed", justify="right")
    models.add_column("Tokens", justify="right")
    models.add_column("Cost", justify="right")
    for row in report.by_model:
        models.add_row(
            row.model,
            str(row.calls),
            str(row.failed_calls),
            f"{row.total_tokens:,}",
            _format_currency(row.cost),
        )
    console.print(models)

    daily = Table(title="By day (UTC)")
    daily.add_column("Date")
    daily.add_column("Calls", justify="right")
    daily.add_column("Tokens", justify="right")
    daily.add_column("Cost", justify="right")
    for row in report.by_day:
        daily.add_row(row.day.isoformat(), str(row.calls), f"{row.total_tokens:,}", _format_currency(row.cost))
    console.print(daily)


@app.command("period-stats")
def period_stats(
    start: str = typer.Option(..., "--start", "-s", help="Window start (ISO 8601)"),
    end: str = typer.Option(..., "--end", "-e", help="Window end (ISO 8601)"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help=_CONFIG_HELP),
):
    """Show glucose statistics for a time window."""
    window_start = _parse_instant(start, "--start")
    window_end = _parse_instant(end, "--end")
    if window_start > window_end:
        console.print("[red]Error:[/] --start must not be after --end")
        sys.exit(EXIT_CODE_FAIL)

    try:
        app_config = _load_app_config(config)
        stats = compute_period_stats(fetch_readings(window_start, window_end, app_config.database))
    except sqlite3.OperationalError as e:
        if is_missing_schema(e):
            _print_missing_schema()
            sys.exit(EXIT_CODE_FAIL)
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if stats.reading_count == 0:
        console.print("\n[dim]No readings in this window.[/]\n")
        sys.exit(EXIT_CODE_PASS)

    console.print("\n[bold]Glucose Statistics[/bold]")
    console.print("-" * 40)
    console.print(f"Readings: {stats.reading_count}")
    console.print(f"First / last: {stats.first_reading:%Y-%m-%d %H:%M} / {stats.last_reading:%Y-%m-%d %H:%M}")
    console.print(f"Min / max: {_format_optional(stats.min)} / {_format_optional(stats.max)} mg/dL")
    console.print(f"Average: {_format_optional(stats.avg)} mg/dL (SD {_format_optional(stats.std_dev)})")
    console.print(f"In range: {_format_optional(stats.time_in_range_pct, '%')}")
    console.print(f"Above range: {_format_optional(stats.time_above_range_pct, '%')}")
    console.print(f"Below range: {_format_optional(stats.time_below_range_pct, '%')}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def history(
    event_id: int = typer.Argument(..., help="Event id"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help=_CONFIG_HELP),
):
    """Show the analysis history of an event, newest first."""
    try:
        app_config = _load_app_config(config)
        records = fetch_history(event_id, app_config.database)
    except sqlite3.OperationalError as e:
        if is_missing_schema(e):
            _print_missing_schema()
        else:
            console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not records:
        console.print(f"\n[dim]No analysis history for event {event_id}.[/]\n")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Analysis history for event {event_id}")
    table.add_column("Analyzed at")
    table.add_column("Model")
    table.add_column("Class")
    table.add_column("Readings", justify="right")
    table.add_column("Spike", justify="right")
    table.add_column("Reason")
    for record in records:
        table.add_row(
            f"{record.analyzed_at:%Y-%m-%d %H:%M}",
            record.model,
            record.classification or "-",
            str(record.reading_count),
            _format_optional(record.glucose_spike),
            record.reason or "",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


async def _reprocess(
    app_config: AppConfig,
    config_path: str,
    event_id: int,
    reason: str,
    model: Optional[str],
) -> AnalysisOutcome:
    client = OpenAIAnalysisClient()
    analyzer = EventAnalyzer(
        readings=SqliteReadingStore(app_config.database),
        events=SqliteEventStore(app_config.database),
        usage=SqliteUsageStore(app_config.database),
        ai_client=client,
        notifier=RecordingNotifier(),
        settings=FileSettingsProvider(config_path),
        pricing=app_config.pricing,
    )
    try:
        return await analyzer.reprocess_event(event_id, reason, model_override=model)
    finally:
        await client.aclose()


@app.command()
def analyze(
    event_id: int = typer.Argument(..., help="Event id to (re)analyze"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Use this model for this run only"),
    reason: str = typer.Option("Manual reprocess", "--reason", "-r", help="Reason recorded with the run"),
    config: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help=_CONFIG_HELP),
):
    """Run AI analysis for one event and store the result."""
    try:
        app_config = load_config(config)
        outcome = asyncio.run(_reprocess(app_config, config, event_id, reason, model))
    except EventNotFoundError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except sqlite3.OperationalError as e:
        if is_missing_schema(e):
            _print_missing_schema()
        else:
            console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if outcome.status is AnalysisStatus.NOT_CONFIGURED:
        console.print("[yellow]AI API key not configured; nothing was analyzed.[/]")
        sys.exit(EXIT_CODE_FAIL)
    if outcome.status is AnalysisStatus.FAILED:
        console.print(f"[red]AI call failed:[/] {outcome.error or 'unknown error'}")
        sys.exit(EXIT_CODE_FAIL)
    if outcome.status is AnalysisStatus.EMPTY:
        console.print("[yellow]The model returned no analysis text; usage was still recorded.[/]")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"\n[bold]Event {event_id}[/bold] - classification: {outcome.classification or 'none'}")
    console.print("-" * 40)
    console.print(outcome.analysis)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
