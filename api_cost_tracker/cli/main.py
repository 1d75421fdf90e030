"""
CLI interface for API Cost Tracker.

Provides command-line access to usage tracking, spend reports, health,
optimization suggestions, subscriptions and exports.
"""

import json
import sys
from datetime import datetime, timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from api_cost_tracker.config.loader import TrackerConfig, configure_logging, load_tracker_config
from api_cost_tracker.core.aggregation import UsageSummary
from api_cost_tracker.core.periods import Period
from api_cost_tracker.core.tracker import CostTracker, UsageContext
from api_cost_tracker.storage.db import DEFAULT_DB_PATH
from api_cost_tracker.storage.repository import SQLiteLedgerStore, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the usage ledger database"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file")
):
    """API Cost Tracker CLI."""
    ctx.obj = {"db": db, "config": config}
    if ctx.invoked_subcommand is None:
        console.print("API Cost Tracker - Use --help to see available commands")


def _load_config(ctx: typer.Context) -> TrackerConfig:
    path = ctx.obj.get("config") if ctx.obj else None
    return load_tracker_config(path) if path else TrackerConfig()


def _open_tracker(ctx: typer.Context) -> CostTracker:
    """Build a tracker over the SQLite ledger, configured from --config."""
    config = _load_config(ctx)
    configure_logging(config.log_level)
    db_path = ctx.obj.get("db", DEFAULT_DB_PATH) if ctx.obj else DEFAULT_DB_PATH
    return CostTracker.from_config(config, store=SQLiteLedgerStore(db_path))


def _fail(error: Exception) -> None:
    console.print(f"[red]Error:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _format_percent(value: Optional[float]) -> str:
    return "N/A" if value is None else f"{value:,.1f}%"


@app.command()
def init(ctx: typer.Context):
    """Initialize the usage ledger database."""
    try:
        initialize_schema(ctx.obj["db"])
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_OK)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def track(
    ctx: typer.Context,
    provider: str = typer.Argument("dataforseo", help="Provider name"),
    endpoint: str = typer.Argument("keywords_volume", help="Endpoint name or path"),
    quantity: int = typer.Option(1, "--quantity", "-q", help="Billable units consumed"),
    status_code: Optional[int] = typer.Option(None, "--status-code", help="HTTP status of the call"),
    response_time: Optional[float] = typer.Option(None, "--response-time", help="Response time in ms"),
    method: Optional[str] = typer.Option(None, "--method", help="HTTP method"),
    path: Optional[str] = typer.Option(None, "--path", help="Wire path of the call")
):
    """Record one API call (useful to verify tracking end to end)."""
    try:
        with _open_tracker(ctx) as tracker:
            event = tracker.record_usage(
                provider,
                endpoint,
                quantity,
                UsageContext(
                    method=method,
                    path=path,
                    status_code=status_code,
                    response_time=response_time,
                    metadata={"source": "cli"},
                )
            )
    except Exception as e:
        _fail(e)

    if event.unrecognized:
        console.print(f"[yellow]![/] Recorded unrecognized call {provider}/{endpoint} at $0.00")
    else:
        console.print(
            f"[green]✓[/] Recorded {event.provider}/{event.endpoint} "
            f"x{event.quantity}: {_format_currency(event.cost)}"
        )
    sys.exit(EXIT_CODE_OK)


@app.command()
def usage(
    ctx: typer.Context,
    period: Optional[str] = typer.Option(None, "--period", "-p", help="Month as YYYY-MM (default: current)"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON")
):
    """Show spend for a calendar month."""
    try:
        with _open_tracker(ctx) as tracker:
            summary = tracker.monthly_usage(Period.parse(period) if period else None)
    except Exception as e:
        _fail(e)

    if as_json:
        console.print_json(json.dumps(summary.to_dict()))
    else:
        _display_summary(summary)
    sys.exit(EXIT_CODE_OK)


@app.command()
def history(
    ctx: typer.Context,
    months: int = typer.Option(6, "--months", "-m", help="Number of months to show")
):
    """Show monthly totals for recent months, newest first."""
    try:
        with _open_tracker(ctx) as tracker:
            summaries = tracker.usage_history(months)
    except Exception as e:
        _fail(e)

    table = Table(title="Usage history")
    table.add_column("Period")
    table.add_column("Usage", justify="right")
    table.add_column("Subscriptions", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Budget used", justify="right")
    for summary in summaries:
        table.add_row(
            summary.period,
            _format_currency(summary.costs.usage),
            _format_currency(summary.costs.subscriptions),
            _format_currency(summary.costs.total),
            _format_percent(summary.budget.percentage),
        )
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def breakdown(
    ctx: typer.Context,
    provider: Optional[str] = typer.Option(None, "--provider", help="Only this provider"),
    start: Optional[datetime] = typer.Option(None, "--start", formats=DATE_FORMATS, help="Inclusive start (UTC)"),
    end: Optional[datetime] = typer.Option(None, "--end", formats=DATE_FORMATS, help="Exclusive end (UTC)"),
    group_by: str = typer.Option("day", "--group-by", "-g", help="day, week or month")
):
    """Show cost per time bucket, provider and category."""
    try:
        with _open_tracker(ctx) as tracker:
            series = tracker.cost_breakdown(provider, start, end, group_by)
    except Exception as e:
        _fail(e)

    if not series.points:
        console.print("[dim]No usage found for the selected range.[/]")
        sys.exit(EXIT_CODE_OK)

    table = Table(title=f"Cost breakdown by {series.group_by}")
    table.add_column(series.group_by.capitalize())
    table.add_column("Provider")
    table.add_column("Category")
    table.add_column("Requests", justify="right")
    table.add_column("Cost", justify="right")
    for point in series.points:
        table.add_row(
            point.bucket,
            point.provider,
            point.category,
            str(point.requests),
            _format_currency(point.cost),
        )
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def health(
    ctx: typer.Context,
    window_hours: Optional[float] = typer.Option(None, "--window-hours", help="Trailing window in hours")
):
    """Show per-provider success rate, latency and rate-limit headroom."""
    try:
        with _open_tracker(ctx) as tracker:
            records = tracker.get_api_health(timedelta(hours=window_hours) if window_hours else None)
    except Exception as e:
        _fail(e)

    if not records:
        console.print("[dim]No API traffic in the selected window.[/]")
        sys.exit(EXIT_CODE_OK)

    colors = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}
    table = Table(title="API health")
    table.add_column("Provider")
    table.add_column("Status")
    table.add_column("Requests", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Avg ms", justify="right")
    table.add_column("P95 ms", justify="right")
    table.add_column("Rate limit", justify="right")
    for record in records:
        status = record.status.value
        table.add_row(
            record.provider,
            f"[{colors[status]}]{status}[/]",
            str(record.total_requests),
            _format_percent(record.success_rate * 100),
            "-" if record.avg_response_time is None else f"{record.avg_response_time:,.0f}",
            "-" if record.p95_response_time is None else f"{record.p95_response_time:,.0f}",
            "-" if record.rate_limit is None else _format_percent(record.rate_limit.percentage),
        )
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def optimize(
    ctx: typer.Context,
    top: int = typer.Option(10, "--top", "-n", help="Number of suggestions to show")
):
    """Show cost optimization suggestions, highest value first."""
    try:
        with _open_tracker(ctx) as tracker:
            report = tracker.get_optimization_suggestions()
    except Exception as e:
        _fail(e)

    if not report.suggestions:
        console.print("[green]✓[/] No optimization suggestions")
        sys.exit(EXIT_CODE_OK)

    console.print("\n[bold]Optimization suggestions[/bold]")
    console.print("-" * 40)
    for suggestion in report.top(top):
        console.print(f"\n[bold]{suggestion.type.value}[/bold] ({suggestion.provider})")
        console.print(suggestion.message)
        if suggestion.potential_savings is not None:
            console.print(f"Potential savings: {_format_currency(suggestion.potential_savings)}")
        if suggestion.impact is not None:
            console.print(f"Impact: {_format_currency(suggestion.impact)}")
        if suggestion.recommendation:
            console.print(f"[dim]{suggestion.recommendation}[/]")
    console.print(f"\nTotal potential savings: {_format_currency(report.total_potential_savings)}")
    sys.exit(EXIT_CODE_OK)


@app.command()
def subscriptions(ctx: typer.Context):
    """List active subscriptions."""
    try:
        with _open_tracker(ctx) as tracker:
            active = tracker.list_subscriptions()
    except Exception as e:
        _fail(e)

    if not active:
        console.print("[dim]No active subscriptions.[/]")
        sys.exit(EXIT_CODE_OK)

    table = Table(title="Active subscriptions")
    table.add_column("Provider")
    table.add_column("Plan")
    table.add_column("Cost", justify="right")
    table.add_column("Period")
    table.add_column("Credits left", justify="right")
    table.add_column("Renews in", justify="right")
    for sub in active:
        plan = sub["plan"]
        credits_remaining = sub["credits_remaining"]
        days = sub["days_until_renewal"]
        table.add_row(
            sub["provider"],
            plan["name"],
            _format_currency(plan["cost"]),
            plan["billing_period"],
            "-" if credits_remaining is None else f"{credits_remaining:,}",
            "-" if days is None else f"{days} days",
        )
    console.print(table)
    sys.exit(EXIT_CODE_OK)


@app.command()
def subscribe(
    ctx: typer.Context,
    provider: str = typer.Argument(..., help="Provider name"),
    name: str = typer.Option(..., "--name", help="Plan name"),
    cost: float = typer.Option(..., "--cost", help="Plan cost per billing period"),
    period: str = typer.Option("monthly", "--period", help="monthly or yearly"),
    credits: int = typer.Option(0, "--credits", help="Credits included per cycle"),
    requests: int = typer.Option(0, "--requests", help="Requests included per cycle")
):
    """Create or replace a provider subscription."""
    try:
        with _open_tracker(ctx) as tracker:
            subscription = tracker.upsert_subscription(provider, {
                "name": name,
                "cost": cost,
                "billing_period": period,
                "credits": credits,
                "requests": requests,
            })
    except Exception as e:
        _fail(e)

    console.print(
        f"[green]✓[/] {subscription.provider} subscribed to {subscription.plan.name} "
        f"({_format_currency(subscription.plan.cost)}/{subscription.plan.billing_period.value}), "
        f"renews {subscription.plan.renewal_date:%Y-%m-%d}"
    )
    sys.exit(EXIT_CODE_OK)


@app.command()
def export(
    ctx: typer.Context,
    format: str = typer.Option("json", "--format", "-f", help="json or csv"),
    provider: Optional[str] = typer.Option(None, "--provider", help="Only this provider"),
    start: Optional[datetime] = typer.Option(None, "--start", formats=DATE_FORMATS, help="Inclusive start (UTC)"),
    end: Optional[datetime] = typer.Option(None, "--end", formats=DATE_FORMATS, help="Exclusive end (UTC)"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout")
):
    """Export usage events, newest first."""
    try:
        with _open_tracker(ctx) as tracker:
            chunks = tracker.iter_report(format, provider=provider, start=start, end=end)
            if output:
                with open(output, "wb") as f:
                    for chunk in chunks:
                        f.write(chunk)
            else:
                for chunk in chunks:
                    sys.stdout.write(chunk.decode("utf-8"))
                sys.stdout.flush()
    except Exception as e:
        _fail(e)

    if output:
        console.print(f"[green]✓[/] Report written to {output}")
    sys.exit(EXIT_CODE_OK)


def _display_summary(summary: UsageSummary) -> None:
    """Display a monthly summary in a clean, financial format."""
    console.print(f"\n[bold]API spend for {summary.period}[/bold]")
    console.print("-" * 40)

    if summary.providers:
        table = Table()
        table.add_column("Provider")
        table.add_column("Endpoint")
        table.add_column("Calls", justify="right")
        table.add_column("Quantity", justify="right")
        table.add_column("Cost", justify="right")
        table.add_column("Success", justify="right")
        for provider in summary.providers:
            for endpoint in provider.endpoints:
                table.add_row(
                    provider.provider,
                    endpoint.endpoint,
                    str(endpoint.count),
                    str(endpoint.quantity),
                    _format_currency(endpoint.cost),
                    _format_percent(endpoint.success_rate * 100),
                )
        console.print(table)
    else:
        console.print("\n[dim]No usage recorded for this period.[/]")

    console.print(f"Usage: {_format_currency(summary.costs.usage)}")
    console.print(f"Subscriptions: {_format_currency(summary.costs.subscriptions)}")
    console.print(f"Total: {_format_currency(summary.costs.total)}")
    if summary.budget.percentage is not None:
        console.print(
            f"Budget: {_format_currency(summary.budget.spent)} of "
            f"{_format_currency(summary.budget.allocated)} "
            f"({_format_percent(summary.budget.percentage)})"
        )


if __name__ == "__main__":
    app()
