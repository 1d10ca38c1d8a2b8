"""
CLI interface for the AI usage gateway.

Operator commands for the ledger: schema setup, readiness, and usage
reports.
"""

import asyncio
import sqlite3
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_usage_gateway.config.loader import GatewayConfig, load_gateway_config
from ai_usage_gateway.observability import setup_logging
from ai_usage_gateway.sdk.gateway import GenerationGateway
from ai_usage_gateway.storage.db import DEFAULT_DB_PATH
from ai_usage_gateway.sdk.templates import TemplateCatalog
from ai_usage_gateway.storage.repository import (
    PromptTemplateRepository,
    UsageRepository,
    initialize_schema,
)

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite ledger")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML limits file")


def _load_config(path: Optional[str]) -> GatewayConfig:
    return load_gateway_config(path) if path else GatewayConfig()


def _format_cents(cents: float) -> str:
    """Format a cent amount as dollars."""
    return f"${cents / 100:,.4f}"


def _print_missing_schema() -> None:
    console.print("\n[bold yellow]No usage ledger found[/]")
    console.print("\nRun `ai-usage-gateway init` to initialize the database.\n")


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Log level"),
    log_format: str = typer.Option("text", "--log-format", help="text or json")
):
    """AI usage gateway CLI."""
    setup_logging(log_level, log_format)
    if ctx.invoked_subcommand is None:
        console.print("AI Usage Gateway - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the usage ledger database."""
    try:
        asyncio.run(initialize_schema(db))
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(config: Optional[str] = CONFIG_OPTION):
    """Check provider configuration and show the active limits."""
    try:
        gateway_config = _load_config(config)
    except Exception as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    gateway = GenerationGateway.from_config(gateway_config)
    readiness = gateway.check_ai_ready()

    table = Table(title="Admission limits")
    table.add_column("Principal")
    table.add_column("Per minute", justify="right")
    table.add_column("Per hour", justify="right")
    table.add_column("Per day", justify="right")
    table.add_column("Tokens per day", justify="right")
    for name, limits, tokens in (
        ("actor", gateway_config.actor_limits, gateway_config.token_limits.per_actor_per_day),
        ("group", gateway_config.group_limits, gateway_config.token_limits.per_group_per_day),
    ):
        table.add_row(
            name, str(limits.per_minute), str(limits.per_hour), str(limits.per_day), f"{tokens:,}"
        )
    console.print(table)

    if readiness.ready:
        console.print("[green]✓[/] AI provider is configured")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[yellow]![/] AI provider not ready: {readiness.reason}")
    sys.exit(EXIT_CODE_FAIL)


@app.command()
def usage(
    actor: str = typer.Option(..., "--actor", "-a", help="Actor id"),
    group: str = typer.Option(..., "--group", "-g", help="Group id"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION
):
    """Show today's consumption for an actor and its group against limits."""
    try:
        gateway_config = _load_config(config)
        gateway = GenerationGateway.from_config(gateway_config, db_path=db)
        stats = asyncio.run(gateway.get_usage_stats(actor, group))
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_missing_schema()
            sys.exit(EXIT_CODE_FAIL)
        raise
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Usage today (UTC) for {actor} in {group}")
    table.add_column("Principal")
    table.add_column("Requests", justify="right")
    table.add_column("Daily request limit", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Daily token limit", justify="right")
    table.add_row(
        "actor",
        str(stats.actor.requests),
        str(gateway_config.actor_limits.per_day),
        f"{stats.actor.tokens:,}",
        f"{gateway_config.token_limits.per_actor_per_day:,}"
    )
    table.add_row(
        "group",
        str(stats.group.requests),
        str(gateway_config.group_limits.per_day),
        f"{stats.group.tokens:,}",
        f"{gateway_config.token_limits.per_group_per_day:,}"
    )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def report(
    group: str = typer.Option(..., "--group", "-g", help="Group id"),
    days: int = typer.Option(30, "--days", "-d", help="Lookback in days"),
    db: str = DB_OPTION
):
    """Summarize a group's usage by feature and by actor."""
    repository = UsageRepository(db)

    async def _load():
        return await asyncio.gather(
            repository.get_group_usage_summary(group, days),
            repository.estimate_monthly_usage(group)
        )

    try:
        summary, projection = asyncio.run(_load())
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_missing_schema()
            sys.exit(EXIT_CODE_FAIL)
        raise
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"\n[bold]AI Usage Report[/bold] for {group} (last {days} days)")
    console.print("-" * 40)

    if summary.total_requests == 0:
        console.print("\n[dim]No usage recorded for this period.[/]")
        sys.exit(EXIT_CODE_PASS)

    console.print(f"Requests: {summary.total_requests:,}")
    console.print(f"Tokens: {summary.total_tokens:,}")
    console.print(f"Cost: {_format_cents(summary.total_cost_cents)}")
    console.print(f"Success rate: {summary.success_rate:.1%}")
    console.print(f"Average latency: {summary.average_latency_ms:,.0f}ms")

    for title, buckets, label in (
        ("By feature", summary.by_feature, "Feature"),
        ("By actor", summary.by_actor, "Actor"),
    ):
        table = Table(title=title)
        table.add_column(label)
        table.add_column("Requests", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Cost", justify="right")
        for key, bucket in buckets.items():
            table.add_row(key, str(bucket.requests), f"{bucket.tokens:,}", _format_cents(bucket.cost_cents))
        console.print(table)

    console.print(
        f"\nEstimated monthly: {projection.estimated_tokens:,} tokens, "
        f"{_format_cents(projection.estimated_cost_cents)} ({projection.basis})"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def errors(
    group: str = typer.Option(..., "--group", "-g", help="Group id"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum entries"),
    db: str = DB_OPTION
):
    """List recent failed model calls for a group."""
    repository = UsageRepository(db)
    try:
        entries = asyncio.run(repository.get_recent_errors(group, limit))
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_missing_schema()
            sys.exit(EXIT_CODE_FAIL)
        raise
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not entries:
        console.print("[green]✓[/] No failed calls recorded")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Recent errors for {group}")
    table.add_column("When (UTC)")
    table.add_column("Feature")
    table.add_column("Actor")
    table.add_column("Error")
    for entry in entries:
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.feature,
            entry.actor_id,
            entry.error_message or ""
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def templates(
    category: Optional[str] = typer.Option(None, "--category", help="Only this category"),
    db: str = DB_OPTION
):
    """List prompt templates: stored ones first, then unoverridden built-ins."""
    catalog = TemplateCatalog(PromptTemplateRepository(db))
    try:
        entries = asyncio.run(catalog.list_templates(category))
    except sqlite3.OperationalError as e:
        if "no such table" in str(e).lower():
            _print_missing_schema()
            sys.exit(EXIT_CODE_FAIL)
        raise
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not entries:
        console.print("No templates in this category")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Prompt templates")
    table.add_column("Name")
    table.add_column("Category")
    table.add_column("Source")
    table.add_column("Description")
    for entry in entries:
        table.add_row(
            entry.name,
            entry.category,
            "built-in" if entry.builtin else "stored",
            entry.description or ""
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
