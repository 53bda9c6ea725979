"""Command-line interface for provider price backfills."""

import asyncio
import json
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .core.types import BackfillResult
from .pipeline.backfill import run_backfill
from .store.database import CatalogStore
from .utils.error_handler import PricesyncError
from .utils.log import configure_logging, get_logger

# Configure logging
configure_logging()
logger = get_logger(__name__)

# Rich console
console = Console()

app = typer.Typer(
    name="pricesync",
    help="Provider price sync - match provider cards to catalog printings and backfill prices",
    add_completion=False,
)


@app.callback()
def main_options(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL for this invocation"),
    pretty_logs: bool = typer.Option(False, "--pretty-logs", help="Human-readable logs instead of JSON lines"),
):
    """Provider price sync."""
    if log_level or pretty_logs:
        configure_logging(level=log_level, json_output=not pretty_logs)


def render_result(result: BackfillResult) -> None:
    """Print a run summary with the failure sample."""
    status = "[green]✓ ok[/green]" if result.ok else "[red]❌ failed[/red]"
    table = Table(title=f"Backfill {result.set_key} ({'dry run' if result.dry_run else 'live'})")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Status", status)
    table.add_row("Run ID", result.run_id)
    table.add_row("Provider Set", result.provider_set_id)
    table.add_row("Canonical Set", result.canonical_set_name)
    table.add_row("Window", f"{result.provider_window_requested} → {result.provider_window_used}")
    table.add_row("Provider Requests", str(result.provider_requests_used))
    table.add_row("Printings", str(result.printings_selected))
    table.add_row("Matched", str(result.matched_count))
    table.add_row("No Match", str(result.no_match_count))
    table.add_row("Ambiguous", str(result.ambiguous_count))
    table.add_row("Mappings Upserted", str(result.mapping_upserts))
    table.add_row("Latest Prices", str(result.market_latest_written))
    table.add_row("History Points", str(result.history_points_written))
    table.add_row("Variant Metrics", str(result.variant_metrics_written))
    table.add_row("Signals Updated", str(result.signals_rows_updated))
    table.add_row("Hard Failures", str(result.hard_fail_count))
    if result.first_error:
        table.add_row("First Error", f"[red]{result.first_error}[/red]")
    console.print(table)

    counts = {code: count for code, count in result.error_counts.items() if count}
    if counts:
        errors = Table(title="Failures by Type")
        errors.add_column("Code", style="yellow")
        errors.add_column("Count", justify="right")
        for code, count in sorted(counts.items()):
            errors.add_row(code, str(count))
        console.print(errors)

    if result.failures:
        sample = Table(title=f"Failure Sample ({len(result.failures)})")
        sample.add_column("Printing", style="cyan")
        sample.add_column("Code", style="yellow")
        sample.add_column("Detail", style="white")
        for failure in result.failures:
            sample.add_row(failure.printing_id or "(run)", failure.code.value, failure.detail)
        console.print(sample)


@app.command()
def backfill(
    set_key: str = typer.Argument(..., help="Provider set key, e.g. paldea-evolved"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Fetch and match without writing anything"),
    aggressive: bool = typer.Option(True, "--aggressive/--no-aggressive",
                                    help="Start at the full history window instead of 30 days"),
    provider_set_id: Optional[str] = typer.Option(None, "--provider-set-id", help="Override the provider set id"),
    language: str = typer.Option("EN", "--language", "-l", help="Catalog language (EN only)"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
    as_json: bool = typer.Option(False, "--json", help="Print the raw result as JSON"),
):
    """Backfill provider mappings, latest prices and history for one set."""
    if not as_json:
        console.print(Panel.fit(
            f"[bold blue]Provider Backfill[/bold blue]\n[dim]{set_key} · "
            f"{'dry run' if dry_run else 'live'} · {'aggressive' if aggressive else '30d'}[/dim]",
            border_style="blue",
        ))

    try:
        result = asyncio.run(run_backfill(
            set_key,
            language=language,
            aggressive=aggressive,
            dry_run=dry_run,
            provider_set_id_override=provider_set_id,
            store=CatalogStore(db_path),
        ))
    except (ValueError, PricesyncError) as e:
        console.print(f"[red]❌ {e}[/red]")
        logger.error("Backfill could not start", set_key=set_key, error=str(e))
        raise typer.Exit(2)
    except KeyboardInterrupt:
        console.print("\n[yellow]⚠ Backfill interrupted by user[/yellow]")
        raise typer.Exit(130)

    if as_json:
        console.print_json(json.dumps(result.to_dict(), default=str))
    else:
        render_result(result)
    if not result.ok:
        raise typer.Exit(1)


@app.command("init-db")
def init_db(db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path")):
    """Create the database schema."""
    try:
        store = CatalogStore(db_path)
    except PricesyncError as e:
        console.print(f"[red]❌ {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]✓ Database ready at {store.db_path}[/green]")


@app.command("show-run")
def show_run(
    run_id: str = typer.Argument(..., help="Run id printed by backfill"),
    db_path: Optional[str] = typer.Option(None, "--db", help="SQLite database path"),
):
    """Show a stored run record."""
    record = CatalogStore(db_path).get_run(run_id)
    if record is None:
        console.print(f"[yellow]⚠ No run found with id {run_id}[/yellow]")
        raise typer.Exit(1)

    table = Table(title=f"Run {run_id}")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    for key in ("job", "source", "status", "ok", "items_fetched", "items_upserted",
                "items_failed", "started_at", "ended_at"):
        table.add_row(key, str(record.get(key)))
    meta = record.get("meta") or {}
    if isinstance(meta, dict):
        table.add_row("provider_window_used", str(meta.get("provider_window_used")))
        table.add_row("first_error", str(meta.get("first_error")))
    console.print(table)


if __name__ == "__main__":
    app()
