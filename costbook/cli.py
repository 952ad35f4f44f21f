"""costbook CLI.

Commands:
- init: Initialize database schema
- confirm: Confirm a draft library item
- bulk-status: Move many items to a status
- history: Show an item's version history
- rates-compare: Compare current rates of two projects
- rates-import: Import rates from one project into another
- rates-delete-scheduled: Delete future-dated rates before they take effect
- jobs popularity|snapshots|history|cleanup: Run remote jobs / inspect the job log
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from costbook.config import get_config
from costbook.core.logging import bind_actor, configure_logging
from costbook.db.connection import close_db, get_session, init_db
from costbook.exceptions import CostbookError
from costbook.jobs import BackgroundJobService, FunctionsClient
from costbook.library import LibraryManagementService
from costbook.models import (
    ConflictResolution,
    JobResult,
    LibraryItemStatus,
    RateCategory,
    RateImportOptions,
)
from costbook.rates import ProjectRatesService

app = typer.Typer(
    name="costbook",
    help="costbook - Construction cost library and project rates",
    no_args_is_help=True,
)
jobs_cli = typer.Typer(help="Background jobs")
app.add_typer(jobs_cli, name="jobs")

console = Console()

T = TypeVar("T")


@app.callback()
def main(
    actor: str | None = typer.Option(None, "--actor", help="User recorded on changes"),
    log_level: str | None = typer.Option(None, "--log-level", help="Logging level"),
):
    configure_logging(get_config(), log_level)
    if actor:
        get_config().default_actor = actor
    bind_actor(get_config().default_actor)


def _run(work: Callable[[], Awaitable[T]]) -> T:
    async def _wrapped() -> T:
        try:
            return await work()
        finally:
            await close_db()

    try:
        return asyncio.run(_wrapped())
    except CostbookError as exc:
        console.print(f"[bold red]✗ {exc.code}:[/bold red] {exc}")
        raise typer.Exit(code=1) from exc


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")
    if drop:
        console.print("[yellow]Dropping existing tables...[/yellow]")

    _run(lambda: init_db(drop=drop))
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def confirm(
    item_id: UUID = typer.Argument(..., help="Library item ID"),
    notes: str | None = typer.Option(None, "--notes", help="Confirmation notes"),
):
    """Confirm a draft library item (draft -> confirmed)."""

    async def _confirm():
        async with get_session() as session:
            return await LibraryManagementService(session).confirm_library_item(item_id, notes)

    item = _run(_confirm)
    console.print(f"[bold green]✓[/bold green] {item.code} confirmed (version {item.version})")


@app.command(name="bulk-status")
def bulk_status(
    status: LibraryItemStatus = typer.Argument(..., help="Target status"),
    item_ids: list[UUID] = typer.Argument(..., help="Library item IDs"),
    notes: str | None = typer.Option(None, "--notes", help="Notes appended to each item"),
):
    """Move many items to a status. Each item succeeds or fails on its own."""

    async def _bulk():
        async with get_session() as session:
            service = LibraryManagementService(session)
            return await service.bulk_update_status(item_ids, status, notes)

    result = _run(_bulk)
    console.print(
        f"[green]✓[/green] {result.successful} successful, "
        f"[red]✗[/red] {result.failed} failed"
    )
    for error in result.errors:
        console.print(f"  {error}", style="dim")


@app.command()
def history(
    item_id: UUID = typer.Argument(..., help="Library item ID"),
):
    """Show an item's version history, newest first."""

    async def _history():
        async with get_session() as session:
            return await LibraryManagementService(session).get_version_history(item_id)

    versions = _run(_history)
    if not versions:
        console.print("[yellow]No versions recorded[/yellow]")
        return

    table = Table(title=f"Versions of {item_id}")
    table.add_column("Version", justify="right", style="cyan")
    table.add_column("Created", style="green")
    table.add_column("By")
    table.add_column("Note", style="yellow")
    table.add_column("ID", style="dim")
    for version in versions:
        table.add_row(
            str(version.version_number),
            version.created_at.isoformat(timespec="seconds"),
            version.created_by or "-",
            version.change_note or "",
            str(version.id),
        )
    console.print(table)


@app.command(name="rates-compare")
def rates_compare(
    source: str = typer.Argument(..., help="Source project ID"),
    target: str = typer.Argument(..., help="Target project ID"),
    changed_only: bool = typer.Option(False, "--changed-only", help="Hide unchanged rates"),
):
    """Compare the current rates of two projects."""

    async def _compare():
        async with get_session() as session:
            return await ProjectRatesService(session).compare_project_rates(source, target)

    comparisons = _run(_compare)
    if changed_only:
        comparisons = [c for c in comparisons if c.action.value != "unchanged"]
    if not comparisons:
        console.print("[yellow]No rates to compare[/yellow]")
        return

    table = Table(title=f"Rates: {source} → {target}")
    table.add_column("Category", style="cyan")
    table.add_column("Code")
    table.add_column("Name")
    table.add_column("Source", justify="right")
    table.add_column("Target", justify="right")
    table.add_column("Diff %", justify="right")
    table.add_column("Action", style="yellow")
    for comparison in comparisons:
        table.add_row(
            comparison.category.value,
            comparison.item_code,
            comparison.item_name,
            f"{comparison.source_rate:,.2f}",
            f"{comparison.target_rate:,.2f}",
            f"{comparison.percentage_change:+.1f}",
            comparison.action.value,
        )
    console.print(table)


@app.command(name="rates-import")
def rates_import(
    source: str = typer.Argument(..., help="Source project ID"),
    target: str = typer.Argument(..., help="Target project ID"),
    category: list[RateCategory] | None = typer.Option(
        None, "--category", help="Categories to import (default: all)"
    ),
    conflict: ConflictResolution = typer.Option(
        ConflictResolution.OVERWRITE, "--conflict", help="Conflict resolution"
    ),
):
    """Import rates from one project into another."""
    options: dict[str, Any] = {
        "source_project_id": source,
        "target_project_id": target,
        "conflict_resolution": conflict,
    }
    if category:
        options["categories"] = category

    async def _import():
        async with get_session() as session:
            service = ProjectRatesService(session)
            return await service.import_rates_from_project(RateImportOptions(**options))

    result = _run(_import)
    console.print(
        f"[bold green]✓[/bold green] Imported {result.imported}, skipped {result.skipped}"
    )
    for name, count in result.details.items():
        console.print(f"  {name}: {count}")
    for warning in result.warnings:
        console.print(f"  [yellow]⚠[/yellow] {warning}")


@app.command(name="rates-delete-scheduled")
def rates_delete_scheduled(
    project_id: str = typer.Argument(..., help="Project ID"),
    effective_date: datetime = typer.Argument(..., help="Scheduled effective date (UTC)"),
    reason: str | None = typer.Option(None, "--reason", help="Reason recorded in the audit log"),
):
    """Delete rates scheduled for a future date before they take effect."""
    if effective_date.tzinfo is None:
        effective_date = effective_date.replace(tzinfo=timezone.utc)

    async def _delete():
        async with get_session() as session:
            return await ProjectRatesService(session).delete_future_rates(
                project_id, effective_date, reason
            )

    removed = _run(_delete)
    console.print(f"[bold green]✓[/bold green] Deleted {removed} scheduled rate row(s)")


def _functions_client() -> FunctionsClient:
    """Build the remote jobs client, exiting cleanly when it is not configured."""
    try:
        return FunctionsClient.from_config(get_config().jobs)
    except ValueError as exc:
        console.print(f"[bold red]✗[/bold red] {exc}")
        raise typer.Exit(code=1) from exc


def _print_job_result(name: str, result: JobResult) -> None:
    if result.success:
        console.print(f"[bold green]✓[/bold green] {name} completed in {result.duration_ms:.0f}ms")
    else:
        console.print(f"[bold red]✗[/bold red] {name} failed: {result.error}")
        raise typer.Exit(code=1)


@jobs_cli.command("popularity")
def jobs_popularity():
    """Run library popularity aggregation."""
    client = _functions_client()

    async def _job():
        try:
            async with get_session() as session:
                return await BackgroundJobService(session, client).run_popularity_aggregation()
        finally:
            await client.close()

    _print_job_result("Popularity aggregation", _run(_job))


@jobs_cli.command("snapshots")
def jobs_snapshots():
    """Capture price snapshots for all active projects."""
    client = _functions_client()

    async def _job():
        try:
            async with get_session() as session:
                return await BackgroundJobService(session, client).run_price_snapshots()
        finally:
            await client.close()

    result = _run(_job)
    if result.data:
        console.print(
            f"Processed {result.data['processed']} projects: "
            f"{result.data['successful']} successful, {result.data['failed']} failed"
        )
    _print_job_result("Price snapshots", result)


@jobs_cli.command("history")
def jobs_history(
    job_name: str | None = typer.Option(None, "--job", help="Filter by job name"),
    limit: int = typer.Option(20, "--limit", help="Rows to show"),
):
    """Show recent job runs."""

    async def _history():
        async with get_session() as session:
            service = BackgroundJobService(session, client=None)
            return await service.get_job_history(job_name, limit)

    entries = _run(_history)
    table = Table(title="Job History")
    table.add_column("Job", style="cyan")
    table.add_column("Status")
    table.add_column("Started", style="green")
    table.add_column("Duration (ms)", justify="right")
    table.add_column("Error", style="red")
    for entry in entries:
        table.add_row(
            entry.job_name,
            entry.status.value,
            entry.started_at.isoformat(timespec="seconds"),
            f"{entry.duration_ms:.0f}" if entry.duration_ms is not None else "-",
            entry.error_message or "",
        )
    console.print(table)


@jobs_cli.command("cleanup")
def jobs_cleanup(
    retention_days: int | None = typer.Option(None, "--days", help="Keep logs newer than this"),
):
    """Delete old job log rows."""

    async def _cleanup():
        async with get_session() as session:
            return await BackgroundJobService(session, client=None).cleanup_old_logs(
                retention_days
            )

    removed = _run(_cleanup)
    console.print(f"[bold green]✓[/bold green] Removed {removed} job log rows")


if __name__ == "__main__":
    app()
