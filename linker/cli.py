"""
Linker: command line for the knowledge point core.

An operator/developer surface over the repository and reconciliation
service. Works in guest mode (no token) against the on-device store, and
against the backend once LINKER_API_TOKEN is set.

Commands:
- linker list       - Show knowledge points
- linker add        - Create a knowledge point
- linker review     - Record an answer for a point
- linker archive    - Archive one or more points
- linker unarchive  - Restore an archived point
- linker delete     - Delete a point
- linker sync       - Promote guest points to the backend
- linker status     - Show sync status
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from config import get_settings
from linker.container import Services, build_services
from linker.core.errors import LinkerError
from linker.core.identity import effective_id
from linker.core.mastery import MasteryTier, Severity
from linker.core.models import KnowledgePoint
from linker.observability import configure_logging
from linker.sync.reconciliation import SyncTrigger

T = TypeVar("T")


# =============================================================================
# CLI Setup
# =============================================================================

app = typer.Typer(
    name="linker",
    help="Linker: knowledge point manager",
    no_args_is_help=True,
)
console = Console()


def _run(action: Callable[[Services], Awaitable[T]]) -> T:
    """Build services, run ``action`` on an event loop, always clean up."""

    async def runner() -> T:
        services = build_services(get_settings())
        try:
            return await action(services)
        finally:
            await services.aclose()

    try:
        return asyncio.run(runner())
    except LinkerError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


# =============================================================================
# Display Helpers
# =============================================================================

def _tier_label(point: KnowledgePoint) -> str:
    tier = MasteryTier.from_level(point.mastery_level)
    return f"[{tier.color}]{tier.display_name}[/{tier.color}]"


def _points_table(points: list[KnowledgePoint], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim")
    table.add_column("Category")
    table.add_column("Correct phrase", style="bold")
    table.add_column("Mastery", justify="right")
    table.add_column("Tier")
    table.add_column("Next review")
    table.add_column("Origin")

    for point in points:
        next_review = (
            point.next_review_date.strftime("%Y-%m-%d %H:%M") if point.next_review_date else "-"
        )
        origin = "[yellow]local[/yellow]" if point.is_local_only else "[green]remote[/green]"
        table.add_row(
            effective_id(point),
            point.category,
            point.correct_phrase,
            f"{point.mastery_level:.2f}",
            _tier_label(point),
            next_review,
            origin,
        )
    return table


# =============================================================================
# Commands
# =============================================================================

@app.command("list")
def list_points(
    archived: bool = typer.Option(False, "--archived", "-a", help="Show archived points"),
    tier: Optional[MasteryTier] = typer.Option(None, "--tier", "-t", help="Filter by tier"),
    category: Optional[str] = typer.Option(None, "--category", "-c", help="Filter by category"),
    due: bool = typer.Option(False, "--due", help="Only points due for review"),
    refresh: bool = typer.Option(False, "--refresh", "-r", help="Bypass the cache"),
) -> None:
    """Show knowledge points, weakest first."""

    async def action(services: Services) -> list[KnowledgePoint]:
        repo = services.repository
        if archived:
            points = await repo.fetch_archived(force=refresh)
        else:
            points = await repo.fetch_active(force=refresh)
        return repo.query(points, tier=tier, category=category, due_only=due)

    points = _run(action)
    if not points:
        console.print("[dim]No knowledge points.[/dim]")
        return
    console.print(_points_table(points, "Archived" if archived else "Knowledge Points"))


@app.command()
def add(
    category: str = typer.Argument(..., help="Error category"),
    correct_phrase: str = typer.Argument(..., help="The corrected phrase"),
    subcategory: str = typer.Option("", "--subcategory", "-s", help="Error subcategory"),
    explanation: Optional[str] = typer.Option(None, "--explanation", "-e"),
    context: Optional[str] = typer.Option(None, "--context", help="Sentence the mistake came from"),
    incorrect: Optional[str] = typer.Option(None, "--incorrect", "-i", help="The wrong phrase as written"),
) -> None:
    """Create a knowledge point (on-device in guest mode)."""
    point = KnowledgePoint(
        category=category,
        subcategory=subcategory,
        correct_phrase=correct_phrase,
        explanation=explanation,
        user_context_sentence=context,
        incorrect_phrase_in_context=incorrect,
    )
    created = _run(lambda services: services.repository.create(point))
    console.print(f"[green]Created {effective_id(created)}[/green] ({created.origin.value})")


@app.command()
def review(
    point_id: str = typer.Argument(..., help="Effective ID of the point"),
    correct: bool = typer.Option(True, "--correct/--incorrect", help="Was the answer correct?"),
    severity: Optional[Severity] = typer.Option(None, "--severity", help="Mistake severity"),
) -> None:
    """Record one answer and show the new schedule."""
    updated = _run(
        lambda services: services.repository.update_mastery(point_id, correct, severity)
    )
    next_review = updated.next_review_date.strftime("%Y-%m-%d %H:%M") if updated.next_review_date else "-"
    console.print(Panel(
        f"Mastery: [bold]{updated.mastery_level:.2f}[/bold] ({_tier_label(updated)})\n"
        f"Correct / mistakes: {updated.correct_count} / {updated.mistake_count}\n"
        f"Next review: {next_review}",
        title=updated.correct_phrase,
        border_style="green" if correct else "red",
    ))


@app.command()
def archive(
    point_ids: list[str] = typer.Argument(..., help="Effective IDs to archive"),
) -> None:
    """Archive one or more points."""
    if len(point_ids) == 1:
        _run(lambda services: services.repository.archive(point_ids[0]))
    else:
        _run(lambda services: services.repository.batch_archive(point_ids))
    console.print(f"[green]Archived {len(point_ids)} point(s)[/green]")


@app.command()
def unarchive(
    point_id: str = typer.Argument(..., help="Effective ID to restore"),
) -> None:
    """Restore an archived point."""
    _run(lambda services: services.repository.unarchive(point_id))
    console.print(f"[green]Restored {point_id}[/green]")


@app.command()
def delete(
    point_id: str = typer.Argument(..., help="Effective ID to delete"),
    confirm: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a point permanently."""
    if not confirm and not Confirm.ask(f"Delete {point_id}? This cannot be undone!", default=False):
        raise typer.Exit(0)
    _run(lambda services: services.repository.delete(point_id))
    console.print(f"[green]Deleted {point_id}[/green]")


@app.command()
def sync() -> None:
    """Promote guest points to the backend."""
    result = _run(lambda services: services.reconciliation.sync_pending(SyncTrigger.REFRESH))
    if result is None:
        console.print("[yellow]Nothing synced: set LINKER_API_TOKEN to sign in.[/yellow]")
        return

    console.print(f"[green]Promoted {len(result.promoted)} point(s)[/green]")
    if result.conflicts:
        table = Table(title="Not synced")
        table.add_column("ID", style="dim")
        table.add_column("Reason")
        table.add_column("Retry")
        for conflict in result.conflicts:
            table.add_row(conflict.effective_id, conflict.reason, "yes" if conflict.retryable else "no")
        console.print(table)


@app.command()
def status() -> None:
    """Show sync status."""

    async def action(services: Services):
        return services.client.authenticated, services.reconciliation.status()

    authenticated, sync_status = _run(action)

    table = Table(show_header=False, box=None)
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold")
    table.add_row("Mode", "signed in" if authenticated else "guest")
    table.add_row("Pending guest points", str(sync_status.pending_count))
    last = sync_status.last_sync.strftime("%Y-%m-%d %H:%M") if sync_status.last_sync else "never"
    table.add_row("Last sync", last)

    console.print(f"\n[bold cyan]{sync_status.summary}[/bold cyan]")
    console.print(table)


# =============================================================================
# Entry Point
# =============================================================================

@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
) -> None:
    """Configure logging before any command runs."""
    configure_logging(get_settings(), level="DEBUG" if verbose else "WARNING")


def run() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    run()
