"""
gradetags CLI - operator commands for the tag taxonomy pipeline.

Each command runs one pipeline pass against the configured database and
prints a Rich summary. Commands exit non-zero when any item failed.
"""

import logging
from typing import Iterable, Optional

import typer
from rich.console import Console
from rich.table import Table

from gradetags.db.connection import db_session, init_db
from gradetags.logging_config import setup_logging
from gradetags.taxonomy.orchestrator import (
    LAYERS_ALL,
    LAYERS_SIGNALS,
    SCOPE_ALL,
    SCOPE_DUE,
    OwnerOutcome,
    PipelineOrchestrator,
    SweepRequest,
)
from gradetags.taxonomy.providers import LLMProvider, provider_from_settings

app = typer.Typer(
    name="gradetags",
    help="gradetags - tag, domain and ability taxonomy from grading feedback",
    no_args_is_help=True,
)

console = Console()


def _init_logging() -> None:
    # Fallback to console if file logging not permitted
    try:
        setup_logging(context="cli")
    except PermissionError:
        logging.basicConfig(level=logging.INFO)


def _load_provider() -> Optional[LLMProvider]:
    """The configured provider, or None (with a warning) when it has no API key."""
    try:
        return provider_from_settings()
    except ValueError as e:
        console.print(f"[yellow]⚠ Text generation not configured:[/yellow] {e}")
        return None


def _owner_table(title: str, outcomes: Iterable[OwnerOutcome]) -> Table:
    table = Table(title=title)
    table.add_column("Owner", style="cyan")
    table.add_column("Domain")
    table.add_column("Result")
    table.add_column("Details")
    for outcome in outcomes:
        if outcome.ok:
            result = f"[green]{outcome.status}[/green]"
            details = outcome.skipped or ", ".join(
                f"{key}={value}" for key, value in outcome.details.items()
                if not isinstance(value, dict)
            )
        else:
            result = "[red]failed[/red]"
            details = outcome.error or ""
        table.add_row(outcome.owner_id, outcome.domain or "", result, details)
    return table


def _exit_on_failures(outcomes: Iterable[OwnerOutcome]) -> None:
    if any(not outcome.ok for outcome in outcomes):
        raise typer.Exit(1)


@app.command()
def sweep(
    owner: str = typer.Option(None, "--owner", help="Limit to one owner"),
    assignment: str = typer.Option(None, "--assignment", help="Limit to one assignment"),
    force: bool = typer.Option(False, "--force", help="Ignore debounce timing"),
    all_states: bool = typer.Option(
        False,
        "--all",
        help="Also re-run ready, failed and insufficient_samples assignments",
    ),
    layers: bool = typer.Option(
        False, "--layers", help="Rebuild every domain and ability rollup of touched owners"
    ),
) -> None:
    """
    Run due assignment clustering and cascade to merge, domain and ability layers.
    """
    _init_logging()
    provider = _load_provider()
    request = SweepRequest(
        owner_id=owner,
        assignment_id=assignment,
        force=force,
        scope=SCOPE_ALL if all_states else SCOPE_DUE,
        layers=LAYERS_ALL if layers else LAYERS_SIGNALS,
    )

    with db_session() as session:
        report = PipelineOrchestrator(session, provider).sweep(request)

    table = Table(title="Assignments")
    table.add_column("Owner", style="cyan")
    table.add_column("Assignment", style="cyan")
    table.add_column("Status")
    table.add_column("Samples", justify="right")
    table.add_column("Error")
    for item in report.items:
        color = "green" if item.ok else "red"
        table.add_row(
            item.owner_id,
            item.assignment_id,
            f"[{color}]{item.status}[/{color}]",
            str(item.sample_count if item.sample_count is not None else "-"),
            item.error or "",
        )
    console.print(table)
    for title, outcomes in (
        ("Merges", report.merges),
        ("Domains", report.domains),
        ("Abilities", report.abilities),
    ):
        if outcomes:
            console.print(_owner_table(title, outcomes))

    console.print(
        f"\n[bold]Processed:[/bold] {report.processed}  "
        f"[green]ok: {report.ok}[/green]  [red]failed: {report.failed}[/red]"
    )
    if report.has_failures:
        raise typer.Exit(1)


@app.command()
def merge(
    owner: str = typer.Option(None, "--owner", help="Limit to one owner"),
    force: bool = typer.Option(
        False, "--force", help="Ignore debounce timing and retry failed merges"
    ),
) -> None:
    """Run due dictionary merges."""
    _init_logging()
    provider = _load_provider()

    with db_session() as session:
        outcomes = PipelineOrchestrator(session, provider).run_merges(
            owner_id=owner, force=force
        )

    if not outcomes:
        console.print("[yellow]No merges due[/yellow]")
        return
    console.print(_owner_table("Merges", outcomes))
    _exit_on_failures(outcomes)


@app.command()
def rollup(
    owner: str = typer.Argument(..., help="Owner id"),
    domain: str = typer.Option(None, "--domain", help="Refresh only this domain"),
) -> None:
    """Recompute domain rollups (no model call)."""
    _init_logging()

    with db_session() as session:
        outcome = PipelineOrchestrator(session).run_domain(owner, domain)

    console.print(_owner_table("Domains", [outcome]))
    _exit_on_failures([outcome])


@app.command()
def abilities(
    owner: str = typer.Argument(..., help="Owner id"),
) -> None:
    """Remap tags to ability categories and refresh the ability rollup."""
    _init_logging()
    provider = _load_provider()

    with db_session() as session:
        outcome = PipelineOrchestrator(session, provider).run_ability(owner)

    console.print(_owner_table("Abilities", [outcome]))
    _exit_on_failures([outcome])


@app.command("init-db")
def init_db_command() -> None:
    """
    Create all tables directly.

    Prefer `alembic upgrade head` in production.
    """
    _init_logging()
    init_db()
    console.print("[green]✓ Database tables created[/green]")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind to"),
    port: int = typer.Option(8000, help="Port to bind to"),
    reload: bool = typer.Option(False, help="Enable auto-reload"),
) -> None:
    """
    Start the FastAPI server.

    Runs the gradetags API for the grading-sync hook and administrative calls.
    """
    import uvicorn

    console.print("[bold green]Starting gradetags API server...[/bold green]")
    console.print(f"  Host: {host}")
    console.print(f"  Port: {port}")
    console.print(f"  Reload: {reload}")
    console.print(f"\n  API docs: http://{host}:{port}/docs")

    uvicorn.run(
        "gradetags.api.app:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    app()
