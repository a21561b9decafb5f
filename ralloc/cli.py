"""CLI interface for the allocation service.

Provides commands for:
- Starting the HTTP server
- Initialising and migrating the ledger store
- Inspecting allocations and their audit trail
"""

import asyncio

import click
import uvicorn

from ralloc import __version__
from ralloc.config import get_settings
from ralloc.db import create_db_engine, create_session_factory, init_db
from ralloc.ledger import AllocationLedger


def _ledger_call(func):
    """Run ``func(ledger)`` against the configured store and dispose of the engine."""

    async def runner():
        settings = get_settings()
        engine = create_db_engine(settings.database_url)
        try:
            await init_db(engine)
            return await func(AllocationLedger(create_session_factory(engine)))
        finally:
            await engine.dispose()

    return asyncio.run(runner())


def _state_style(state: str) -> str:
    colours = {
        "pending": "yellow",
        "approved": "green",
        "active": "cyan",
        "rejected": "red",
        "cancelled": "red",
    }
    return click.style(state, fg=colours.get(state, "white"))


@click.group()
@click.version_option(version=__version__, prog_name="ralloc")
def cli() -> None:
    """ralloc - resource allocation engine.

    Commits resource capacity to projects without ever overcommitting.
    """
    pass


@cli.command()
@click.option("--host", "-h", default=None, help="Host to bind to")
@click.option("--port", "-p", default=None, type=int, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development")
def serve(host: str | None, port: int | None, reload: bool) -> None:
    """Start the allocation HTTP server."""
    settings = get_settings()

    actual_host = host or settings.host
    actual_port = port or settings.port

    click.echo(f"Starting ralloc server on {actual_host}:{actual_port}")

    uvicorn.run(
        "ralloc.server:create_app",
        factory=True,
        host=actual_host,
        port=actual_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@cli.group()
def ledger() -> None:
    """Ledger store commands."""
    pass


@ledger.command("init")
def ledger_init() -> None:
    """Create the ledger schema and apply pending migrations."""

    async def version(store: AllocationLedger) -> int:
        return await store.current_version()

    snapshot = _ledger_call(version)
    click.echo(f"Ledger ready at {get_settings().database_url} (snapshot version {snapshot})")


@ledger.command("list")
@click.option("--resource", "resource_id", default=None, help="Filter by resource id")
@click.option("--project", "project_id", default=None, help="Filter by project id")
def ledger_list(resource_id: str | None, project_id: str | None) -> None:
    """List allocations, optionally for one resource or project."""

    async def fetch(store: AllocationLedger):
        return await store.list_records(resource_id=resource_id, project_id=project_id)

    records = _ledger_call(fetch)
    if not records:
        click.echo("No allocations.")
        return

    click.echo(f"Allocations ({len(records)}):\n")
    for record in records:
        click.echo(
            f"  {click.style(record.id, bold=True)}  {_state_style(record.state.value)}"
        )
        click.echo(
            f"    {record.resource_id} -> {record.project_id}  {record.percentage}%  "
            f"[{record.start_at.isoformat()}, {record.end_at.isoformat()})  v{record.version}"
        )


@ledger.command("history")
@click.argument("allocation_id")
def ledger_history(allocation_id: str) -> None:
    """Show the audit trail of one allocation."""

    async def fetch(store: AllocationLedger):
        return await store.history(allocation_id)

    rows = _ledger_call(fetch)
    if not rows:
        raise click.ClickException(f"Allocation '{allocation_id}' not found.")

    for row in rows:
        prior = row.from_state.value if row.from_state else "-"
        click.echo(
            f"  #{row.seq}  {row.recorded_at.isoformat()}  {prior} -> "
            f"{_state_style(row.to_state.value)}  by {row.actor}"
            + (f"  ({row.reason})" if row.reason else "")
        )


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
