"""
ParcelDesk - CLI Entry Point.

Usage:
    parceldesk health        Check configuration
    parceldesk backend       Run backend selection and show the result
    parceldesk analytics     Agent performance and priority distribution
    parceldesk token EMAIL   Mint a realtime token for an account
    parceldesk serve         Start the API server
"""

import asyncio
import logging
import os
import sys
from datetime import timedelta

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="parceldesk",
    help="ParcelDesk - ticketing and broadcast monitoring backend.",
    add_completion=False,
)
console = Console()


def configure_logging(level: str | None = None) -> None:
    """Root logging from settings.log_level (or an explicit override)."""
    from parceldesk.config import get_settings

    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stderr)],
    )

    # Quiet down noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


@app.command()
def health() -> None:
    """Check configuration."""
    from parceldesk.config import get_settings

    console.print("\n[bold]ParcelDesk Health Check[/bold]\n")

    try:
        settings = get_settings()
    except Exception as e:
        console.print(f"\n[red]FAIL Configuration error: {e}[/red]")
        console.print("[dim]Make sure you have a .env file with required variables (JWT_SECRET at least).[/dim]")
        raise typer.Exit(1)

    console.print("[green]OK[/green] Configuration loaded")
    console.print(f"   Environment: {settings.desk_env}")
    console.print(f"   Log level: {settings.log_level}")
    console.print(f"   DB_BACKEND: {settings.db_backend}")

    if settings.document_store_configured:
        console.print("[green]OK[/green] Supabase configured")
    else:
        console.print("[dim]--[/dim] Supabase not configured")

    if settings.cache_enabled:
        console.print(f"[green]OK[/green] Result cache on (TTL {settings.cache_ttl_seconds}s)")
    else:
        console.print("[dim]--[/dim] Result cache off (document store still caches)")


@app.command()
def backend() -> None:
    """Run backend selection and show which backend is active."""
    from parceldesk.config import get_settings
    from parceldesk.db.facade import DatabaseFacade
    from parceldesk.errors import ConnectivityError

    configure_logging()

    async def run():
        facade = DatabaseFacade(get_settings())
        try:
            kind = await facade.start()
            stats = await facade.get_dashboard_stats()
            capabilities = [c for c in ("raw_query", "change_feed") if facade.supports(c)]
            return kind, stats, capabilities
        finally:
            await facade.close()

    try:
        kind, stats, capabilities = asyncio.run(run())
    except ConnectivityError as e:
        console.print(f"\n[red]FAIL {e}[/red]")
        raise typer.Exit(1)

    console.print(f"\n[bold]Active backend:[/bold] [green]{kind}[/green]")
    console.print(f"[dim]Optional capabilities: {', '.join(capabilities) or 'none'}[/dim]\n")

    table = Table(title="Dashboard")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for group in (stats.tickets, stats.broadcasts, stats.users):
        for name, value in group.model_dump().items():
            table.add_row(name, str(value))
    console.print(table)


@app.command()
def analytics(
    days: int = typer.Option(30, "--days", "-d", help="Window for the priority distribution"),
) -> None:
    """Show agent performance and ticket priority distribution."""
    from parceldesk.config import get_settings
    from parceldesk.db.facade import DatabaseFacade
    from parceldesk.errors import DataError

    configure_logging()

    async def run():
        facade = DatabaseFacade(get_settings())
        try:
            await facade.start()
            return await facade.get_agent_performance(), await facade.get_priority_distribution(days)
        finally:
            await facade.close()

    try:
        agents, priorities = asyncio.run(run())
    except DataError as e:
        console.print(f"\n[red]FAIL {e}[/red]")
        raise typer.Exit(1)

    table = Table(title="Agent performance")
    for column in ("Agent", "Total", "Closed", "Open", "Pending", "Resolution %", "Avg hours"):
        table.add_column(column, justify="left" if column == "Agent" else "right")
    for agent in agents:
        table.add_row(
            agent.display_name,
            str(agent.total_tickets),
            str(agent.closed_tickets),
            str(agent.open_tickets),
            str(agent.pending_tickets),
            "-" if agent.resolution_rate is None else f"{agent.resolution_rate:.2f}",
            "-" if agent.avg_resolution_hours is None else f"{agent.avg_resolution_hours:.2f}",
        )
    console.print(table)

    table = Table(title=f"Priority distribution (last {days} days)")
    table.add_column("Priority")
    table.add_column("Tickets", justify="right")
    table.add_column("Share %", justify="right")
    for share in priorities:
        table.add_row(share.priority, str(share.count), f"{share.percentage:.2f}")
    console.print(table)


@app.command()
def token(
    email: str = typer.Argument(..., help="Account email"),
    hours: int = typer.Option(24, "--hours", help="Token lifetime in hours"),
) -> None:
    """Mint a realtime token for an account (development)."""
    from parceldesk.config import get_settings
    from parceldesk.db.facade import DatabaseFacade
    from parceldesk.realtime.tokens import issue_token

    settings = get_settings()

    async def lookup():
        facade = DatabaseFacade(settings)
        try:
            await facade.start()
            return await facade.get_account_by_email(email)
        finally:
            await facade.close()

    account = asyncio.run(lookup())
    if account is None:
        console.print(f"[red]No account with email {email}[/red]")
        raise typer.Exit(1)

    # Plain echo: rich would wrap the token
    typer.echo(issue_token(
        account.id,
        settings.jwt_secret,
        role=account.role,
        ttl=timedelta(hours=hours),
        algorithm=settings.jwt_algorithm,
    ))


@app.command()
def version() -> None:
    """Show version information."""
    from parceldesk import __version__

    console.print(f"ParcelDesk version {__version__}")


@app.command()
def serve(
    port: int = typer.Option(8000, "--port", "-p", help="Port to run on"),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload for development"),
) -> None:
    """Start the API server."""
    import uvicorn

    configure_logging()
    actual_port = int(os.environ.get("PORT", port))

    console.print("\n[bold green]ParcelDesk API[/bold green]")
    console.print(f"Starting server on http://localhost:{actual_port}")
    console.print("[dim]Press Ctrl+C to stop[/dim]\n")

    uvicorn.run(
        "parceldesk.web.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=actual_port,
        reload=reload,
    )


if __name__ == "__main__":
    app()
