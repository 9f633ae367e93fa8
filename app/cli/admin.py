"""
NIMBUS - CLI Admin Commands
Command-line interface for operating the weather-wager engine
"""

import asyncio
import signal
import logging
from contextlib import asynccontextmanager
from typing import Optional, Tuple
from uuid import UUID

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

console = Console()
logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    from app.core.config import get_settings

    logging.basicConfig(
        level=getattr(logging, get_settings().LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@asynccontextmanager
async def _services():
    """Database, weather clients and the betting services for one command"""
    from app.core.database import get_database_manager
    from app.services.betting import create_betting_system
    from app.services.weather import WeatherService

    db_manager = get_database_manager()
    await db_manager.initialize()
    weather = WeatherService()
    try:
        yield db_manager, create_betting_system(db_manager, weather)
    finally:
        await weather.close()
        await db_manager.close()


@click.group()
def cli():
    """NIMBUS - Weather-Wager Engine"""
    pass


# ============== Worker Command ==============

@cli.command()
@click.option("--no-scheduler", is_flag=True, help="Disable the settlement scheduler")
@click.option("--no-poller", is_flag=True, help="Disable the auto cash-out poller")
def worker(no_scheduler: bool, no_poller: bool):
    """
    Run the background worker.

    Starts the settlement scheduler (bet resolution every GRADING_INTERVAL
    seconds, nightly accuracy summaries) and the auto cash-out poller.
    """
    from app.core.config import get_settings

    settings = get_settings()

    console.print(Panel.fit(
        "[bold green]NIMBUS[/bold green]\n"
        "Background Worker Service",
        title="Worker Starting"
    ))

    console.print(f"Environment: {settings.environment}")
    console.print(f"Scheduler Enabled: {not no_scheduler}")
    console.print(f"Cash-out Poller Enabled: {not no_poller}")

    _setup_logging()

    async def run_worker():
        from app.core.database import init_db
        from app.services.scheduling import SchedulerService

        scheduler = None
        poller = None

        async with _services() as (db_manager, services):
            try:
                await init_db()
                console.print("[green]✓[/green] Database connected")

                if not no_scheduler:
                    scheduler = SchedulerService(services['resolver'], db_manager, services['accuracy'])
                    scheduler.initialize()
                    await scheduler.start()
                    console.print("[green]✓[/green] Scheduler started")

                if not no_poller and settings.CASHOUT_ENABLED:
                    poller = services['poller']
                    await poller.start()
                    console.print("[green]✓[/green] Cash-out poller started")

                console.print("\n[bold green]Worker is running![/bold green]")
                console.print("Press Ctrl+C to stop\n")

                stop_event = asyncio.Event()

                def signal_handler():
                    console.print("\n[yellow]Shutdown signal received...[/yellow]")
                    stop_event.set()

                loop = asyncio.get_running_loop()
                for sig in (signal.SIGTERM, signal.SIGINT):
                    try:
                        loop.add_signal_handler(sig, signal_handler)
                    except NotImplementedError:
                        # Windows doesn't support add_signal_handler
                        pass

                await stop_event.wait()

            except Exception as e:
                console.print(f"[red]✗[/red] Worker error: {e}")
                logger.exception("Worker failed")
                raise
            finally:
                console.print("[yellow]Shutting down worker...[/yellow]")
                if poller:
                    await poller.stop()
                    console.print("[green]✓[/green] Cash-out poller stopped")
                if scheduler:
                    await scheduler.stop()
                    console.print("[green]✓[/green] Scheduler stopped")

        console.print("[green]Worker stopped[/green]")

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        console.print("\n[yellow]Worker interrupted[/yellow]")


# ============== Database Commands ==============

@cli.group()
def db():
    """Database management commands"""
    pass


@db.command()
def init():
    """Initialize database tables"""
    console.print("[yellow]Initializing database tables...[/yellow]")

    async def run():
        from app.core.database import get_database_manager

        db_manager = get_database_manager()
        await db_manager.initialize()
        await db_manager.create_tables()
        await db_manager.close()
        console.print("[green]✓[/green] Database tables created successfully")

    asyncio.run(run())


# ============== Odds Commands ==============

@cli.command()
@click.argument("city")
@click.option("--days-ahead", "-d", default=1, help="1 = today, 2 = tomorrow, ...")
def odds(city: str, days_ahead: int):
    """Show the odds board for a city"""

    async def run():
        async with _services() as (_, services):
            board = await services['odds'].board(city, days_ahead)

        tbl = Table(title=f"Odds for {city} (day {days_ahead})")
        tbl.add_column("Category", style="cyan")
        tbl.add_column("Prediction")
        tbl.add_column("Probability", justify="right")
        tbl.add_column("Odds", justify="right", style="green")
        tbl.add_column("Difficulty")

        for category in board:
            for option in category['options']:
                tbl.add_row(
                    category['display_name'],
                    option['label'],
                    f"{option['probability']:.2f}",
                    f"{option['final_odds']:.2f}",
                    option['difficulty']['level'],
                )
        console.print(tbl)

    asyncio.run(run())


# ============== Settlement Commands ==============

@cli.command()
@click.argument("city")
@click.option("--category", "-c", "categories", multiple=True, help="Categories to verify (default: all)")
def verify(city: str, categories: Tuple[str, ...]):
    """Fetch both weather sources for a city and log the comparison"""
    _setup_logging()

    async def run():
        from app.core.exceptions import PrimarySourceUnavailableError

        async with _services() as (db_manager, services):
            try:
                async with db_manager.session() as session:
                    report = await services['settlement'].verify(session, city, categories or None)
            except PrimarySourceUnavailableError as e:
                console.print(f"[red]✗[/red] {e.message}")
                raise SystemExit(1)

        tbl = Table(title=f"Verification for {city}")
        tbl.add_column("Category", style="cyan")
        tbl.add_column("Primary")
        tbl.add_column("Secondary")
        tbl.add_column("Final", style="green")
        tbl.add_column("Confidence", justify="right")
        tbl.add_column("Disputed")

        for result in report.results:
            tbl.add_row(
                result.category.value,
                result.primary_value,
                result.secondary_value or "-",
                result.final_value,
                f"{result.confidence_score}%",
                "[red]yes[/red]" if result.is_disputed else "no",
            )
        console.print(tbl)
        if not report.all_sources_available:
            console.print("[yellow]⚠[/yellow] Secondary source unavailable; primary values used")

    asyncio.run(run())


@cli.command()
def resolve():
    """Verify and grade every due bet now"""
    _setup_logging()

    async def run():
        async with _services() as (_, services):
            summary = await services['resolver'].resolve_pending(raise_on_failure=False)

        tbl = Table(title="Resolution Summary")
        tbl.add_column("City", style="cyan")
        tbl.add_column("Wins", justify="right", style="green")
        tbl.add_column("Losses", justify="right", style="red")
        tbl.add_column("Skipped", justify="right")
        tbl.add_column("Parlays", justify="right")

        for city, report in summary.cities.items():
            if city in summary.failed_cities:
                continue
            tbl.add_row(
                city,
                str(report['wins']),
                str(report['losses']),
                str(report['skipped']),
                str(report['parlays_settled']),
            )
        console.print(tbl)
        for city in summary.failed_cities:
            console.print(f"[red]✗[/red] {city}: primary source unavailable")

    asyncio.run(run())


@cli.group()
def disputes():
    """Dispute administration"""
    pass


@disputes.command("list")
@click.option("--limit", "-n", default=50, help="Maximum entries to show")
def list_disputes(limit: int):
    """Show open disputes"""

    async def run():
        async with _services() as (db_manager, services):
            async with db_manager.session() as session:
                entries = await services['settlement'].list_disputes(session, limit)

                tbl = Table(title="Open Disputes")
                tbl.add_column("ID", style="dim")
                tbl.add_column("City", style="cyan")
                tbl.add_column("Category")
                tbl.add_column("Primary")
                tbl.add_column("Secondary")
                tbl.add_column("Final", style="green")
                tbl.add_column("Confidence", justify="right")

                for entry in entries:
                    tbl.add_row(
                        str(entry.id),
                        entry.city,
                        entry.category,
                        entry.primary_value,
                        entry.secondary_value or "-",
                        entry.final_value,
                        f"{entry.confidence_score}%",
                    )
        console.print(tbl)

    asyncio.run(run())


@disputes.command("bulk")
@click.argument("action", type=click.Choice(["use_primary", "use_secondary", "use_average"]))
@click.option("--admin-id", default="cli", help="Recorded as the resolving administrator")
def bulk_resolve(action: str, admin_id: str):
    """Resolve every open dispute with one rule"""
    from app.services.betting.settlement import BulkAction

    if not click.confirm(f"Resolve all open disputes with {action}?"):
        console.print("[yellow]Aborted[/yellow]")
        return

    async def run():
        async with _services() as (db_manager, services):
            async with db_manager.session() as session:
                resolved = await services['settlement'].bulk_resolve(session, BulkAction(action), admin_id)
        console.print(f"[green]✓[/green] Resolved {resolved} disputes")

    asyncio.run(run())


# ============== Ledger Commands ==============

@cli.command()
@click.argument("user_id")
@click.option("--currency", type=click.Choice(["virtual", "real"]), default="virtual")
def reconcile(user_id: str, currency: str):
    """Check a user's ledger chain against their stored balance"""
    from app.models import CurrencyType

    async def run():
        async with _services() as (db_manager, services):
            async with db_manager.session() as session:
                result = await services['ledger'].reconcile(session, UUID(user_id), CurrencyType(currency))

        status_str = "[green]● Consistent[/green]" if result.is_consistent else "[red]● Broken[/red]"
        console.print(Panel.fit(
            f"Balance: {result.balance}\n"
            f"Ledger balance: {result.ledger_balance}\n"
            f"Entries: {result.entries}\n"
            f"Broken entries: {len(result.broken_entries)}\n"
            f"Status: {status_str}",
            title=f"Ledger {user_id} ({currency})"
        ))
        if not result.is_consistent:
            raise SystemExit(1)

    asyncio.run(run())


# ============== System Commands ==============

@cli.command()
def status():
    """Show system status"""
    console.print(Panel.fit(
        "[bold green]NIMBUS[/bold green]\n"
        "Weather-Wager Engine",
        title="System Status"
    ))

    async def run():
        from app.core.database import get_database_manager
        from app.services.weather import WeatherService

        components = []

        db_manager = get_database_manager()
        await db_manager.initialize()
        health = await db_manager.health_check()
        await db_manager.close()
        components.append(("Database", health.get("status") == "healthy"))

        weather = WeatherService()
        for provider in (weather.primary, weather.secondary):
            components.append(
                (f"Weather: {provider.name}", provider.circuit_breaker.state.value == "closed")
            )
        await weather.close()

        tbl = Table()
        tbl.add_column("Component")
        tbl.add_column("Status")

        for name, healthy in components:
            status_str = "[green]● Healthy[/green]" if healthy else "[red]● Down[/red]"
            tbl.add_row(name, status_str)

        console.print(tbl)

    asyncio.run(run())


# ============== Server Command ==============

@cli.command()
@click.option("--host", "-h", default=None, help="Host to bind")
@click.option("--port", "-p", default=None, type=int, help="Port to bind")
@click.option("--reload", is_flag=True, help="Enable auto-reload")
@click.option("--workers", "-w", default=1, help="Number of workers")
def serve(host: Optional[str], port: Optional[int], reload: bool, workers: int):
    """Start the API server"""
    import uvicorn
    from app.core.config import get_settings

    settings = get_settings()
    host = host or settings.HOST
    port = port or settings.PORT

    console.print(Panel.fit(
        "[bold green]NIMBUS[/bold green]\n"
        f"Starting API server on {host}:{port}",
        title="Server"
    ))

    uvicorn.run(
        "app.main:app",
        host=host,
        port=port,
        reload=reload,
        workers=workers if not reload else 1,
        log_level="info",
    )


if __name__ == "__main__":
    cli()
