"""CLI for loco-tracker.

Commands:
    init-db              - Create database tables
    collect              - Run one collection cycle and exit
    run                  - Run the periodic collector until interrupted
    lookup <loco_no>     - Fetch a loco's live position (and cache it)
    history <loco_no>    - Show cached positions for a loco
    purge                - Delete positions past the retention window
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Awaitable, Callable
from typing import Annotated, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from loco_tracker.collection.live import LiveLookupError
from loco_tracker.collection.orchestrator import CollectorStartupError, CycleReport
from loco_tracker.config import settings
from loco_tracker.container import ServiceContainer
from loco_tracker.logging_setup import configure_logging
from loco_tracker.models.observation import PositionOut
from loco_tracker.storage.store import DEFAULT_HISTORY_LIMIT

app = typer.Typer(
    name="loco-tracker",
    help="loco-tracker — live locomotive position collector",
    no_args_is_help=True,
)
console = Console()

T = TypeVar("T")


def run_async(coro):
    """Run an async coroutine in sync context."""
    return asyncio.run(coro)


async def with_services(body: Callable[[ServiceContainer], Awaitable[T]]) -> T:
    """Build a container, run ``body`` with it, and always close it."""
    services = ServiceContainer.build()
    try:
        return await body(services)
    finally:
        await services.aclose()


@app.callback()
def main(
    log_level: Annotated[
        str, typer.Option("--log-level", "-l", help="Logging level")
    ] = settings.log_level,
) -> None:
    configure_logging(log_level)


@app.command("init-db")
def init_db() -> None:
    """Create database tables."""

    async def _init(services: ServiceContainer) -> None:
        await services.store.init_schema()

    run_async(with_services(_init))
    console.print("[green]Database initialised.[/green]")


def _report_table(report: CycleReport) -> Table:
    table = Table(title="Collection cycle")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Active locos", str(report.directory_size))
    table.add_row("Fetched", str(report.fetched))
    table.add_row("Fetch failures", str(report.failed))
    table.add_row("No data", str(report.no_data))
    table.add_row("Rejected", str(report.rejected))
    table.add_row("Added", str(report.inserted))
    table.add_row("Modified", str(report.updated))
    table.add_row("Write failures", str(report.write_failed))
    table.add_row("Duration", f"{report.duration_seconds:.1f}s")
    return table


@app.command()
def collect() -> None:
    """Run a single collection cycle (for cron-style deployments)."""

    async def _collect(services: ServiceContainer) -> CycleReport | None:
        await services.orchestrator.connect()
        return await services.orchestrator.collect_cycle()

    try:
        report = run_async(with_services(_collect))
    except CollectorStartupError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    if report is None:
        console.print("[yellow]A cycle is already running.[/yellow]")
        raise typer.Exit(1)
    if report.skipped:
        console.print("[yellow]Cycle skipped: store not connected.[/yellow]")
        raise typer.Exit(1)

    console.print(_report_table(report))
    if report.error:
        console.print(f"[red]Error:[/red] {report.error}")
        raise typer.Exit(1)


@app.command()
def run(
    interval: Annotated[
        float | None,
        typer.Option("--interval", "-i", help="Seconds between cycle starts"),
    ] = None,
) -> None:
    """Run the collector every interval until SIGINT/SIGTERM."""

    async def _run(services: ServiceContainer) -> None:
        if interval is not None:
            services.orchestrator.interval = interval

        loop = asyncio.get_running_loop()
        stopping = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stopping.set)

        await services.orchestrator.connect()
        services.start_background()
        console.print(
            f"[blue]Collecting every {services.orchestrator.interval:.0f}s. "
            "Press Ctrl+C to stop.[/blue]"
        )
        await stopping.wait()
        console.print("[blue]Stopping; finishing the current cycle...[/blue]")

    try:
        run_async(with_services(_run))
    except CollectorStartupError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None


@app.command()
def lookup(
    loco_no: Annotated[int, typer.Argument(help="Loco number")],
) -> None:
    """Fetch a loco's live position from upstream."""

    async def _lookup(services: ServiceContainer) -> PositionOut | None:
        await services.store.init_schema()
        observation = await services.live.fetch_and_cache_one(loco_no)
        return observation.to_public() if observation else None

    try:
        position = run_async(with_services(_lookup))
    except LiveLookupError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from None

    if position is None:
        console.print(f"[yellow]No position data for loco {loco_no}.[/yellow]")
        raise typer.Exit(1)

    lines = [
        f"[bold]Loco:[/bold] {position.loco_no}",
        f"[bold]Train:[/bold] {position.train_no or '-'}",
        f"[bold]Position:[/bold] {position.latitude:.5f}, {position.longitude:.5f}",
        f"[bold]Station:[/bold] {position.station}",
        f"[bold]Event:[/bold] {position.event}",
        f"[bold]Speed:[/bold] {position.speed} km/h",
        f"[bold]Reported:[/bold] {position.timestamp}"
        + (" [dim](estimated)[/dim]" if position.timestamp_estimated else ""),
    ]
    console.print(Panel("\n".join(lines), title="Live Position"))


@app.command()
def history(
    loco_no: Annotated[int, typer.Argument(help="Loco number")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Max rows")] = DEFAULT_HISTORY_LIMIT,
) -> None:
    """Show cached positions for a loco, newest first."""

    async def _history(services: ServiceContainer) -> list[PositionOut]:
        rows = await services.store.history(loco_no, limit=limit)
        return [PositionOut.from_row(row) for row in rows]

    positions = run_async(with_services(_history))
    if not positions:
        console.print(f"[yellow]No cached positions for loco {loco_no}.[/yellow]")
        return

    table = Table(title=f"Loco {loco_no}")
    table.add_column("Reported (UTC)")
    table.add_column("Train")
    table.add_column("Station")
    table.add_column("Event")
    table.add_column("Speed", justify="right")
    table.add_column("Lat/Lon")
    for p in positions:
        table.add_row(
            p.timestamp,
            str(p.train_no or "-"),
            p.station,
            p.event,
            str(p.speed),
            f"{p.latitude:.4f}, {p.longitude:.4f}",
        )
    console.print(table)


@app.command()
def purge() -> None:
    """Delete positions older than the retention window."""

    async def _purge(services: ServiceContainer) -> int:
        return await services.reaper.run_once()

    removed = run_async(with_services(_purge))
    console.print(f"[green]Removed {removed} expired position(s).[/green]")


if __name__ == "__main__":
    app()
