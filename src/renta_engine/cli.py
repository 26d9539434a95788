"""Typer CLI for Renta-Engine."""

import asyncio

import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(name="renta", help="Renta-Engine: rental session and payment reconciliation")
console = Console()


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", help="Bind host"),
    port: int = typer.Option(8080, help="Bind port"),
):
    """Start the Renta-Engine API server."""
    import uvicorn
    from renta_engine.app import create_app

    console.print(f"[bold green]Starting Renta-Engine on {host}:{port}[/bold green]")
    uvicorn.run(create_app(), host=host, port=port)


@app.command()
def sweep():
    """Run one reconciliation pass against the configured database."""
    from renta_engine.common.config import get_settings
    from renta_engine.common.logging import setup_logging
    from renta_engine.deps import get_db, get_device_channel, get_dispatcher, get_sweeper

    setup_logging(get_settings().log_level)

    async def _run():
        db = get_db()
        await db.init()
        await db.create_all()
        try:
            return await get_sweeper().sweep_once()
        finally:
            await get_dispatcher().close()
            channel = get_device_channel()
            if hasattr(channel, "close"):
                await channel.close()
            await db.close()

    report = asyncio.run(_run())

    table = Table(title="Reconciliation")
    table.add_column("Repair")
    table.add_column("Count", justify="right")
    table.add_row("Expired sessions", str(len(report.expired_sessions)))
    table.add_row("Machines freed", str(len(report.repaired_machines)))
    table.add_row("Stale pending cancelled", str(len(report.cancelled_pending)))
    table.add_row("Commands re-sent", str(len(report.resent_commands)))
    table.add_row("Errors", str(len(report.errors)))
    console.print(table)
    if report.errors:
        raise typer.Exit(1)


@app.command()
def health(
    url: str = typer.Option("http://localhost:8080", help="Server URL"),
):
    """Check Renta-Engine server health."""
    import httpx

    try:
        resp = httpx.get(f"{url}/health", timeout=5)
        data = resp.json()
        console.print(f"[bold green]{data['status']}[/bold green] v{data['version']}")
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
