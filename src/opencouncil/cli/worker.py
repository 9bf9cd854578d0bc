import os
from typing import Optional

import typer
from rich.console import Console

from opencouncil.core.config import Settings, load_settings
from opencouncil.core.errors import ConfigError
from opencouncil.core.logging_config import configure_logging
from opencouncil.core.services import build_services

app = typer.Typer(help="OPENCouncil ingestion worker")
console = Console()

MODES = ("discover", "worker", "all")

configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true"
)


def _load() -> Settings:
    try:
        return load_settings()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        raise typer.Exit(2)


@app.command()
def run(
    mode: str = typer.Argument("all", help="discover, worker or all"),
    town: Optional[str] = typer.Option(None, "--town", help="Restrict to one town prefix"),
    once: bool = typer.Option(False, "--once", help="Process a single batch and exit"),
):
    """Discover new bucket objects and/or process the pending queue."""
    if mode not in MODES:
        console.print(f"[red]Error:[/] Unknown mode: {mode}")
        console.print(f"Available modes: {', '.join(MODES)}")
        raise typer.Exit(2)

    settings = _load()
    services = build_services(settings)

    if mode in ("discover", "all"):
        console.print("[bold]=== PHASE 1: DISCOVERY ===[/]")
        towns = [town] if town else (settings.discovery_towns or [None])
        for tenant in towns:
            result = services.discovery.discover(tenant)
            console.print(
                f"[green]Discovery[/] {tenant or 'ALL'}: scanned {result.scanned}, added {result.added}"
            )

    if mode in ("worker", "all"):
        console.print("[bold]=== PHASE 2: PROCESSING QUEUE ===[/]")
        worker = services.sync_worker(town)
        if once:
            result = worker.run_batch()
        else:
            result = worker.run_until_empty()
        console.print(f"[green]Done:[/] {result.processed} synced, {result.errors} failed")


if __name__ == "__main__":
    app()
