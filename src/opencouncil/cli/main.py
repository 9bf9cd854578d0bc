import json
import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from opencouncil.core.config import Settings, load_settings
from opencouncil.core.drop_folder import DropFolderHandler, DropFolderWatcher
from opencouncil.core.errors import ConfigError, IngestError
from opencouncil.core.logging_config import configure_logging
from opencouncil.core.models import JobStatus
from opencouncil.core.services import Services, build_services

app = typer.Typer(help="OPENCouncil — municipal document ingestion")
console = Console()

# Initialize structured logging
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true"
)


def _services() -> Services:
    try:
        settings: Settings = load_settings()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/] {e}")
        raise typer.Exit(2)
    return build_services(settings)


@app.command()
def status(town: Optional[str] = typer.Option(None, help="Restrict sync counts to one town")):
    """Show sync ledger and OCR queue counts."""
    services = _services()
    sync = services.sync_repo.stats(town)
    ocr = services.blob_store.ocr_queue_stats()

    table = Table(title=f"Sync status ({town or 'all towns'})")
    table.add_column("State")
    table.add_column("Count", justify="right")
    table.add_row("total", str(sync.total))
    table.add_row("synced", str(sync.synced))
    table.add_row("pending", str(sync.pending))
    table.add_row("failed", str(sync.failed))
    console.print(table)

    ocr_table = Table(title="OCR queue")
    ocr_table.add_column("Status")
    ocr_table.add_column("Blobs", justify="right")
    for state, count in ocr.items():
        ocr_table.add_row(state, str(count))
    console.print(ocr_table)


@app.command("retry-failed")
def retry_failed(
    town: Optional[str] = typer.Option(None, help="Only reset rows for this town"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Move failed sync rows back to pending."""
    services = _services()
    if not yes and not Confirm.ask(f"Reset failed rows for {town or 'all towns'}?", default=False):
        console.print("[yellow]Aborted[/]")
        raise typer.Exit(1)
    count = services.sync_repo.reset_failed(town)
    console.print(f"[green]✓[/] Reset {count} failed rows to pending")


@app.command()
def upload(
    path: str,
    source_key: Optional[str] = typer.Option(None, "--key", help="Logical key used for metadata suggestions"),
):
    """Stage a local file for review."""
    file_path = Path(path)
    if not file_path.is_file():
        console.print(f"[red]Error:[/] File {path} does not exist")
        raise typer.Exit(1)

    services = _services()
    job = services.review.stage_upload(file_path, source_key)
    console.print(f"[green]✓[/] Staged job {job.id} ({job.status.value})")
    if job.duplicate_warning:
        console.print(f"[yellow]Duplicate warning:[/] {job.duplicate_warning}")
    console.print_json(json.dumps(job.suggested_metadata))


@app.command()
def jobs(
    job_status: Optional[str] = typer.Option(None, "--status", help="staging, needs_review, approved, rejected, indexed"),
    limit: int = typer.Option(50, help="Maximum jobs to list"),
):
    """List ingestion jobs."""
    try:
        wanted = JobStatus(job_status) if job_status else None
    except ValueError:
        console.print(f"[red]Error:[/] Unknown status {job_status}")
        raise typer.Exit(1)

    services = _services()
    table = Table(title="Ingestion jobs")
    for column in ("id", "status", "town", "filename", "warning", "last error"):
        table.add_column(column)
    for job in services.review.job_repo.list(wanted, limit):
        meta = job.final_metadata or job.suggested_metadata
        table.add_row(
            job.id,
            job.status.value,
            str(meta.get("town", "")),
            str(meta.get("filename", "")),
            job.duplicate_warning or "",
            job.last_error or "",
        )
    console.print(table)


@app.command()
def approve(
    job_id: str,
    town: Optional[str] = typer.Option(None, help="Override town"),
    category: Optional[str] = typer.Option(None, help="Override category"),
    board: Optional[str] = typer.Option(None, help="Override board"),
    year: Optional[int] = typer.Option(None, help="Override year"),
    meeting_date: Optional[str] = typer.Option(None, help="Override meeting date (YYYY-MM-DD)"),
):
    """Approve a job for indexing, optionally correcting its metadata."""
    services = _services()
    overrides = {
        "town": town,
        "category": category,
        "board": board,
        "year": year,
        "meeting_date": meeting_date,
    }
    try:
        job = services.review.approve(job_id, overrides)
    except IngestError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/] Job {job.id} approved")


@app.command()
def reject(job_id: str):
    """Reject a job."""
    services = _services()
    try:
        job = services.review.reject(job_id)
    except IngestError as e:
        console.print(f"[red]Error:[/] {e}")
        raise typer.Exit(1)
    console.print(f"[yellow]✗[/] Job {job.id} rejected")


@app.command("index-approved")
def index_approved(limit: int = typer.Option(10, help="Maximum jobs to index")):
    """Index approved jobs, then re-upload any finished OCR text."""
    services = _services()
    result = services.review.index_approved(limit)
    console.print(f"[green]Indexed:[/] {result.processed} ok, {result.errors} failed")
    reindexed = services.review.reindex_ocr_completed(limit)
    if reindexed:
        console.print(f"[green]OCR reindexed:[/] {reindexed}")


@app.command("ocr-worker")
def ocr_worker(
    poll_interval: float = typer.Option(5.0, help="Seconds between queue polls"),
    max_jobs: Optional[int] = typer.Option(None, help="Stop after this many jobs"),
):
    """Run the background OCR queue worker."""
    services = _services()
    console.print("[bold]Starting OCR worker[/] (Ctrl+C to stop)")
    try:
        processed = services.ocr_worker.run(poll_interval=poll_interval, max_jobs=max_jobs)
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/]")
        return
    console.print(f"[green]✓[/] Processed {processed} OCR jobs")


@app.command()
def watch(
    path: str = typer.Option("./inbox", help="Folder to watch for new files"),
    debounce: float = typer.Option(2.0, help="Seconds to wait after the last change"),
):
    """Stage files dropped into a folder for review."""
    services = _services()
    handler = DropFolderHandler(
        services.review.stage_upload,
        extensions=services.settings.eligible_extensions,
        debounce_time=debounce,
    )
    watcher = DropFolderWatcher(Path(path), handler)
    console.print(f"[bold]Watching[/] {path} (Ctrl+C to stop)")
    watcher.run_forever()
    stats = handler.get_stats()
    console.print(
        f"Staged {stats['files_staged']} files, {stats['files_failed']} failed"
    )


if __name__ == "__main__":
    app()
