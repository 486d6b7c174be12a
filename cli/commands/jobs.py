"""Job Commands - inspect and manage the provisioning queue"""

import typer
from rich.console import Console

from ..client.endpoints import PortalAPIError, PortalClient
from ..utils.config_manager import config
from ..utils.formatting import (
    create_job_panel,
    create_jobs_table,
    create_stats_panel,
    print_error,
    print_info,
    print_success,
)

console = Console()
app = typer.Typer(name="jobs", help="Provisioning job queue administration")


@app.command("list")
def list_jobs(
    status: list[str] | None = typer.Option(
        None, "--status", "-s", help="Filter by status (repeatable)"
    ),
    job_type: str | None = typer.Option(None, "--type", "-t", help="Filter by job type"),
    install_id: int | None = typer.Option(None, "--install", "-i", help="Filter by install"),
    limit: int | None = typer.Option(None, "--limit", "-l", help="Maximum results"),
    offset: int = typer.Option(0, "--offset", help="Results offset"),
):
    """📋 List jobs"""
    page_size = limit or config.get("display.jobs_per_page", 50)
    try:
        with PortalClient() as client:
            result = client.list_jobs(
                status=status,
                job_type=job_type,
                install_id=install_id,
                limit=page_size,
                offset=offset,
            )
    except PortalAPIError as e:
        print_error(f"Failed to list jobs: {e}")
        raise typer.Exit(1) from None

    jobs = result.get("jobs", [])
    if not jobs:
        print_info("No jobs match")
        return

    console.print(create_jobs_table(jobs, result.get("total")))


@app.command("show")
def show_job(job_id: int = typer.Argument(..., help="Job ID")):
    """🔍 Show a single job"""
    try:
        with PortalClient() as client:
            job = client.get_job(job_id)
    except PortalAPIError as e:
        print_error(f"Failed to fetch job: {e}")
        raise typer.Exit(1) from None

    console.print(create_job_panel(job))


@app.command("cancel")
def cancel_job(job_id: int = typer.Argument(..., help="Job ID")):
    """🛑 Cancel a pending or processing job"""
    try:
        with PortalClient() as client:
            client.cancel_job(job_id)
    except PortalAPIError as e:
        print_error(f"Failed to cancel job: {e}")
        raise typer.Exit(1) from None

    print_success(f"Job {job_id} cancelled")


@app.command("requeue")
def requeue_job(job_id: int = typer.Argument(..., help="Job ID")):
    """🔁 Requeue a failed or cancelled job"""
    try:
        with PortalClient() as client:
            client.requeue_job(job_id)
    except PortalAPIError as e:
        print_error(f"Failed to requeue job: {e}")
        raise typer.Exit(1) from None

    print_success(f"Job {job_id} requeued")


@app.command("stats")
def job_stats():
    """📊 Queue statistics"""
    try:
        with PortalClient() as client:
            stats = client.job_stats()
    except PortalAPIError as e:
        print_error(f"Failed to fetch stats: {e}")
        raise typer.Exit(1) from None

    console.print(create_stats_panel(stats))
