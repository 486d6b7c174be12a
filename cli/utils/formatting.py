"""Rich Formatting Utilities for CLI Output"""

from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

STATUS_STYLES = {
    "pending": "yellow",
    "processing": "cyan",
    "completed": "green",
    "failed": "red",
    "cancelled": "dim",
    "provisioning": "cyan",
    "setup_pending": "magenta",
    "active": "green",
    "suspended": "dim",
}


def print_success(message: str):
    """Print success message with green styling"""
    console.print(f"[green]✓ {message}[/green]")


def print_error(message: str):
    """Print error message with red styling"""
    console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str):
    console.print(f"[yellow]⚠ {message}[/yellow]")


def print_info(message: str):
    console.print(f"[blue]ℹ {message}[/blue]")


def format_status(status: str) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status}[/{style}]"


def create_jobs_table(jobs: list[dict[str, Any]], total: int | None = None) -> Table:
    """Create a formatted table for a page of jobs"""
    title = "Jobs" if total is None else f"Jobs ({len(jobs)} of {total})"
    table = Table(title=title, box=box.ROUNDED)

    table.add_column("ID", justify="right", style="cyan", no_wrap=True)
    table.add_column("Type", justify="left", style="magenta")
    table.add_column("Install", justify="right")
    table.add_column("Status", justify="center")
    table.add_column("Attempts", justify="center", style="yellow")
    table.add_column("Next Run", justify="left")
    table.add_column("Last Error", justify="left", style="white")

    for job in jobs:
        error = job.get("last_error") or "—"
        table.add_row(
            str(job.get("id", "")),
            job.get("job_type", ""),
            str(job.get("install_id", "")),
            format_status(job.get("status", "")),
            f"{job.get('attempts', 0)}/{job.get('max_attempts', 0)}",
            job.get("next_run_at") or "—",
            error[:60] + "..." if len(error) > 60 else error,
        )

    return table


def create_job_panel(job: dict[str, Any]) -> Panel:
    """Detailed view of a single job"""
    content = (
        f"• Type: [magenta]{job.get('job_type')}[/magenta]\n"
        f"• Install: [cyan]{job.get('install_id')}[/cyan]\n"
        f"• Status: {format_status(job.get('status', ''))}\n"
        f"• Attempts: [yellow]{job.get('attempts', 0)}/{job.get('max_attempts', 0)}[/yellow]\n"
        f"• Next run: {job.get('next_run_at') or '—'}\n"
        f"• Locked by: {job.get('locked_by') or '—'}\n"
        f"• Locked until: {job.get('locked_until') or '—'}\n"
        f"• Started: {job.get('started_at') or '—'}\n"
        f"• Completed: {job.get('completed_at') or '—'}\n"
        f"• Last error: [red]{job.get('last_error') or '—'}[/red]"
    )
    return Panel(content, title=f"Job {job.get('id')}", border_style="blue")


def create_install_panel(install: dict[str, Any]) -> Panel:
    content = (
        f"• Status: {format_status(install.get('status', ''))}\n"
        f"• Domain: [cyan]{install.get('domain') or '—'}[/cyan]\n"
        f"• Pending jobs: [yellow]{install.get('pending_jobs', 0)}[/yellow]\n"
        f"• Created: {install.get('created_at') or '—'}\n"
        f"• Provisioned: {install.get('provisioned_at') or '—'}\n"
        f"• Activated: {install.get('activated_at') or '—'}\n"
        f"• Error: [red]{install.get('error_message') or '—'}[/red]"
    )
    return Panel(content, title=f"Install {install.get('id')}", border_style="blue")


def create_stats_panel(stats: dict[str, Any]) -> Panel:
    """Create formatted panel for queue statistics"""
    by_status = stats.get("by_status", {})
    by_type = stats.get("by_type", {})

    status_lines = "\n".join(
        f"  {format_status(status)}: {count}" for status, count in sorted(by_status.items())
    )
    type_lines = "\n".join(
        f"  [magenta]{job_type}[/magenta]: {count}"
        for job_type, count in sorted(by_type.items())
    )

    content = (
        f"[bold blue]Queue Statistics[/bold blue]\n\n"
        f"• Total jobs: [cyan]{stats.get('total_jobs', 0)}[/cyan]\n"
        f"• Queue depth: [yellow]{stats.get('queue_depth', 0)}[/yellow]\n"
        f"• Expired leases: [red]{stats.get('expired_leases', 0)}[/red]\n\n"
        f"[bold]By status[/bold]\n{status_lines or '  —'}\n\n"
        f"[bold]By type[/bold]\n{type_lines or '  —'}"
    )

    return Panel(content, title="Job Queue", border_style="green")
