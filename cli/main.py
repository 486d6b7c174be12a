"""Provisioning Portal CLI - Main Entry Point"""

import typer
from rich.console import Console
from rich.panel import Panel

from portal.config.settings import get_settings

from .client.endpoints import PortalClient
from .commands import config, installs, jobs, processes
from .utils.config_manager import config as config_manager
from .utils.formatting import print_error, print_info

console = Console()

app = typer.Typer(
    name="portal",
    help="🚀 Provisioning Portal - job queue and worker CLI",
    rich_markup_mode="rich",
)

app.add_typer(jobs.app, name="jobs")
app.add_typer(installs.app, name="installs")
app.add_typer(config.app, name="config")
app.command("worker")(processes.worker)
app.command("reaper")(processes.reaper)


@app.command()
def status():
    """📊 Check API health and queue depth"""
    base_url = config_manager.get("api.base_url")
    print_info(f"Checking connection to: {base_url}")

    try:
        with PortalClient(base_url) as client:
            health = client.health_check()
    except Exception as e:
        print_error(f"Failed to connect: {e}")
        console.print(
            Panel(
                f"🚫 [red]Connection Failed[/red]\n\n"
                f"Make sure the portal API is running at:\n"
                f"[blue]{base_url}[/blue]\n\n"
                f"You can update the API URL with:\n"
                f"[cyan]portal config set api.base_url <url>[/cyan]",
                title="Connection Error",
                border_style="red",
            )
        )
        raise typer.Exit(1) from None

    database = health.get("database") or {}
    queue = health.get("queue") or {}
    db_state = "[green]connected[/green]" if database.get("connected") else "[red]down[/red]"
    console.print(
        Panel(
            f"🚀 [green]Connected[/green]\n\n"
            f"• Version: [cyan]{health.get('version', 'unknown')}[/cyan]\n"
            f"• Environment: [yellow]{health.get('environment', 'unknown')}[/yellow]\n"
            f"• Database: {db_state}\n"
            f"• Queue depth: [yellow]{queue.get('queue_depth', 0)}[/yellow]\n"
            f"• Processing: [cyan]{queue.get('processing_jobs', 0)}[/cyan]\n"
            f"• Failed: [red]{queue.get('failed_jobs', 0)}[/red]\n"
            f"• Expired leases: [red]{queue.get('expired_leases', 0)}[/red]\n"
            f"• API URL: [blue]{base_url}[/blue]",
            title="System Status",
            border_style="green" if health.get("ok") else "red",
        )
    )
    if not health.get("ok"):
        raise typer.Exit(1)


@app.command()
def version():
    """📎 Show version information"""
    app_settings = get_settings()
    console.print(
        Panel(
            f"🚀 [bold cyan]{app_settings.app_name}[/bold cyan]\n\n"
            f"• Version: [green]{app_settings.version}[/green]\n"
            f"• Environment: [yellow]{app_settings.environment}[/yellow]",
            title="Version Info",
            border_style="cyan",
        )
    )


if __name__ == "__main__":
    app()
