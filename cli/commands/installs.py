"""Install Commands - look up installs and move them in and out of service"""

import typer
from rich.console import Console

from ..client.endpoints import PortalAPIError, PortalClient
from ..utils.formatting import create_install_panel, print_error, print_success

console = Console()
app = typer.Typer(name="installs", help="Customer install administration")


@app.command("show")
def show_install(order_id: str = typer.Argument(..., help="Payment provider order ID")):
    """🔍 Show the install created for an order"""
    try:
        with PortalClient() as client:
            install = client.get_install_by_order(order_id)
    except PortalAPIError as e:
        print_error(f"Failed to fetch install: {e}")
        raise typer.Exit(1) from None

    console.print(create_install_panel(install))


@app.command("suspend")
def suspend_install(install_id: int = typer.Argument(..., help="Install ID")):
    """⏸ Suspend an active install"""
    try:
        with PortalClient() as client:
            client.suspend_install(install_id)
    except PortalAPIError as e:
        print_error(f"Failed to suspend install: {e}")
        raise typer.Exit(1) from None

    print_success(f"Install {install_id} suspended")


@app.command("resume")
def resume_install(install_id: int = typer.Argument(..., help="Install ID")):
    """▶ Resume a suspended install"""
    try:
        with PortalClient() as client:
            client.resume_install(install_id)
    except PortalAPIError as e:
        print_error(f"Failed to resume install: {e}")
        raise typer.Exit(1) from None

    print_success(f"Install {install_id} resumed")
