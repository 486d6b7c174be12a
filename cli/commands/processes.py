"""Process Commands - run the job worker and the lease reaper"""

import asyncio

import typer

from portal.config.logging import setup_logging
from portal.config.settings import get_settings
from portal.v1.infra.jobs.runner import run_reaper_process, run_worker_process

from ..utils.formatting import print_info


def worker(
    with_reaper: bool = typer.Option(
        False, "--with-reaper", help="Also sweep expired leases in this process"
    ),
):
    """⚙️ Run a provisioning job worker until SIGTERM/SIGINT"""
    setup_logging()
    app_settings = get_settings()
    print_info(
        f"Starting worker (poll {app_settings.job_poll_interval_ms}ms, "
        f"lease {app_settings.job_lease_duration_s}s)"
    )
    asyncio.run(run_worker_process(app_settings, with_reaper=with_reaper))


def reaper():
    """🧹 Run the expired-lease reaper until SIGTERM/SIGINT"""
    setup_logging()
    app_settings = get_settings()
    print_info(f"Starting reaper (every {app_settings.reaper_interval_s}s)")
    asyncio.run(run_reaper_process(app_settings))
