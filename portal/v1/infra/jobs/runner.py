"""
Process entry points for the worker and the reaper.

SIGTERM/SIGINT stop claiming, give the in-flight job a bounded grace period,
then dispose the engine.
"""

import asyncio
import logging
import signal

from portal.config.logging import bind_process_context
from portal.config.settings import Settings
from portal.infra.database import Database
from portal.v1.infra.jobs.reaper import Reaper
from portal.v1.infra.jobs.worker import Worker
from portal.v1.provisioning.registry_init import register_job_handlers

logger = logging.getLogger(__name__)


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.debug("Signal handler not installed", extra={"signal": sig.name})


async def run_worker_process(
    app_settings: Settings,
    with_reaper: bool = False,
    stop_event: asyncio.Event | None = None,
    database: Database | None = None,
) -> Worker:
    """Run one worker (and optionally a reaper task) until asked to stop."""
    database = database or Database(app_settings)
    stop_event = stop_event or asyncio.Event()
    _install_signal_handlers(stop_event)

    register_job_handlers(app_settings)
    worker = Worker(app_settings, database.SessionLocal)
    bind_process_context(role="worker", worker_id=worker.worker_id)

    reaper = Reaper(app_settings, database.SessionLocal) if with_reaper else None
    reaper_task = asyncio.create_task(reaper.run()) if reaper else None

    worker_task = worker.start()
    stop_task = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({worker_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_task.cancel()
        finished = await worker.stop()
        if not finished:
            logger.warning(
                "In-flight job abandoned; its lease will expire",
                extra={"worker_id": worker.worker_id},
            )
        if reaper and reaper_task:
            reaper.request_stop()
            await reaper_task
        await database.close()

    return worker


async def run_reaper_process(
    app_settings: Settings,
    stop_event: asyncio.Event | None = None,
    database: Database | None = None,
) -> Reaper:
    """Run the reaper on its own until asked to stop."""
    database = database or Database(app_settings)
    stop_event = stop_event or asyncio.Event()
    _install_signal_handlers(stop_event)

    register_job_handlers(app_settings)
    reaper = Reaper(app_settings, database.SessionLocal)
    bind_process_context(role="reaper")

    reaper_task = asyncio.create_task(reaper.run())
    try:
        await stop_event.wait()
    finally:
        reaper.request_stop()
        await reaper_task
        await database.close()

    return reaper
