"""
Reaper: recovers jobs abandoned by crashed workers.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal.config.settings import Settings
from portal.infra.database import utcnow
from portal.v1.core.registries import JobRegistry, job_registry
from portal.v1.infra.jobs.models import ProvisioningJob
from portal.v1.infra.jobs.store import JobStore, ReapResult
from portal.v1.infra.jobs.worker import run_exhausted_hook

logger = logging.getLogger(__name__)


class Reaper:
    """Periodic sweep releasing processing jobs whose lease has expired."""

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        store: JobStore | None = None,
        registry: JobRegistry = job_registry,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.store = store or JobStore(settings, clock=clock)
        self.registry = registry
        self.stop_event = asyncio.Event()
        self.sweeps = 0

    async def sweep(self) -> ReapResult:
        async with self.session_factory() as session:
            result = await self.store.reap_expired(session)

        # Each hook gets its own session so one failing hook cannot expire
        # the rows of the others
        for reaped in result.failed:
            if not self.registry.has(reaped.job_type):
                continue
            async with self.session_factory() as session:
                job = await session.get(ProvisioningJob, reaped.id)
                await run_exhausted_hook(
                    session, self.registry.get(job.job_type), job, job.last_error
                )

        self.sweeps += 1
        if result.reset:
            logger.warning(
                "Reset expired jobs",
                extra={
                    "reset_count": len(result.reset),
                    "job_ids": [job.id for job in result.reset],
                },
            )
        if result.failed:
            logger.error(
                "Expired jobs out of attempts",
                extra={
                    "failed_count": len(result.failed),
                    "job_ids": [job.id for job in result.failed],
                },
            )
        return result

    async def run(self) -> None:
        interval = self.settings.reaper_interval_s
        logger.info("Starting reaper", extra={"interval_s": interval})

        while not self.stop_event.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("Error in reaper sweep")

            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Reaper stopped", extra={"sweeps": self.sweeps})

    def request_stop(self) -> None:
        self.stop_event.set()
