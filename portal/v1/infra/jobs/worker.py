"""
Database-backed provisioning worker.

One job in flight per worker; any number of workers may run against the same
database because every claim and completion is an atomic conditional update
in JobStore.
"""

import asyncio
import logging
import os
import random
import secrets
import socket
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal.config.settings import Settings
from portal.infra.database import utcnow
from portal.v1.core.registries import JobRegistry, job_registry
from portal.v1.core.state_machines import JobStatus
from portal.v1.infra.jobs.models import ProvisioningJob
from portal.v1.infra.jobs.results import JobResult
from portal.v1.infra.jobs.store import JobStore

logger = logging.getLogger(__name__)


def make_worker_id() -> str:
    return f"worker-{socket.gethostname()}-{os.getpid()}-{secrets.token_hex(4)}"


def compute_backoff(
    attempts: int, settings: Settings, rng: random.Random | None = None
) -> timedelta:
    """Calculate the retry delay with exponential backoff and jitter."""
    rng = rng or random
    base_delay = settings.job_backoff_base_s
    max_delay = settings.job_max_backoff_s

    # Exponential backoff: base * 2^(attempts-1)
    delay = min(max_delay, base_delay * (2 ** max(0, attempts - 1)))

    # Jitter (±job_backoff_jitter random variation)
    jitter = delay * settings.job_backoff_jitter * (2 * rng.random() - 1)
    return timedelta(seconds=max(1.0, delay + jitter))


class WorkerState:
    """Running state of one worker, shared with whoever needs to stop it."""

    def __init__(self):
        self.stop_event = asyncio.Event()
        self.current_job_id: int | None = None
        self.started_at: datetime | None = None
        self.jobs_completed = 0
        self.jobs_failed = 0

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    @property
    def busy(self) -> bool:
        return self.current_job_id is not None


class Worker:
    """
    Polling worker that claims one job at a time and dispatches it.

    Handler writes share the session used by ``JobStore.complete`` so a
    rejected completion discards them; on failure they are rolled back
    before ``JobStore.fail`` runs.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        store: JobStore | None = None,
        registry: JobRegistry = job_registry,
        clock: Callable[[], datetime] = utcnow,
        worker_id: str | None = None,
        rng: random.Random | None = None,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.clock = clock
        self.store = store or JobStore(settings, clock=clock)
        self.registry = registry
        self.worker_id = worker_id or make_worker_id()
        self.rng = rng
        self.state = WorkerState()
        self._task: asyncio.Task | None = None

    async def run_once(self) -> bool:
        """Claim and process at most one job. Returns True if a job was claimed."""
        async with self.session_factory() as session:
            job = await self.store.claim_next(
                session,
                self.worker_id,
                timedelta(seconds=self.settings.job_lease_duration_s),
            )
            if job is None:
                return False

            self.state.current_job_id = job.id
            try:
                await self._process(session, job)
            finally:
                self.state.current_job_id = None
            return True

    async def _process(self, session: AsyncSession, job: ProvisioningJob) -> None:
        job_context = {
            "worker_id": self.worker_id,
            "job_id": job.id,
            "job_type": job.job_type,
            "attempt": job.attempts,
        }
        logger.info("Processing job started", extra=job_context)

        if not self.registry.has(job.job_type):
            await self._handle_failure(
                session,
                job,
                None,
                JobResult.failure(
                    f"No handler registered for job type: {job.job_type}",
                    retryable=False,
                ),
            )
            return

        handler = self.registry.get(job.job_type)
        try:
            result = await handler.handle(session, job)
        except asyncio.CancelledError:
            # Abandoned at shutdown; the lease expires and the reaper recovers it
            logger.warning("Job processing abandoned", extra=job_context)
            raise
        except Exception as e:
            logger.exception(
                "Job handler crashed", extra={**job_context, "error": str(e)}
            )
            result = JobResult.failure(f"Unexpected error: {e}")

        if result.ok:
            if await self.store.complete(session, job.id, self.worker_id):
                self.state.jobs_completed += 1
                logger.info("Processing job completed successfully", extra=job_context)
            return

        await self._handle_failure(session, job, handler, result)

    async def _handle_failure(
        self,
        session: AsyncSession,
        job: ProvisioningJob,
        handler,
        result: JobResult,
    ) -> None:
        # Rollback expires loaded rows; read what fail() needs first
        job_id, attempts = job.id, job.attempts
        await session.rollback()
        error = result.error or "Unknown error"
        self.state.jobs_failed += 1

        updated = await self.store.fail(
            session,
            job_id,
            self.worker_id,
            error,
            compute_backoff(attempts, self.settings, self.rng),
            retryable=result.retryable,
        )
        if (
            updated is not None
            and updated.status == JobStatus.FAILED.value
            and handler is not None
        ):
            await run_exhausted_hook(session, handler, updated, error)

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early once a stop has been requested."""
        try:
            await asyncio.wait_for(self.state.stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Main loop: drain the backlog, then poll until stopped."""
        self.state.started_at = self.clock()
        poll_interval = self.settings.job_poll_interval_s
        logger.info(
            "Starting job worker",
            extra={
                "worker_id": self.worker_id,
                "poll_interval_ms": self.settings.job_poll_interval_ms,
                "handlers": self.registry.list(),
            },
        )

        while not self.state.stopping:
            try:
                claimed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Error in worker loop", extra={"worker_id": self.worker_id}
                )
                await self._sleep(poll_interval * 2)
                continue

            if not claimed:
                await self._sleep(poll_interval)

        logger.info(
            "Job worker stopped",
            extra={
                "worker_id": self.worker_id,
                "jobs_completed": self.state.jobs_completed,
                "jobs_failed": self.state.jobs_failed,
            },
        )

    def start(self) -> asyncio.Task:
        """Run the main loop as a background task."""
        if self._task is not None and not self._task.done():
            raise RuntimeError("Worker is already running")
        self._task = asyncio.create_task(self.run(), name=self.worker_id)
        return self._task

    def request_stop(self) -> None:
        if not self.state.stopping:
            logger.info("Stopping job worker", extra={"worker_id": self.worker_id})
        self.state.stop_event.set()

    async def stop(self, grace_period: float | None = None) -> bool:
        """
        Stop claiming and wait for the in-flight job.

        Returns False when the grace period ran out and the job was abandoned.
        """
        self.request_stop()
        if self._task is None:
            return True

        grace = self.settings.job_shutdown_grace_s if grace_period is None else grace_period
        done, _ = await asyncio.wait({self._task}, timeout=grace)
        if done:
            return True

        logger.warning(
            "Worker stopped with active job",
            extra={"worker_id": self.worker_id, "job_id": self.state.current_job_id},
        )
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        return False


async def run_exhausted_hook(
    session: AsyncSession, handler, job: ProvisioningJob, error: str
) -> None:
    """Give the job's handler a chance to react to terminal failure."""
    job_context = {"job_id": job.id, "job_type": job.job_type}
    try:
        await handler.on_exhausted(session, job, error)
        await session.commit()
    except Exception:
        await session.rollback()
        logger.exception("Exhaustion hook failed", extra=job_context)
