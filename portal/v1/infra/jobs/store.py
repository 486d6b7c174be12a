"""
JobStore: the provisioning queue as rows in one table.

Every mutation of a job row is a single conditional UPDATE, so concurrent
workers, the reaper and administrators never need a read-modify-write.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, case, func, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from portal.config.settings import Settings
from portal.infra.database import UTCDateTime, utcnow
from portal.v1.core.state_machines import JOB_MACHINE, JobStatus
from portal.v1.infra.jobs.models import ProvisioningJob

logger = logging.getLogger(__name__)

# Updates below carry their own WHERE guards; the ORM must not try to
# evaluate them against objects already in the session.
_NO_SYNC = {"synchronize_session": False}
_RETURNING = {"synchronize_session": False, "populate_existing": True}


def _eligible(model, now: datetime):
    """Pending, due, and not held by a live lease."""
    return and_(
        model.status == JobStatus.PENDING.value,
        model.next_run_at <= now,
        or_(model.locked_until.is_(None), model.locked_until < now),
    )


@dataclass
class ReapResult:
    """Rows touched by one reaper sweep."""

    reset: list[ProvisioningJob] = field(default_factory=list)
    failed: list[ProvisioningJob] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.reset) + len(self.failed)


class JobStore:
    """Persistence and lease semantics for provisioning jobs."""

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.clock = clock

    def _at(self, value: datetime):
        return literal(value, UTCDateTime())

    async def enqueue(
        self,
        session: AsyncSession,
        install_id: int,
        job_type: str,
        max_attempts: int | None = None,
        next_run_at: datetime | None = None,
    ) -> ProvisioningJob:
        """
        Add a pending job.

        The job is flushed but not committed: it belongs to the caller's
        transaction (webhook ingestion, a completing handler, an admin action).
        """
        now = self.clock()
        job = ProvisioningJob(
            install_id=install_id,
            job_type=job_type,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=(
                self.settings.job_max_attempts if max_attempts is None else max_attempts
            ),
            next_run_at=next_run_at or now,
            created_at=now,
        )
        session.add(job)
        await session.flush()

        logger.info(
            "Job enqueued",
            extra={
                "job_id": job.id,
                "install_id": install_id,
                "job_type": job_type,
                "max_attempts": job.max_attempts,
            },
        )
        return job

    async def claim_next(
        self,
        session: AsyncSession,
        worker_id: str,
        lease_duration: timedelta | None = None,
    ) -> ProvisioningJob | None:
        """
        Lease the oldest eligible job for ``worker_id``.

        One UPDATE whose target is picked by a SKIP LOCKED subquery; the
        eligibility predicate is repeated on the outer statement so a row
        taken by a concurrent claimer between the two is never matched.
        Returns None when nothing is eligible.
        """
        now = self.clock()
        lease = lease_duration or timedelta(seconds=self.settings.job_lease_duration_s)

        # The subquery reads through an alias so it is not correlated to the
        # UPDATE target
        pick = aliased(ProvisioningJob)
        candidate = (
            select(pick.id)
            .where(_eligible(pick, now))
            .order_by(pick.next_run_at, pick.id)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(ProvisioningJob)
            .where(ProvisioningJob.id == candidate, _eligible(ProvisioningJob, now))
            .values(
                status=JobStatus.PROCESSING.value,
                locked_by=worker_id,
                locked_until=now + lease,
                started_at=func.coalesce(ProvisioningJob.started_at, self._at(now)),
                attempts=ProvisioningJob.attempts + 1,
            )
            .returning(ProvisioningJob)
            .execution_options(**_RETURNING)
        )

        result = await session.execute(stmt)
        job = result.scalars().first()
        await session.commit()

        if job is not None:
            logger.info(
                "Claimed job",
                extra={
                    "worker_id": worker_id,
                    "job_id": job.id,
                    "job_type": job.job_type,
                    "attempt": job.attempts,
                    "locked_until": job.locked_until.isoformat(),
                },
            )
        return job

    async def complete(self, session: AsyncSession, job_id: int, owner_id: str) -> bool:
        """
        Mark a leased job completed and commit the caller's pending writes.

        Rejected when ``owner_id`` no longer holds the lease (it was reaped,
        reclaimed or cancelled): the session is rolled back so the handler's
        side effects are discarded along with the stale completion.
        """
        now = self.clock()
        stmt = (
            update(ProvisioningJob)
            .where(
                ProvisioningJob.id == job_id,
                ProvisioningJob.status == JobStatus.PROCESSING.value,
                ProvisioningJob.locked_by == owner_id,
            )
            .values(
                status=JobStatus.COMPLETED.value,
                completed_at=now,
                locked_by=None,
                locked_until=None,
            )
            .execution_options(**_NO_SYNC)
        )
        result = await session.execute(stmt)

        if result.rowcount == 0:
            await session.rollback()
            logger.warning(
                "Completion rejected: lease no longer held",
                extra={"job_id": job_id, "owner_id": owner_id},
            )
            return False

        await session.commit()
        logger.info("Job completed", extra={"job_id": job_id, "owner_id": owner_id})
        return True

    async def fail(
        self,
        session: AsyncSession,
        job_id: int,
        owner_id: str,
        error: str,
        retry_delay: timedelta,
        retryable: bool = True,
    ) -> ProvisioningJob | None:
        """
        Record a failed attempt.

        With attempts left the job goes back to pending at now + retry_delay;
        otherwise (or when ``retryable`` is False) it fails terminally.
        Returns the updated row, or None when the lease was lost.
        """
        now = self.clock()
        exhausted = ProvisioningJob.attempts >= ProvisioningJob.max_attempts

        if retryable:
            values: dict[str, Any] = {
                "status": case(
                    (exhausted, JobStatus.FAILED.value),
                    else_=JobStatus.PENDING.value,
                ),
                "next_run_at": case(
                    (exhausted, ProvisioningJob.next_run_at),
                    else_=self._at(now + retry_delay),
                ),
            }
        else:
            values = {"status": JobStatus.FAILED.value}

        stmt = (
            update(ProvisioningJob)
            .where(
                ProvisioningJob.id == job_id,
                ProvisioningJob.status == JobStatus.PROCESSING.value,
                ProvisioningJob.locked_by == owner_id,
            )
            .values(last_error=error, locked_by=None, locked_until=None, **values)
            .returning(ProvisioningJob)
            .execution_options(**_RETURNING)
        )
        result = await session.execute(stmt)
        job = result.scalars().first()
        await session.commit()

        if job is None:
            logger.warning(
                "Failure rejected: lease no longer held",
                extra={"job_id": job_id, "owner_id": owner_id},
            )
        elif job.status == JobStatus.FAILED.value:
            logger.error(
                "Job failed permanently",
                extra={
                    "job_id": job.id,
                    "attempts": job.attempts,
                    "max_attempts": job.max_attempts,
                    "retryable": retryable,
                    "error": error,
                },
            )
        else:
            logger.warning(
                "Job scheduled for retry",
                extra={
                    "job_id": job.id,
                    "attempts": job.attempts,
                    "next_run_at": job.next_run_at.isoformat(),
                    "error": error,
                },
            )
        return job

    async def cancel(self, session: AsyncSession, job_id: int) -> bool:
        """
        Cancel a pending or processing job, whatever its lock state.

        A processing job keeps running; its completion is rejected later.
        """
        stmt = (
            update(ProvisioningJob)
            .where(
                ProvisioningJob.id == job_id,
                ProvisioningJob.status.in_(JOB_MACHINE.sources_for(JobStatus.CANCELLED)),
            )
            .values(
                status=JobStatus.CANCELLED.value,
                locked_by=None,
                locked_until=None,
            )
            .execution_options(**_NO_SYNC)
        )
        result = await session.execute(stmt)
        await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info("Job cancelled", extra={"job_id": job_id})
        return success

    async def requeue(self, session: AsyncSession, job_id: int) -> bool:
        """Give a failed or cancelled job a fresh set of attempts."""
        now = self.clock()
        stmt = (
            update(ProvisioningJob)
            .where(
                ProvisioningJob.id == job_id,
                ProvisioningJob.status.in_(
                    [JobStatus.FAILED.value, JobStatus.CANCELLED.value]
                ),
            )
            .values(
                status=JobStatus.PENDING.value,
                attempts=0,
                next_run_at=now,
                locked_by=None,
                locked_until=None,
                completed_at=None,
            )
            .execution_options(**_NO_SYNC)
        )
        result = await session.execute(stmt)
        await session.commit()

        success = result.rowcount > 0
        if success:
            logger.info("Job requeued", extra={"job_id": job_id})
        return success

    async def reap_expired(self, session: AsyncSession) -> ReapResult:
        """
        Release every processing job whose lease has expired.

        Attempts are left as they are: the lost run still counts. Jobs that
        have no attempts left fail instead of going back to pending.
        """
        now = self.clock()
        expired = and_(
            ProvisioningJob.status == JobStatus.PROCESSING.value,
            ProvisioningJob.locked_until.is_not(None),
            ProvisioningJob.locked_until < now,
        )
        exhausted = ProvisioningJob.attempts >= ProvisioningJob.max_attempts

        failed = await session.execute(
            update(ProvisioningJob)
            .where(expired, exhausted)
            .values(
                status=JobStatus.FAILED.value,
                locked_by=None,
                locked_until=None,
                last_error="Job timed out after max retries",
            )
            .returning(ProvisioningJob)
            .execution_options(**_RETURNING)
        )
        failed_jobs = list(failed.scalars().all())

        reset = await session.execute(
            update(ProvisioningJob)
            .where(expired, ProvisioningJob.attempts < ProvisioningJob.max_attempts)
            .values(
                status=JobStatus.PENDING.value,
                locked_by=None,
                locked_until=None,
                next_run_at=now,
                last_error=func.coalesce(
                    ProvisioningJob.last_error, "Job lock expired - rescheduled"
                ),
            )
            .returning(ProvisioningJob)
            .execution_options(**_RETURNING)
        )
        reset_jobs = list(reset.scalars().all())
        await session.commit()

        return ReapResult(reset=reset_jobs, failed=failed_jobs)

    async def get(self, session: AsyncSession, job_id: int) -> ProvisioningJob | None:
        result = await session.execute(
            select(ProvisioningJob).where(ProvisioningJob.id == job_id)
        )
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        session: AsyncSession,
        status: list[str] | None = None,
        job_type: str | None = None,
        install_id: int | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[ProvisioningJob], int]:
        """List jobs, newest first, with the total matching count."""
        query = select(ProvisioningJob)
        if status:
            query = query.where(ProvisioningJob.status.in_(status))
        if job_type:
            query = query.where(ProvisioningJob.job_type == job_type)
        if install_id is not None:
            query = query.where(ProvisioningJob.install_id == install_id)

        total_result = await session.execute(
            select(func.count()).select_from(query.subquery())
        )
        total = total_result.scalar() or 0

        jobs_result = await session.execute(
            query.order_by(ProvisioningJob.id.desc()).offset(offset).limit(limit)
        )
        return list(jobs_result.scalars().all()), total

    async def stats(self, session: AsyncSession) -> dict[str, Any]:
        """Queue counts for the admin API and health check."""
        now = self.clock()

        status_result = await session.execute(
            select(ProvisioningJob.status, func.count(ProvisioningJob.id)).group_by(
                ProvisioningJob.status
            )
        )
        by_status = {status: count for status, count in status_result.all()}

        type_result = await session.execute(
            select(ProvisioningJob.job_type, func.count(ProvisioningJob.id)).group_by(
                ProvisioningJob.job_type
            )
        )
        by_type = {job_type: count for job_type, count in type_result.all()}

        expired_result = await session.execute(
            select(func.count(ProvisioningJob.id)).where(
                ProvisioningJob.status == JobStatus.PROCESSING.value,
                ProvisioningJob.locked_until < now,
            )
        )

        return {
            "total_jobs": sum(by_status.values()),
            "by_status": by_status,
            "by_type": by_type,
            "queue_depth": by_status.get(JobStatus.PENDING.value, 0)
            + by_status.get(JobStatus.PROCESSING.value, 0),
            "expired_leases": expired_result.scalar() or 0,
        }
