"""
Job administration API endpoints.

Operators inspect the queue and cancel or requeue jobs; every route requires
the admin token.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portal.config.settings import Settings, SettingsDep
from portal.infra.database import get_session
from portal.v1.core.exceptions import (
    InvalidTransitionError,
    NotFoundError,
    create_success_response,
)
from portal.v1.core.security import AdminDep, AdminPrincipal
from portal.v1.core.state_machines import JobStatus
from portal.v1.infra.jobs.schemas import (
    JobActionResponse,
    JobListFilters,
    JobListResponse,
    JobResponse,
    JobStatsResponse,
)
from portal.v1.infra.jobs.store import JobStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_job_store(settings: Settings = SettingsDep) -> JobStore:
    return JobStore(settings)


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(default=None, description="Filter by status"),
    job_type: str | None = Query(default=None, description="Filter by job type"),
    install_id: int | None = Query(default=None, description="Filter by install"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    admin: AdminPrincipal = AdminDep,
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> dict[str, Any]:
    """List jobs with filtering and pagination."""
    filters = JobListFilters(
        status=status,
        job_type=job_type,
        install_id=install_id,
        limit=limit,
        offset=offset,
    )
    jobs, total = await store.list_jobs(
        session,
        status=[s.value for s in filters.status] if filters.status else None,
        job_type=filters.job_type,
        install_id=filters.install_id,
        limit=filters.limit,
        offset=filters.offset,
    )

    response_data = JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    admin: AdminPrincipal = AdminDep,
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> dict[str, Any]:
    """Get queue statistics."""
    stats = JobStatsResponse(**await store.stats(session))
    return create_success_response(data=stats.model_dump())


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: int,
    admin: AdminPrincipal = AdminDep,
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> dict[str, Any]:
    """Get a specific job by ID."""
    job = await store.get(session, job_id)
    if not job:
        raise NotFoundError("Job not found", details={"job_id": job_id})

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: int,
    admin: AdminPrincipal = AdminDep,
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> dict[str, Any]:
    """Cancel a pending or processing job."""
    job = await store.get(session, job_id)
    if not job:
        raise NotFoundError("Job not found", details={"job_id": job_id})

    current_status = job.status
    if not await store.cancel(session, job_id):
        raise InvalidTransitionError("job", current_status, JobStatus.CANCELLED.value)

    logger.info("Job cancelled via API", extra={"job_id": job_id, "admin": admin.name})
    response = JobActionResponse(
        job_id=job_id, action="cancel", status=JobStatus.CANCELLED.value
    )
    return create_success_response(data=response.model_dump(), message="Job cancelled")


@router.post("/{job_id}/requeue", response_model=dict)
async def requeue_job(
    job_id: int,
    admin: AdminPrincipal = AdminDep,
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_job_store),
) -> dict[str, Any]:
    """Requeue a failed or cancelled job with a fresh set of attempts."""
    job = await store.get(session, job_id)
    if not job:
        raise NotFoundError("Job not found", details={"job_id": job_id})

    current_status = job.status
    if not await store.requeue(session, job_id):
        raise InvalidTransitionError("job", current_status, JobStatus.PENDING.value)

    logger.info("Job requeued via API", extra={"job_id": job_id, "admin": admin.name})
    response = JobActionResponse(
        job_id=job_id, action="requeue", status=JobStatus.PENDING.value
    )
    return create_success_response(data=response.model_dump(), message="Job requeued")
