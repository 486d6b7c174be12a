"""
Job queue Pydantic schemas.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from portal.v1.core.state_machines import JobStatus


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    install_id: int
    job_type: str
    status: str
    attempts: int
    max_attempts: int
    last_error: str | None = None

    # Scheduling and leasing
    next_run_at: datetime
    locked_until: datetime | None = None
    locked_by: str | None = None

    # Timestamps
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobListFilters(BaseModel):
    """Schema for job listing filters."""

    status: list[JobStatus] | None = Field(
        default=None, description="Filter by job status"
    )
    job_type: str | None = Field(default=None, description="Filter by job type")
    install_id: int | None = Field(default=None, description="Filter by install")
    limit: int = Field(
        default=50, ge=1, le=1000, description="Maximum results to return"
    )
    offset: int = Field(default=0, ge=0, description="Results offset for pagination")


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + processing
    expired_leases: int


class JobActionResponse(BaseModel):
    """Schema for job action responses (cancel, requeue)."""

    job_id: int
    action: str
    status: str
