"""
Provisioning job queue model.
"""

from datetime import datetime

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from portal.infra.database import Base, UTCDateTime, utcnow
from portal.v1.core.state_machines import JobStatus


class ProvisioningJob(Base):
    """
    One unit of provisioning work for an install.

    The row is the queue: workers lease it through ``locked_by`` /
    ``locked_until`` and every change goes through ``JobStore``.
    """

    __tablename__ = "provisioning_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    install_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("installs.id"), nullable=False
    )
    job_type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="provision | configure | deploy"
    )

    # State machine
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="Job status: pending|processing|completed|failed|cancelled",
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Scheduling and leasing
    next_run_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, comment="Earliest time to run job"
    )
    locked_until: Mapped[datetime | None] = mapped_column(
        UTCDateTime, nullable=True, comment="Lease expiry"
    )
    locked_by: Mapped[str | None] = mapped_column(
        Text, nullable=True, comment="Worker ID holding the lease"
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')",
            name="provisioning_jobs_status_check",
        ),
        CheckConstraint("attempts >= 0", name="provisioning_jobs_attempts_check"),
        Index("ix_jobs_status_next_run_at", "status", "next_run_at"),
        Index("ix_jobs_install_id_job_type", "install_id", "job_type"),
    )

    def is_active(self) -> bool:
        """Check if job is still pending or being processed."""
        return self.status in (JobStatus.PENDING.value, JobStatus.PROCESSING.value)

    def is_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def lease_expired(self, now: datetime) -> bool:
        """Check if a processing job's lease has run out."""
        if self.status != JobStatus.PROCESSING.value or self.locked_until is None:
            return False
        return self.locked_until < now
