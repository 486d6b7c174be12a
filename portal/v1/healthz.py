from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from portal.config.settings import Settings, SettingsDep
from portal.infra.database import get_session
from portal.v1.core.exceptions import create_success_response
from portal.v1.infra.jobs.store import JobStore

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Provisioning queue health status."""

    queue_depth: int = 0
    pending_jobs: int = 0
    processing_jobs: int = 0
    failed_jobs: int = 0
    expired_leases: int = 0


class HealthResponse(BaseModel):
    """Health response with database and queue status."""

    ok: bool
    version: str
    environment: str
    timestamp: str
    database: DatabaseHealth
    queue: QueueHealth | None = None


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check endpoint with database and queue status."""

    timestamp = datetime.now(UTC).isoformat()
    overall_ok = True

    db_health = await _check_database_health(session)
    if not db_health.connected:
        overall_ok = False

    # Queue health is informational; it never fails the check on its own
    queue_health = None
    if db_health.connected:
        try:
            queue_health = await _check_queue_health(session, settings)
        except Exception:
            queue_health = QueueHealth()

    health = HealthResponse(
        ok=overall_ok,
        version=settings.version,
        environment=settings.environment,
        timestamp=timestamp,
        database=db_health,
        queue=queue_health,
    )

    return create_success_response(data=health.model_dump())


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(session: AsyncSession, settings: Settings) -> QueueHealth:
    """Summarize queue depth and leases left behind by dead workers."""
    stats = await JobStore(settings).stats(session)
    by_status = stats["by_status"]

    return QueueHealth(
        queue_depth=stats["queue_depth"],
        pending_jobs=by_status.get("pending", 0),
        processing_jobs=by_status.get("processing", 0),
        failed_jobs=by_status.get("failed", 0),
        expired_leases=stats["expired_leases"],
    )
