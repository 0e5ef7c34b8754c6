"""
Health Check Endpoints

Liveness and readiness probes for load balancers and Kubernetes, and a
scheduling snapshot (today's counts, expiry sweep state) for monitoring.
"""

import logging
import datetime as dt
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clinicflow.config import settings
from clinicflow.core.scheduling import (
    SchedulingEngine,
    get_expiry_sweeper,
    get_scheduling_engine,
)
from clinicflow.core.scheduling.engine import clinic_clock
from clinicflow.infra.database import check_db_health
from clinicflow.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

API_VERSION = "0.1.0"

# Track application start time for uptime calculation
_start_time: Optional[dt.datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = dt.datetime.now(dt.timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    """Get application uptime in seconds."""
    if _start_time is None:
        return None
    return (dt.datetime.now(dt.timezone.utc) - _start_time).total_seconds()


async def dependency_checks() -> tuple[dict[str, str], bool]:
    """
    Check what the scheduling engine depends on.

    Only the database is required. Redis down means key locks are
    process-local (reported as degraded), and the expiry sweep is
    reported but lazy expiry covers it.

    Returns:
        Tuple of (check name -> state, ready)
    """
    checks = {}

    db_ok = await check_db_health()
    checks["database"] = "ok" if db_ok else "failed"
    if not db_ok:
        logger.warning("Readiness check: database unavailable")

    if settings.redis_locks_enabled:
        redis_ok = await check_redis_health()
        checks["redis"] = "ok" if redis_ok else "degraded"
        if not redis_ok:
            logger.warning("Readiness check: Redis unavailable - locks are process-local")
    else:
        checks["redis"] = "disabled"

    checks["expiry_sweep"] = get_expiry_sweeper().status
    return checks, db_ok


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: dt.datetime
    version: str
    environment: str
    clinic_timezone: str
    clinic_time: dt.datetime = Field(..., description="Wall-clock time deadlines are judged against")


class ReadyResponse(BaseModel):
    """Readiness check response with dependency status."""
    status: str
    timestamp: dt.datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    """Liveness check response."""
    status: str
    timestamp: dt.datetime
    uptime_seconds: Optional[float] = None


class SweepStatus(BaseModel):
    """Payment expiry sweep state."""
    status: str
    interval_seconds: int
    last_run: Optional[dt.datetime] = None
    last_expired: int = 0
    last_error: Optional[str] = None


class SchedulingSnapshot(BaseModel):
    """Counts for one clinic day across all doctors."""
    date: dt.date
    appointments: dict[str, int]
    waitlist_waiting: int
    memos: dict[str, int]
    overdue_unpaid: int = Field(..., description="Unpaid bookings past their deadline, any date")
    expiry_sweep: SweepStatus


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
    description="Returns 200 if the application is running. Does not check dependencies.",
)
async def health() -> HealthResponse:
    """Basic health check with the clinic's current wall-clock time."""
    return HealthResponse(
        status="healthy",
        timestamp=dt.datetime.now(dt.timezone.utc),
        version=API_VERSION,
        environment=settings.app_env,
        clinic_timezone=settings.clinic_timezone,
        clinic_time=clinic_clock(settings.clinic_timezone)(),
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    description="Returns 503 if the database is unavailable. Redis and the sweep are reported only.",
    responses={
        200: {"description": "Ready to take bookings"},
        503: {"description": "Database unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """Readiness probe for load balancers and Kubernetes."""
    checks, ok = await dependency_checks()
    response = ReadyResponse(
        status="ready" if ok else "not_ready",
        timestamp=dt.datetime.now(dt.timezone.utc),
        checks=checks,
    )

    if not ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )
    return response


@router.get(
    "/live",
    response_model=LiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
    description="Returns 200 if the process is alive. Used for container restart decisions.",
)
async def live() -> LiveResponse:
    """Liveness probe for Kubernetes."""
    return LiveResponse(
        status="alive",
        timestamp=dt.datetime.now(dt.timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )


@router.get(
    "/scheduling",
    response_model=SchedulingSnapshot,
    summary="Scheduling snapshot",
    description="Appointment, waitlist and queue counts for a day (today by default).",
)
async def scheduling(
    day: Optional[dt.date] = Query(default=None, alias="date"),
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> SchedulingSnapshot:
    """Front-desk monitoring counts plus the expiry sweep state."""
    summary = await engine.daily_summary(day)
    return SchedulingSnapshot(
        date=summary.day,
        appointments=summary.appointments,
        waitlist_waiting=summary.waitlist_waiting,
        memos=summary.memos,
        overdue_unpaid=summary.overdue_unpaid,
        expiry_sweep=SweepStatus(**get_expiry_sweeper().to_dict()),
    )
