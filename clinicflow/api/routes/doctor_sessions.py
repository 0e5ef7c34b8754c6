"""
Doctor Session Endpoints.

The doctor's live working state: idle, busy (serving a memo), on break, or
handling an emergency.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from clinicflow.api.routes.memos import MemoResponse
from clinicflow.core.scheduling import (
    SchedulingEngine,
    SessionChange,
    get_scheduling_engine,
    status_label,
)
from clinicflow.models.database import DoctorSession, SessionStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/doctor-sessions", tags=["Doctor Sessions"])


class SessionUpdateRequest(BaseModel):
    """Session status change."""

    status: SessionStatus
    note: Optional[str] = Field(default=None, max_length=1000)
    memo_id: Optional[uuid.UUID] = Field(
        default=None,
        description="Waiting memo to start (required when status is busy)",
    )
    reschedule_to: Optional[datetime] = Field(
        default=None,
        description="New slot for a consultation interrupted by break or emergency; "
                    "the appointment is cancelled when omitted",
    )


class SessionResponse(BaseModel):
    """Doctor session."""

    doctor_id: uuid.UUID
    status: str
    status_label: str
    active_memo_id: Optional[uuid.UUID] = None
    note: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, session: DoctorSession) -> "SessionResponse":
        """Build from ORM model."""
        return cls(
            doctor_id=session.doctor_id,
            status=session.status.value,
            status_label=status_label(session.status),
            active_memo_id=session.active_memo_id,
            note=session.note,
            updated_at=session.updated_at,
        )


class SessionChangeResponse(BaseModel):
    """Session after a change, with the memos it touched."""

    session: SessionResponse
    previous_status: str
    started: Optional[MemoResponse] = None
    completed: Optional[MemoResponse] = None
    interrupted: Optional[MemoResponse] = None

    @classmethod
    def from_change(cls, change: SessionChange) -> "SessionChangeResponse":
        """Build from a SessionChange."""
        return cls(
            session=SessionResponse.from_model(change.session),
            previous_status=change.previous.value,
            started=MemoResponse.from_model(change.started) if change.started else None,
            completed=MemoResponse.from_model(change.completed) if change.completed else None,
            interrupted=MemoResponse.from_model(change.interrupted) if change.interrupted else None,
        )


@router.post(
    "/{doctor_id}/ensure",
    response_model=SessionResponse,
    summary="Ensure a session exists",
    description="Idempotent. Creates an idle session on first use.",
)
async def ensure_session(
    doctor_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> SessionResponse:
    """Create the doctor's session if missing."""
    return SessionResponse.from_model(await engine.ensure_session(doctor_id))


@router.get(
    "/{doctor_id}",
    response_model=SessionResponse,
    summary="Get a doctor's session",
)
async def get_session(
    doctor_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> SessionResponse:
    """Get the doctor's current session status."""
    return SessionResponse.from_model(await engine.get_session(doctor_id))


@router.put(
    "/{doctor_id}",
    response_model=SessionChangeResponse,
    summary="Change session status",
    description=(
        "idle <-> busy, idle/busy -> break or emergency, break/emergency -> idle. "
        "Going on break or emergency mid-consultation reschedules or cancels it."
    ),
)
async def update_session(
    doctor_id: uuid.UUID,
    request: SessionUpdateRequest,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> SessionChangeResponse:
    """Move the doctor's session to a new status."""
    change = await engine.set_session_status(
        doctor_id,
        request.status,
        note=request.note,
        memo_id=request.memo_id,
        reschedule_to=request.reschedule_to,
    )
    return SessionChangeResponse.from_change(change)


@router.post(
    "/{doctor_id}/start-next",
    response_model=list[SessionChangeResponse],
    summary="Call the next patient",
    description="Finishes any open consultation, then starts the lowest-numbered waiting memo.",
)
async def start_next(
    doctor_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> list[SessionChangeResponse]:
    """Serve the next waiting patient."""
    changes = await engine.start_next(doctor_id)
    return [SessionChangeResponse.from_change(c) for c in changes]
