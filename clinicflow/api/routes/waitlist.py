"""
Waitlist Endpoints.

Enrolment, listing, staff promotion and removal. Automatic promotion
happens inside the booking flow whenever a matching slot frees.
"""

import logging
import uuid
import datetime as dt
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from clinicflow.core.scheduling import SchedulingEngine, get_scheduling_engine, status_label
from clinicflow.models.database import WaitlistEntry, WaitlistStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/waitlist", tags=["Waitlist"])


class JoinWaitlistRequest(BaseModel):
    """Waitlist enrolment."""

    doctor_id: uuid.UUID
    patient_email: str = Field(..., min_length=3, max_length=200)
    patient_name: Optional[str] = Field(default=None, max_length=200)
    preferred_date: dt.date
    type: str = Field(..., min_length=1, max_length=100)


class PromoteRequest(BaseModel):
    """Staff promotion."""

    time: Optional[str] = Field(
        default=None,
        pattern=r"^\d{1,2}:\d{2}$",
        description="Slot to book; the earliest free slot of the day when omitted",
    )


class WaitlistEntryResponse(BaseModel):
    """Waitlist entry."""

    id: int
    doctor_id: uuid.UUID
    patient_email: str
    patient_name: Optional[str] = None
    preferred_date: dt.date
    type: str
    status: str
    status_label: str
    promoted_appointment_id: Optional[uuid.UUID] = None
    notified_at: Optional[dt.datetime] = None
    created_at: Optional[dt.datetime] = None
    ahead: Optional[int] = Field(default=None, description="Waiting entries ahead of this one")

    @classmethod
    def from_model(cls, entry: WaitlistEntry, ahead: Optional[int] = None) -> "WaitlistEntryResponse":
        """Build from ORM model."""
        return cls(
            id=entry.id,
            doctor_id=entry.doctor_id,
            patient_email=entry.patient_email,
            patient_name=entry.patient_name,
            preferred_date=entry.preferred_date,
            type=entry.appointment_type,
            status=entry.status.value,
            status_label=status_label(entry.status),
            promoted_appointment_id=entry.promoted_appointment_id,
            notified_at=entry.notified_at,
            created_at=entry.created_at,
            ahead=ahead,
        )


class PromotedResponse(BaseModel):
    """Promotion result."""

    entry_id: int
    appointment_id: uuid.UUID
    date: dt.date
    time: str
    status: str


@router.post(
    "",
    response_model=WaitlistEntryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Join the waitlist",
    description="An identical waiting entry is returned instead of creating a duplicate.",
)
async def join_waitlist(
    request: JoinWaitlistRequest,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> WaitlistEntryResponse:
    """Add a patient to the waitlist for a doctor, date and type."""
    entry = await engine.join_waitlist(
        request.doctor_id,
        request.patient_email,
        request.preferred_date,
        request.type,
        patient_name=request.patient_name,
    )
    return WaitlistEntryResponse.from_model(entry)


@router.get(
    "",
    response_model=list[WaitlistEntryResponse],
    summary="List waitlist entries",
)
async def list_waitlist(
    doctor_id: Optional[uuid.UUID] = None,
    day: Optional[dt.date] = Query(default=None, alias="date"),
    status_filter: Optional[WaitlistStatus] = Query(default=None, alias="status"),
    patient_email: Optional[str] = None,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> list[WaitlistEntryResponse]:
    """List entries in FIFO order."""
    entries = await engine.list_waitlist(doctor_id, day, status_filter, patient_email)
    return [WaitlistEntryResponse.from_model(e) for e in entries]


@router.get(
    "/{entry_id}",
    response_model=WaitlistEntryResponse,
    summary="Get a waitlist entry",
)
async def get_waitlist_entry(
    entry_id: int,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> WaitlistEntryResponse:
    """Get entry with its position in line."""
    entry, ahead = await engine.get_waitlist_entry(entry_id)
    return WaitlistEntryResponse.from_model(entry, ahead=ahead)


@router.post(
    "/{entry_id}/promote",
    response_model=PromotedResponse,
    summary="Promote a waitlist entry",
    description="Books the first-in-line entry. Entries behind others are rejected.",
)
async def promote_waitlist_entry(
    entry_id: int,
    request: Optional[PromoteRequest] = None,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> PromotedResponse:
    """Staff promotion of a waitlist entry."""
    time = request.time if request else None
    appointment = await engine.promote_waitlist_entry(entry_id, time)
    return PromotedResponse(
        entry_id=entry_id,
        appointment_id=appointment.id,
        date=appointment.appointment_date,
        time=appointment.appointment_time,
        status=appointment.status.value,
    )


@router.delete(
    "/{entry_id}",
    response_model=WaitlistEntryResponse,
    summary="Remove a waitlist entry",
)
async def remove_waitlist_entry(
    entry_id: int,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> WaitlistEntryResponse:
    """Remove a waiting entry."""
    return WaitlistEntryResponse.from_model(await engine.remove_waitlist_entry(entry_id))
