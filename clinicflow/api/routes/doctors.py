"""
Doctor Endpoints.

Availability, bookable slots and the day's consultation queue.
"""

import logging
import uuid
import datetime as dt
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from clinicflow.api.routes.memos import MemoResponse
from clinicflow.core.scheduling import SchedulingEngine, get_scheduling_engine
from clinicflow.models.database import Doctor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/doctors", tags=["Doctors"])


class DoctorResponse(BaseModel):
    """Doctor."""

    id: uuid.UUID
    name: str
    email: str
    specialty: Optional[str] = None
    availability: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_model(cls, doctor: Doctor) -> "DoctorResponse":
        """Build from ORM model."""
        return cls(
            id=doctor.id,
            name=doctor.name,
            email=doctor.email,
            specialty=doctor.specialty,
            availability=doctor.availability or {},
        )


class AvailabilityRequest(BaseModel):
    """Weekly availability document."""

    availability: dict[str, Any] = Field(
        ...,
        examples=[{
            "mon": {"start": "09:00", "end": "17:00", "slots": 8},
            "tue": {"start": "09:00", "end": "12:00"},
            "sat": "off",
        }],
    )


class SlotResponse(BaseModel):
    """Slot with occupancy."""

    time: str
    capacity: int
    booked: int
    available: bool


class DaySlotsResponse(BaseModel):
    """Slots of a doctor's day."""

    doctor_id: uuid.UUID
    date: dt.date
    slots: list[SlotResponse]


@router.get(
    "/{doctor_id}",
    response_model=DoctorResponse,
    summary="Get a doctor",
)
async def get_doctor(
    doctor_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> DoctorResponse:
    """Get doctor by ID."""
    return DoctorResponse.from_model(await engine.get_doctor(doctor_id))


@router.put(
    "/{doctor_id}/availability",
    response_model=DoctorResponse,
    summary="Replace weekly availability",
)
async def update_availability(
    doctor_id: uuid.UUID,
    request: AvailabilityRequest,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> DoctorResponse:
    """Replace the doctor's availability document."""
    doctor = await engine.update_availability(doctor_id, request.availability)
    return DoctorResponse.from_model(doctor)


@router.get(
    "/{doctor_id}/slots",
    response_model=DaySlotsResponse,
    summary="Bookable slots on a date",
    description="Read-only view; booking re-checks capacity.",
)
async def list_slots(
    doctor_id: uuid.UUID,
    day: dt.date = Query(..., alias="date"),
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> DaySlotsResponse:
    """List the day's slots with occupancy."""
    slots = await engine.list_slots(doctor_id, day)
    return DaySlotsResponse(
        doctor_id=doctor_id,
        date=day,
        slots=[SlotResponse(**s.to_dict()) for s in slots],
    )


@router.get(
    "/{doctor_id}/queue",
    response_model=list[MemoResponse],
    summary="Consultation queue",
    description="Memos of the day in number order (today when no date is given).",
)
async def list_queue(
    doctor_id: uuid.UUID,
    day: Optional[dt.date] = Query(default=None, alias="date"),
    include_finished: bool = False,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> list[MemoResponse]:
    """Front-desk queue board."""
    memos = await engine.list_queue(doctor_id, day, include_finished)
    return [MemoResponse.from_model(m) for m in memos]
