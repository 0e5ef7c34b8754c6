"""
Appointment Endpoints.

Booking, payment, check-in, cancellation, no-show and reschedule.
"""

import logging
import uuid
import datetime as dt
from decimal import Decimal
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from clinicflow.api.routes.memos import MemoResponse
from clinicflow.api.routes.waitlist import WaitlistEntryResponse
from clinicflow.core.scheduling import (
    PaymentDetails,
    SchedulingEngine,
    SlotFullError,
    get_scheduling_engine,
    status_label,
)
from clinicflow.models.database import Appointment, AppointmentStatus, PaymentMethod

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/appointments", tags=["Appointments"])


# === Request models ===

class BookAppointmentRequest(BaseModel):
    """Booking request."""

    doctor_id: uuid.UUID
    patient_email: str = Field(..., min_length=3, max_length=200, examples=["pat@example.com"])
    patient_name: Optional[str] = Field(default=None, max_length=200)
    date: dt.date = Field(..., examples=["2024-06-01"])
    time: str = Field(..., pattern=r"^\d{1,2}:\d{2}$", examples=["10:00"])
    type: str = Field(..., min_length=1, max_length=100, examples=["General Consultation"])
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    payment_channel: Optional[str] = Field(default=None, max_length=100)
    payment_instrument: Optional[str] = Field(default=None, max_length=100)
    fee: Optional[Decimal] = Field(default=None, ge=0)
    join_waitlist: bool = Field(
        default=True,
        description="Join the waitlist when the slot is full instead of failing",
    )


class PayRequest(BaseModel):
    """Payment record."""

    recorded_by: Optional[str] = Field(default=None, max_length=200)
    payment_channel: Optional[str] = Field(default=None, max_length=100)
    payment_instrument: Optional[str] = Field(default=None, max_length=100)


class CancelRequest(BaseModel):
    """Cancellation."""

    reason: Optional[str] = Field(default=None, max_length=1000)


class RescheduleRequest(BaseModel):
    """Move to another slot of the same doctor."""

    date: dt.date
    time: str = Field(..., pattern=r"^\d{1,2}:\d{2}$")


# === Response models ===

class AppointmentResponse(BaseModel):
    """Appointment."""

    id: uuid.UUID
    doctor_id: uuid.UUID
    patient_email: str
    patient_name: Optional[str] = None
    date: dt.date
    time: str
    type: str
    status: str
    status_label: str
    payment_method: str
    payment_channel: Optional[str] = None
    payment_instrument: Optional[str] = None
    payment_deadline: Optional[dt.datetime] = None
    fee: Optional[Decimal] = None
    paid_at: Optional[dt.datetime] = None
    recorded_by: Optional[str] = None
    checked_in_at: Optional[dt.datetime] = None
    completed_at: Optional[dt.datetime] = None
    cancelled_at: Optional[dt.datetime] = None
    cancellation_reason: Optional[str] = None
    rescheduled_from: Optional[str] = None
    reschedule_count: int = 0
    waitlist_entry_id: Optional[int] = None

    @classmethod
    def from_model(cls, appointment: Appointment) -> "AppointmentResponse":
        """Build from ORM model."""
        return cls(
            id=appointment.id,
            doctor_id=appointment.doctor_id,
            patient_email=appointment.patient_email,
            patient_name=appointment.patient_name,
            date=appointment.appointment_date,
            time=appointment.appointment_time,
            type=appointment.appointment_type,
            status=appointment.status.value,
            status_label=status_label(appointment.status),
            payment_method=appointment.payment_method.value,
            payment_channel=appointment.payment_channel,
            payment_instrument=appointment.payment_instrument,
            payment_deadline=appointment.payment_deadline,
            fee=appointment.fee,
            paid_at=appointment.paid_at,
            recorded_by=appointment.recorded_by,
            checked_in_at=appointment.checked_in_at,
            completed_at=appointment.completed_at,
            cancelled_at=appointment.cancelled_at,
            cancellation_reason=appointment.cancellation_reason,
            rescheduled_from=appointment.rescheduled_from,
            reschedule_count=appointment.reschedule_count,
            waitlist_entry_id=appointment.waitlist_entry_id,
        )


class WaitlistedResponse(BaseModel):
    """Returned with 202 when the slot was full and the patient was waitlisted."""

    waitlisted: bool = True
    detail: str
    entry: WaitlistEntryResponse


class CheckInResponse(BaseModel):
    """Check-in result with the issued queue memo."""

    appointment: AppointmentResponse
    memo: MemoResponse


class ErrorResponse(BaseModel):
    """Error response."""

    error: str
    detail: Optional[str] = None


# === Endpoints ===

@router.post(
    "",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book an appointment",
    responses={
        201: {"description": "Appointment created, awaiting payment"},
        202: {"model": WaitlistedResponse, "description": "Slot full, patient waitlisted"},
        400: {"model": ErrorResponse, "description": "Invalid date, time or slot"},
        404: {"model": ErrorResponse, "description": "Doctor not found"},
        409: {"model": ErrorResponse, "description": "Slot full (join_waitlist=false)"},
    },
)
async def book_appointment(
    request: BookAppointmentRequest,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> Union[AppointmentResponse, JSONResponse]:
    """
    Book a slot.

    The server is the only authority on capacity: a slot shown as free in
    a listing can still be taken by the time this request runs.
    """
    try:
        appointment = await engine.book(
            doctor_id=request.doctor_id,
            patient_email=request.patient_email,
            day=request.date,
            time=request.time,
            appointment_type=request.type,
            payment=PaymentDetails(
                method=request.payment_method,
                channel=request.payment_channel,
                instrument=request.payment_instrument,
                fee=request.fee,
            ),
            patient_name=request.patient_name,
            join_waitlist=request.join_waitlist,
        )
    except SlotFullError as e:
        if e.waitlist_entry is None:
            raise
        body = WaitlistedResponse(
            detail=e.message,
            entry=WaitlistEntryResponse.from_model(e.waitlist_entry),
        )
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=body.model_dump(mode="json"),
        )

    return AppointmentResponse.from_model(appointment)


@router.get(
    "",
    response_model=list[AppointmentResponse],
    summary="List appointments",
)
async def list_appointments(
    doctor_id: Optional[uuid.UUID] = None,
    day: Optional[dt.date] = Query(default=None, alias="date"),
    patient_email: Optional[str] = None,
    status_filter: Optional[AppointmentStatus] = Query(default=None, alias="status"),
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> list[AppointmentResponse]:
    """List appointments, filtered by doctor, date, patient or status."""
    appointments = await engine.list_appointments(doctor_id, day, patient_email, status_filter)
    return [AppointmentResponse.from_model(a) for a in appointments]


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    summary="Get an appointment",
    description="Unpaid appointments past their payment deadline are expired on read.",
)
async def get_appointment(
    appointment_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> AppointmentResponse:
    """Get appointment by ID."""
    return AppointmentResponse.from_model(await engine.get_appointment(appointment_id))


@router.post(
    "/{appointment_id}/pay",
    response_model=AppointmentResponse,
    summary="Record payment",
)
async def pay_appointment(
    appointment_id: uuid.UUID,
    request: Optional[PayRequest] = None,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> AppointmentResponse:
    """Mark a pending-payment appointment as paid."""
    request = request or PayRequest()
    appointment = await engine.mark_paid(
        appointment_id,
        recorded_by=request.recorded_by,
        channel=request.payment_channel,
        instrument=request.payment_instrument,
    )
    return AppointmentResponse.from_model(appointment)


@router.post(
    "/{appointment_id}/checkin",
    response_model=CheckInResponse,
    summary="Check in",
    description="Reception check-in on the appointment day. Issues a queue memo.",
)
async def check_in_appointment(
    appointment_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> CheckInResponse:
    """Check a paid patient in."""
    appointment, memo = await engine.check_in(appointment_id)
    return CheckInResponse(
        appointment=AppointmentResponse.from_model(appointment),
        memo=MemoResponse.from_model(memo),
    )


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentResponse,
    summary="Cancel",
)
async def cancel_appointment(
    appointment_id: uuid.UUID,
    request: Optional[CancelRequest] = None,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> AppointmentResponse:
    """Cancel an appointment; the slot is offered to the waitlist."""
    reason = request.reason if request else None
    return AppointmentResponse.from_model(await engine.cancel(appointment_id, reason))


@router.post(
    "/{appointment_id}/noshow",
    response_model=AppointmentResponse,
    summary="Mark no-show",
)
async def no_show_appointment(
    appointment_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> AppointmentResponse:
    """Mark a patient who never arrived."""
    return AppointmentResponse.from_model(await engine.no_show(appointment_id))


@router.post(
    "/{appointment_id}/expire",
    response_model=AppointmentResponse,
    summary="Expire unpaid booking",
)
async def expire_appointment(
    appointment_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> AppointmentResponse:
    """Release an unpaid booking now rather than at its deadline."""
    return AppointmentResponse.from_model(await engine.expire(appointment_id))


@router.post(
    "/{appointment_id}/reschedule",
    response_model=AppointmentResponse,
    summary="Reschedule",
)
async def reschedule_appointment(
    appointment_id: uuid.UUID,
    request: RescheduleRequest,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> AppointmentResponse:
    """Move the appointment to another slot of the same doctor."""
    appointment = await engine.reschedule(appointment_id, request.date, request.time)
    return AppointmentResponse.from_model(appointment)
