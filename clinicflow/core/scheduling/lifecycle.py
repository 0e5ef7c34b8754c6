"""
Appointment Lifecycle Manager.

Owns appointment status. Every transition is checked against a closed
table; anything outside it raises InvalidTransitionError and is never
coerced.

    pending_payment -> paid -> checked_in -> completed
    pending_payment -> expired                 (deadline passed)
    pending_payment | paid | rescheduled -> no_show
    any non-terminal -> cancelled
    paid | rescheduled -> rescheduled          (moved, payment kept)
    pending_payment -> pending_payment         (moved, new deadline)
    checked_in -> rescheduled                  (consultation interrupted)

Leaving a blocking status releases the slot and offers it to the waitlist
inside the same transaction.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.config import Settings
from clinicflow.core.scheduling import availability
from clinicflow.core.scheduling.errors import (
    InvalidTransitionError,
    NotFoundError,
    SlotFullError,
    ValidationError,
)
from clinicflow.core.scheduling.ledger import BLOCKING_STATUSES, SlotKey, SlotLedger
from clinicflow.core.scheduling.outbox import Outbox
from clinicflow.core.scheduling.queue import ConsultationQueue
from clinicflow.core.scheduling.waitlist import WaitlistManager
from clinicflow.infra.billing import ReceiptRequest
from clinicflow.infra.notifications import (
    AUDIENCE_DOCTOR,
    AUDIENCE_PATIENT,
    AUDIENCE_RECEPTION,
    Notification,
)
from clinicflow.models.database import (
    Appointment,
    AppointmentStatus,
    ConsultationMemo,
    Doctor,
    PaymentMethod,
    WaitlistEntry,
)

logger = logging.getLogger(__name__)


TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.PENDING_PAYMENT: frozenset({
        AppointmentStatus.PAID,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.EXPIRED,
        AppointmentStatus.PENDING_PAYMENT,
    }),
    AppointmentStatus.PAID: frozenset({
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    }),
    AppointmentStatus.RESCHEDULED: frozenset({
        AppointmentStatus.CHECKED_IN,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.RESCHEDULED,
    }),
    AppointmentStatus.CHECKED_IN: frozenset({
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.RESCHEDULED,
    }),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
    AppointmentStatus.EXPIRED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    """Check whether a status change is allowed."""
    return target in TRANSITIONS[current]


def appointment_lock_key(appointment_id: uuid.UUID) -> str:
    """Lock key for one appointment row."""
    return f"appointment:{appointment_id}"


def slot_key_of(appointment: Appointment) -> SlotKey:
    """Slot an appointment is booked into."""
    return SlotKey(
        appointment.doctor_id,
        appointment.appointment_date,
        appointment.appointment_time,
    )


@dataclass
class PaymentDetails:
    """How the patient intends to pay."""

    method: PaymentMethod = PaymentMethod.ONLINE
    channel: Optional[str] = None
    instrument: Optional[str] = None
    fee: Optional[Decimal] = None


class AppointmentLifecycle:
    """Appointment state machine for one database session."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        clock: Callable[[], datetime],
        outbox: Outbox,
        ledger: SlotLedger,
        waitlist: WaitlistManager,
        queue: ConsultationQueue,
    ):
        self.session = session
        self.settings = settings
        self.clock = clock
        self.outbox = outbox
        self.ledger = ledger
        self.waitlist = waitlist
        self.queue = queue

    # === Lookups ===

    async def get(self, appointment_id: uuid.UUID) -> Appointment:
        """Load an appointment or raise NotFoundError."""
        appointment = await self.session.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        return appointment

    async def get_doctor(self, doctor_id: uuid.UUID) -> Doctor:
        """Load a doctor or raise NotFoundError."""
        doctor = await self.session.get(Doctor, doctor_id)
        if doctor is None:
            raise NotFoundError(f"Doctor {doctor_id} not found")
        return doctor

    async def list_appointments(
        self,
        doctor_id: Optional[uuid.UUID] = None,
        day: Optional[date] = None,
        patient_email: Optional[str] = None,
        status: Optional[AppointmentStatus] = None,
    ) -> list[Appointment]:
        """List appointments ordered by slot, optionally filtered."""
        query = select(Appointment)
        if doctor_id is not None:
            query = query.where(Appointment.doctor_id == doctor_id)
        if day is not None:
            query = query.where(Appointment.appointment_date == day)
        if patient_email is not None:
            query = query.where(Appointment.patient_email == normalize_email(patient_email))
        if status is not None:
            query = query.where(Appointment.status == status)

        result = await self.session.execute(
            query.order_by(
                Appointment.appointment_date,
                Appointment.appointment_time,
                Appointment.created_at,
            )
        )
        return list(result.scalars().all())

    # === Slot rules ===

    def slot_start(self, day: date, time: str) -> datetime:
        """Wall-clock start of a slot."""
        minutes = availability.parse_time(time)
        return datetime.combine(day, datetime.min.time()) + timedelta(minutes=minutes)

    def payment_deadline(self, slot_start: datetime, method: PaymentMethod) -> datetime:
        """
        Latest time payment is accepted for a slot.

        Online payments close 60 minutes before the slot, reception
        payments 15 (both configurable). A booking made inside that window
        may still pay until the slot starts.
        """
        if method == PaymentMethod.RECEPTION:
            minutes = self.settings.reception_payment_deadline_minutes
        else:
            minutes = self.settings.online_payment_deadline_minutes

        deadline = slot_start - timedelta(minutes=minutes)
        if deadline <= self.clock():
            deadline = slot_start
        return deadline

    async def validate_slot(self, doctor: Doctor, day: date, time: str) -> tuple[SlotKey, int]:
        """
        Check that (day, time) is a bookable future slot of the doctor.

        Returns:
            Tuple of (slot key with normalized time, slot capacity)

        Raises:
            ValidationError: Past date or time, or time not offered that day
        """
        normalized = availability.normalize_time(time)
        if normalized is None:
            raise ValidationError(f"Invalid time {time!r}, expected HH:MM")

        now = self.clock()
        if day < now.date():
            raise ValidationError(f"Cannot book {day.isoformat()}: date is in the past")

        offered = availability.resolve(doctor.availability, day)
        if normalized not in offered:
            raise ValidationError(
                f"Time slot {normalized} is not available for this doctor on "
                f"{day.isoformat()}",
                available=", ".join(offered) or "none",
            )

        if self.slot_start(day, normalized) <= now:
            raise ValidationError(f"Slot {normalized} on {day.isoformat()} has already started")

        capacity = availability.capacity(
            doctor.availability, day, default=self.settings.default_slot_capacity
        )
        return SlotKey(doctor.id, day, normalized), capacity

    # === Operations ===

    async def book(
        self,
        doctor_id: uuid.UUID,
        patient_email: str,
        day: date,
        time: str,
        appointment_type: str,
        payment: Optional[PaymentDetails] = None,
        patient_name: Optional[str] = None,
        waitlist_entry: Optional[WaitlistEntry] = None,
    ) -> Appointment:
        """
        Create a pending-payment appointment in a slot with capacity.

        Raises:
            NotFoundError: Unknown doctor
            ValidationError: Bad input or slot
            SlotFullError: Slot at capacity (nothing is written)
        """
        payment = payment or PaymentDetails()
        email = normalize_email(patient_email)
        if "@" not in email:
            raise ValidationError("A valid patient email is required")
        if not appointment_type or not appointment_type.strip():
            raise ValidationError("Appointment type is required")

        doctor = await self.get_doctor(doctor_id)
        key, capacity = await self.validate_slot(doctor, day, time)

        if not await self.ledger.has_capacity(key, capacity):
            raise SlotFullError(
                f"Slot {key.time} on {key.day.isoformat()} is fully booked",
                slot=str(key),
            )

        now = self.clock()
        appointment = Appointment(
            id=uuid.uuid4(),
            doctor_id=doctor.id,
            patient_email=email,
            patient_name=patient_name,
            appointment_date=key.day,
            appointment_time=key.time,
            appointment_type=appointment_type.strip(),
            status=AppointmentStatus.PENDING_PAYMENT,
            payment_method=payment.method,
            payment_channel=payment.channel,
            payment_instrument=payment.instrument,
            payment_deadline=self.payment_deadline(self.slot_start(key.day, key.time), payment.method),
            fee=payment.fee if payment.fee is not None else self.settings.default_consultation_fee,
            reschedule_count=0,
            waitlist_entry_id=waitlist_entry.id if waitlist_entry is not None else None,
            created_at=now,
            updated_at=now,
        )
        self.session.add(appointment)
        await self.session.flush()
        await self.ledger.claim(key, appointment.id, capacity)

        logger.info(
            f"Appointment {appointment.id} booked for {email} with doctor {doctor.id} "
            f"at {key.day} {key.time} (deadline {appointment.payment_deadline})"
        )
        self._notify(
            "waitlist.promoted" if waitlist_entry is not None else "appointment.created",
            appointment,
            (
                f"A slot opened up: your {appointment.appointment_type} appointment with "
                f"{doctor.name} is booked for {key.day.isoformat()} at {key.time}."
                if waitlist_entry is not None else
                f"New {appointment.appointment_type} appointment booked with {doctor.name} "
                f"for {key.day.isoformat()} at {key.time}."
            ),
        )
        return appointment

    async def mark_paid(
        self,
        appointment_id: uuid.UUID,
        recorded_by: Optional[str] = None,
        channel: Optional[str] = None,
        instrument: Optional[str] = None,
    ) -> Appointment:
        """Record payment: pending_payment -> paid."""
        appointment = await self.get(appointment_id)
        self._transition(appointment, AppointmentStatus.PAID)

        now = self.clock()
        appointment.paid_at = now
        appointment.recorded_by = recorded_by
        if channel:
            appointment.payment_channel = channel
        if instrument:
            appointment.payment_instrument = instrument
        appointment.payment_deadline = None
        await self.session.flush()

        self._notify("appointment.paid", appointment, "Payment received.")
        self._receipt(appointment, "payment")
        return appointment

    async def check_in(self, appointment_id: uuid.UUID) -> tuple[Appointment, ConsultationMemo]:
        """
        Reception check-in on the appointment day: issues a queue memo.

        Raises:
            InvalidTransitionError: Not paid (or rescheduled-with-payment)
            ValidationError: Not the appointment's date
        """
        appointment = await self.get(appointment_id)
        if not can_transition(appointment.status, AppointmentStatus.CHECKED_IN):
            raise InvalidTransitionError(
                f"Appointment is {appointment.status.value}; only paid appointments can check in",
                current=appointment.status.value,
            )
        if appointment.appointment_date != self.clock().date():
            raise ValidationError(
                f"Check-in is only possible on {appointment.appointment_date.isoformat()}"
            )

        self._transition(appointment, AppointmentStatus.CHECKED_IN)
        appointment.checked_in_at = self.clock()
        await self.session.flush()

        memo = await self.queue.issue_memo(appointment)
        self._notify(
            "appointment.checked_in",
            appointment,
            f"Checked in. Your queue number is {memo.memo_number}.",
        )
        return appointment, memo

    async def cancel(self, appointment_id: uuid.UUID, reason: Optional[str] = None) -> Appointment:
        """
        Cancel from any non-terminal status, freeing the slot.

        A checked-in patient's memo is cancelled too; if the consultation
        was in progress the doctor's session returns to idle.

        Raises:
            InvalidTransitionError: Terminal status
        """
        appointment = await self.get(appointment_id)
        self._transition(appointment, AppointmentStatus.CANCELLED)
        appointment.cancelled_at = self.clock()
        appointment.cancellation_reason = reason
        if appointment.checked_in_at is not None:
            await self.queue.cancel_for_appointment(appointment.id, reason)
        await self.session.flush()

        self._notify("appointment.cancelled", appointment, reason or "Appointment cancelled.")
        await self._free_slot(appointment)
        return appointment

    async def no_show(self, appointment_id: uuid.UUID) -> Appointment:
        """Patient never arrived: pending_payment | paid | rescheduled -> no_show."""
        appointment = await self.get(appointment_id)
        self._transition(appointment, AppointmentStatus.NO_SHOW)
        await self.session.flush()

        self._notify(
            "appointment.noshow",
            appointment,
            f"Patient {appointment.patient_name or appointment.patient_email} marked as no-show.",
        )
        await self._free_slot(appointment)
        return appointment

    async def expire(self, appointment_id: uuid.UUID) -> Appointment:
        """Payment window closed: pending_payment -> expired."""
        appointment = await self.get(appointment_id)
        self._transition(appointment, AppointmentStatus.EXPIRED)
        await self.session.flush()

        logger.info(
            f"Appointment {appointment.id} expired (deadline {appointment.payment_deadline})"
        )
        self._notify(
            "appointment.expired",
            appointment,
            "Payment was not received in time; the booking has been released.",
        )
        await self._free_slot(appointment)
        return appointment

    async def expire_overdue(self, key: SlotKey) -> list[Appointment]:
        """Expire every pending-payment appointment in a slot whose deadline passed."""
        result = await self.session.execute(
            select(Appointment.id).where(
                Appointment.doctor_id == key.doctor_id,
                Appointment.appointment_date == key.day,
                Appointment.appointment_time == key.time,
                Appointment.status == AppointmentStatus.PENDING_PAYMENT,
                Appointment.payment_deadline < self.clock(),
            )
        )
        return [await self.expire(appointment_id) for appointment_id in result.scalars().all()]

    async def reschedule(
        self,
        appointment_id: uuid.UUID,
        new_day: date,
        new_time: str,
    ) -> Appointment:
        """
        Move an appointment to another slot of the same doctor.

        The old seat is released and the new one claimed in this
        transaction; if the new slot is full nothing changes. Unpaid
        appointments stay pending_payment with a new deadline, paid ones
        become rescheduled and keep their payment.

        Raises:
            InvalidTransitionError: Status does not allow moving
            ValidationError: Invalid or unchanged target slot
            SlotFullError: Target slot at capacity
        """
        appointment = await self.get(appointment_id)
        if appointment.status == AppointmentStatus.CHECKED_IN:
            raise InvalidTransitionError(
                "Checked-in appointments are moved by interrupting the consultation",
                current=appointment.status.value,
            )
        return await self._move(appointment, new_day, new_time)

    async def reschedule_interrupted(
        self,
        appointment_id: uuid.UUID,
        new_start: datetime,
    ) -> Appointment:
        """Move a checked-in appointment whose consultation was interrupted."""
        appointment = await self.get(appointment_id)
        return await self._move(
            appointment, new_start.date(), availability.format_time(new_start.hour * 60 + new_start.minute)
        )

    async def _move(self, appointment: Appointment, new_day: date, new_time: str) -> Appointment:
        target = (
            AppointmentStatus.PENDING_PAYMENT
            if appointment.status == AppointmentStatus.PENDING_PAYMENT
            else AppointmentStatus.RESCHEDULED
        )
        if not can_transition(appointment.status, target):
            raise InvalidTransitionError(
                f"Cannot reschedule an appointment that is {appointment.status.value}",
                current=appointment.status.value,
            )

        doctor = await self.get_doctor(appointment.doctor_id)
        new_key, capacity = await self.validate_slot(doctor, new_day, new_time)
        old_key = slot_key_of(appointment)
        if new_key == old_key:
            raise ValidationError("Appointment is already booked in that slot")

        await self.ledger.release(appointment.id)
        if not await self.ledger.has_capacity(new_key, capacity):
            raise SlotFullError(
                f"Slot {new_key.time} on {new_key.day.isoformat()} is fully booked",
                slot=str(new_key),
            )
        await self.ledger.claim(new_key, appointment.id, capacity)

        appointment.status = target
        appointment.appointment_date = new_key.day
        appointment.appointment_time = new_key.time
        appointment.rescheduled_from = str(old_key)
        appointment.reschedule_count += 1
        appointment.checked_in_at = None
        appointment.updated_at = self.clock()
        if target == AppointmentStatus.PENDING_PAYMENT:
            appointment.payment_deadline = self.payment_deadline(
                self.slot_start(new_key.day, new_key.time), appointment.payment_method
            )
        await self.session.flush()

        logger.info(f"Appointment {appointment.id} moved {old_key} -> {new_key} ({target.value})")
        self._notify(
            "appointment.rescheduled",
            appointment,
            f"Appointment moved to {new_key.day.isoformat()} at {new_key.time}.",
        )
        await self.promote_waitlist(old_key, appointment.appointment_type)
        return appointment

    async def complete(self, appointment_id: uuid.UUID) -> Appointment:
        """Consultation finished: checked_in -> completed."""
        appointment = await self.get(appointment_id)
        self._transition(appointment, AppointmentStatus.COMPLETED)
        appointment.completed_at = self.clock()
        # Completed appointments no longer count against the slot
        await self.ledger.release(appointment.id)
        await self.session.flush()

        self._notify("appointment.completed", appointment, "Consultation completed.")
        self._receipt(appointment, "consultation")
        return appointment

    # === Waitlist promotion ===

    async def promote_waitlist(self, key: SlotKey, appointment_type: str) -> Optional[Appointment]:
        """Offer a freed slot to the first waiting patient of that doctor, date and type."""
        async def book_for(entry: WaitlistEntry) -> Appointment:
            return await self.book(
                entry.doctor_id,
                entry.patient_email,
                key.day,
                key.time,
                entry.appointment_type,
                patient_name=entry.patient_name,
                waitlist_entry=entry,
            )

        return await self.waitlist.promote(key.doctor_id, key.day, appointment_type, book_for)

    async def promote_entry(self, entry_id: int, time: Optional[str] = None) -> Appointment:
        """
        Staff promotion of the first entry in its queue.

        Args:
            entry_id: Waitlist entry to promote
            time: Slot to book; the earliest slot with capacity when omitted

        Raises:
            InvalidTransitionError: Entry not waiting, or not first in line
            SlotFullError: No slot with capacity that day
        """
        entry = await self.waitlist.get(entry_id)
        first = await self.waitlist.next_waiting(
            entry.doctor_id, entry.preferred_date, entry.appointment_type
        )
        if first is None or first.id != entry.id:
            raise InvalidTransitionError(
                f"Waitlist entry {entry_id} is not first in line",
                current=entry.status.value,
            )

        time = time or await self.first_free_time(entry.doctor_id, entry.preferred_date)
        if time is None:
            raise SlotFullError(
                f"No free slot on {entry.preferred_date.isoformat()} for waitlist entry {entry_id}"
            )

        appointment = await self.book(
            entry.doctor_id,
            entry.patient_email,
            entry.preferred_date,
            time,
            entry.appointment_type,
            patient_name=entry.patient_name,
            waitlist_entry=entry,
        )
        self.waitlist.mark_promoted(entry, appointment)
        await self.session.flush()
        return appointment

    async def first_free_time(self, doctor_id: uuid.UUID, day: date) -> Optional[str]:
        """Earliest future slot of the day with capacity left."""
        doctor = await self.get_doctor(doctor_id)
        capacity = availability.capacity(
            doctor.availability, day, default=self.settings.default_slot_capacity
        )
        occupancy = await self.ledger.occupancy(doctor_id, day)
        now = self.clock()
        for time in availability.resolve(doctor.availability, day):
            if self.slot_start(day, time) > now and occupancy.get(time, 0) < capacity:
                return time
        return None

    # === Helpers ===

    def _transition(self, appointment: Appointment, target: AppointmentStatus) -> None:
        current = appointment.status
        if not can_transition(current, target):
            raise InvalidTransitionError(
                f"Cannot move appointment from {current.value} to {target.value}",
                current=current.value,
            )
        appointment.status = target
        appointment.updated_at = self.clock()
        logger.info(f"Appointment {appointment.id}: {current.value} -> {target.value}")

    async def _free_slot(self, appointment: Appointment) -> None:
        key = await self.ledger.release(appointment.id)
        if key is not None and appointment.status not in BLOCKING_STATUSES:
            await self.promote_waitlist(key, appointment.appointment_type)

    def _notify(self, event_type: str, appointment: Appointment, message: str) -> None:
        self.outbox.notify(Notification(
            type=event_type,
            audience=[AUDIENCE_PATIENT, AUDIENCE_RECEPTION, AUDIENCE_DOCTOR],
            recipient=appointment.patient_email,
            message=message,
            data={
                "appointment_id": str(appointment.id),
                "doctor_id": str(appointment.doctor_id),
                "date": appointment.appointment_date.isoformat(),
                "time": appointment.appointment_time,
                "status": appointment.status.value,
            },
            created_at=self.clock(),
        ))

    def _receipt(self, appointment: Appointment, reason: str) -> None:
        self.outbox.receipt(ReceiptRequest(
            appointment_id=str(appointment.id),
            reason=reason,
            patient_email=appointment.patient_email,
            doctor_id=str(appointment.doctor_id),
            fee=appointment.fee,
            payment_method=appointment.payment_method.value,
            payment_channel=appointment.payment_channel,
            recorded_by=appointment.recorded_by,
            occurred_at=self.clock(),
        ))


def normalize_email(email: Optional[str]) -> str:
    """Trimmed, lower-cased email used as patient identity."""
    return (email or "").strip().lower()
