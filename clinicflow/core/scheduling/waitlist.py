"""
Waitlist Manager.

FIFO queue of patients wanting a fully booked (doctor, date, type). When a
matching slot frees, the earliest-created waiting entry is booked into it.
"""

import logging
import uuid
from datetime import date, datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.scheduling.errors import (
    InvalidTransitionError,
    NotFoundError,
    SlotFullError,
    ValidationError,
)
from clinicflow.models.database import Appointment, WaitlistEntry, WaitlistStatus

logger = logging.getLogger(__name__)


def waitlist_lock_key(doctor_id: uuid.UUID, day: date) -> str:
    """Lock key serializing waitlist changes for one doctor and date.

    Covers every appointment type of that day, so two slots freeing at once
    can never promote the same entry twice.
    """
    return f"waitlist:{doctor_id}|{day.isoformat()}"


# Books an appointment on behalf of a waiting entry
BookForEntry = Callable[[WaitlistEntry], Awaitable[Appointment]]


class WaitlistManager:
    """Waitlist queue operations for one database session."""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime]):
        self.session = session
        self.clock = clock

    async def get(self, entry_id: int) -> WaitlistEntry:
        """Load an entry or raise NotFoundError."""
        entry = await self.session.get(WaitlistEntry, entry_id)
        if entry is None:
            raise NotFoundError(f"Waitlist entry {entry_id} not found")
        return entry

    def _queue_filter(self, doctor_id: uuid.UUID, day: date, appointment_type: str):
        return (
            WaitlistEntry.doctor_id == doctor_id,
            WaitlistEntry.preferred_date == day,
            func.lower(WaitlistEntry.appointment_type) == appointment_type.strip().lower(),
            WaitlistEntry.status == WaitlistStatus.WAITING,
        )

    async def enqueue(
        self,
        doctor_id: uuid.UUID,
        patient_email: str,
        preferred_date: date,
        appointment_type: str,
        patient_name: Optional[str] = None,
    ) -> tuple[WaitlistEntry, bool]:
        """
        Add a patient to the waitlist.

        An identical waiting entry (same patient, doctor, date and type) is
        returned instead of creating a duplicate.

        Args:
            doctor_id: Doctor wanted
            patient_email: Patient identity
            preferred_date: Exact date wanted
            appointment_type: Consultation type
            patient_name: Display name

        Returns:
            Tuple of (entry, created)
        """
        if preferred_date < self.clock().date():
            raise ValidationError("Cannot join the waitlist for a past date")

        result = await self.session.execute(
            select(WaitlistEntry).where(
                *self._queue_filter(doctor_id, preferred_date, appointment_type),
                WaitlistEntry.patient_email == patient_email,
            )
        )
        existing = result.scalars().first()
        if existing is not None:
            return existing, False

        now = self.clock()
        entry = WaitlistEntry(
            doctor_id=doctor_id,
            patient_email=patient_email,
            patient_name=patient_name,
            preferred_date=preferred_date,
            appointment_type=appointment_type,
            status=WaitlistStatus.WAITING,
            created_at=now,
            updated_at=now,
        )
        self.session.add(entry)
        await self.session.flush()

        logger.info(
            f"Waitlist entry {entry.id} created for {patient_email} "
            f"(doctor={doctor_id}, date={preferred_date}, type={appointment_type})"
        )
        return entry, True

    async def next_waiting(
        self,
        doctor_id: uuid.UUID,
        day: date,
        appointment_type: str,
    ) -> Optional[WaitlistEntry]:
        """Earliest-created waiting entry of a queue."""
        result = await self.session.execute(
            select(WaitlistEntry)
            .where(*self._queue_filter(doctor_id, day, appointment_type))
            .order_by(WaitlistEntry.created_at, WaitlistEntry.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def position(self, entry: WaitlistEntry) -> int:
        """Number of waiting entries ahead of this one (0 = next in line)."""
        if entry.status != WaitlistStatus.WAITING:
            return 0
        result = await self.session.execute(
            select(func.count(WaitlistEntry.id)).where(
                *self._queue_filter(entry.doctor_id, entry.preferred_date, entry.appointment_type),
                (WaitlistEntry.created_at < entry.created_at)
                | ((WaitlistEntry.created_at == entry.created_at) & (WaitlistEntry.id < entry.id)),
            )
        )
        return result.scalar_one()

    async def promote(
        self,
        doctor_id: uuid.UUID,
        day: date,
        appointment_type: str,
        book: BookForEntry,
    ) -> Optional[Appointment]:
        """
        Book the earliest waiting entry into a freed slot.

        A booking that fails for capacity or validity leaves the entry
        waiting; any other error propagates and rolls the transaction back.

        Args:
            doctor_id: Doctor whose slot freed
            day: Date of the freed slot
            appointment_type: Type of the freed appointment
            book: Creates the appointment for the entry

        Returns:
            The created appointment, or None if nobody was promoted
        """
        entry = await self.next_waiting(doctor_id, day, appointment_type)
        if entry is None:
            return None

        try:
            appointment = await book(entry)
        except (SlotFullError, ValidationError) as e:
            logger.info(f"Waitlist entry {entry.id} not promoted: {e.message}")
            return None

        self.mark_promoted(entry, appointment)
        return appointment

    def mark_promoted(self, entry: WaitlistEntry, appointment: Appointment) -> None:
        """Record that an entry now owns an appointment."""
        now = self.clock()
        entry.status = WaitlistStatus.PROMOTED
        entry.promoted_appointment_id = appointment.id
        entry.notified_at = now
        entry.updated_at = now
        logger.info(
            f"Waitlist entry {entry.id} promoted to appointment {appointment.id} "
            f"at {appointment.appointment_date} {appointment.appointment_time}"
        )

    async def remove(self, entry_id: int) -> WaitlistEntry:
        """
        Staff removal of a waiting entry.

        Raises:
            NotFoundError: Unknown entry
            InvalidTransitionError: Entry already promoted or removed
        """
        entry = await self.get(entry_id)
        if entry.status != WaitlistStatus.WAITING:
            raise InvalidTransitionError(
                f"Waitlist entry {entry_id} is {entry.status.value}, not waiting",
                current=entry.status.value,
            )
        entry.status = WaitlistStatus.REMOVED
        entry.updated_at = self.clock()
        logger.info(f"Waitlist entry {entry_id} removed")
        return entry

    async def list_entries(
        self,
        doctor_id: Optional[uuid.UUID] = None,
        day: Optional[date] = None,
        status: Optional[WaitlistStatus] = None,
        patient_email: Optional[str] = None,
    ) -> list[WaitlistEntry]:
        """List entries in FIFO order, optionally filtered."""
        query = select(WaitlistEntry)
        if doctor_id is not None:
            query = query.where(WaitlistEntry.doctor_id == doctor_id)
        if day is not None:
            query = query.where(WaitlistEntry.preferred_date == day)
        if status is not None:
            query = query.where(WaitlistEntry.status == status)
        if patient_email is not None:
            query = query.where(WaitlistEntry.patient_email == patient_email)

        result = await self.session.execute(
            query.order_by(WaitlistEntry.created_at, WaitlistEntry.id)
        )
        return list(result.scalars().all())
