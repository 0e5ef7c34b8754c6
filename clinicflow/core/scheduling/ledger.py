"""
Slot Ledger.

Tracks occupancy per slot key. Each appointment in a blocking status owns
exactly one SlotClaim row; claims take the lowest free seat in
1..capacity and the (slot_key, seat) unique constraint rejects a
concurrent writer that counted the same free seat.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.scheduling.errors import SlotFullError, ValidationError
from clinicflow.models.database import AppointmentStatus, SlotClaim

logger = logging.getLogger(__name__)


BLOCKING_STATUSES = frozenset({
    AppointmentStatus.PENDING_PAYMENT,
    AppointmentStatus.PAID,
    AppointmentStatus.CHECKED_IN,
    AppointmentStatus.RESCHEDULED,
})


@dataclass(frozen=True)
class SlotKey:
    """Identity of one bookable slot: (doctor, date, time)."""

    doctor_id: uuid.UUID
    day: date
    time: str

    def __str__(self) -> str:
        return f"{self.doctor_id}|{self.day.isoformat()}|{self.time}"

    @property
    def lock_key(self) -> str:
        return f"slot:{self}"

    @classmethod
    def parse(cls, value: str) -> "SlotKey":
        """Parse the "doctor_id|YYYY-MM-DD|HH:MM" form."""
        try:
            doctor, day, time = value.split("|")
            return cls(uuid.UUID(doctor), date.fromisoformat(day), time)
        except ValueError:
            raise ValidationError(f"Malformed slot key: {value!r}") from None


class SlotLedger:
    """Occupancy counting and seat claims for one database session."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def count(self, key: SlotKey) -> int:
        """Number of blocking occupancies of a slot."""
        result = await self.session.execute(
            select(func.count(SlotClaim.id)).where(SlotClaim.slot_key == str(key))
        )
        return result.scalar_one()

    async def has_capacity(self, key: SlotKey, capacity: int) -> bool:
        """Check whether one more booking fits in the slot."""
        return await self.count(key) < capacity

    async def claim(
        self,
        key: SlotKey,
        appointment_id: uuid.UUID,
        capacity: int,
    ) -> SlotClaim:
        """
        Occupy one seat of a slot for an appointment.

        The row is flushed immediately so a seat collision surfaces as an
        IntegrityError inside the caller's transaction.

        Args:
            key: Slot to occupy
            appointment_id: Appointment taking the seat
            capacity: Seats available in the slot

        Returns:
            The new claim

        Raises:
            SlotFullError: No seat left
        """
        result = await self.session.execute(
            select(SlotClaim.seat).where(SlotClaim.slot_key == str(key))
        )
        taken = set(result.scalars().all())
        if len(taken) >= capacity:
            raise SlotFullError(
                f"Slot {key.time} on {key.day.isoformat()} is fully booked",
                slot=str(key),
            )

        seat = next(s for s in range(1, capacity + 1) if s not in taken)
        claim = SlotClaim(
            slot_key=str(key),
            seat=seat,
            doctor_id=key.doctor_id,
            claim_date=key.day,
            claim_time=key.time,
            appointment_id=appointment_id,
        )
        self.session.add(claim)
        await self.session.flush()

        logger.debug(f"Seat {seat}/{capacity} of {key} claimed by {appointment_id}")
        return claim

    async def release(self, appointment_id: uuid.UUID) -> Optional[SlotKey]:
        """
        Drop an appointment's claim.

        Returns:
            The freed slot, or None if the appointment held no claim
        """
        claim = await self.claim_of(appointment_id)
        if claim is None:
            return None

        await self.session.delete(claim)
        await self.session.flush()

        key = SlotKey(claim.doctor_id, claim.claim_date, claim.claim_time)
        logger.debug(f"Seat {claim.seat} of {key} released by {appointment_id}")
        return key

    async def claim_of(self, appointment_id: uuid.UUID) -> Optional[SlotClaim]:
        """Current claim held by an appointment, if any."""
        result = await self.session.execute(
            select(SlotClaim).where(SlotClaim.appointment_id == appointment_id)
        )
        return result.scalar_one_or_none()

    async def occupancy(self, doctor_id: uuid.UUID, day: date) -> dict[str, int]:
        """Blocking occupancies per slot time for one doctor and date."""
        result = await self.session.execute(
            select(SlotClaim.claim_time, func.count(SlotClaim.id))
            .where(SlotClaim.doctor_id == doctor_id, SlotClaim.claim_date == day)
            .group_by(SlotClaim.claim_time)
        )
        return {time: count for time, count in result.all()}
