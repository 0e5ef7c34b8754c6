"""Tests for the Slot Ledger."""

import uuid
from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError

from clinicflow.core.scheduling.errors import SlotFullError, ValidationError
from clinicflow.core.scheduling.ledger import BLOCKING_STATUSES, SlotKey, SlotLedger
from clinicflow.models.database import AppointmentStatus, SlotClaim


DOCTOR_ID = uuid.UUID("11111111-2222-3333-4444-555555555555")
KEY = SlotKey(DOCTOR_ID, date(2030, 1, 7), "09:00")


class TestSlotKey:
    """Test SlotKey identity."""

    def test_str_and_parse(self):
        """Test the doctor|date|time form."""
        assert str(KEY) == "11111111-2222-3333-4444-555555555555|2030-01-07|09:00"
        assert SlotKey.parse(str(KEY)) == KEY

    def test_lock_key(self):
        """Test lock key namespace."""
        assert KEY.lock_key == f"slot:{KEY}"

    @pytest.mark.parametrize("value", ["", "a|b", "not-a-uuid|2030-01-07|09:00", f"{DOCTOR_ID}|2030-13-01|09:00"])
    def test_parse_malformed(self, value):
        """Test malformed keys raise ValidationError."""
        with pytest.raises(ValidationError):
            SlotKey.parse(value)


class TestBlockingStatuses:
    """Test which statuses occupy a slot."""

    def test_blocking(self):
        """Test occupying statuses."""
        assert BLOCKING_STATUSES == {
            AppointmentStatus.PENDING_PAYMENT,
            AppointmentStatus.PAID,
            AppointmentStatus.CHECKED_IN,
            AppointmentStatus.RESCHEDULED,
        }

    @pytest.mark.parametrize("status", [
        AppointmentStatus.COMPLETED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.NO_SHOW,
        AppointmentStatus.EXPIRED,
    ])
    def test_non_blocking(self, status):
        """Test finished statuses free the slot."""
        assert status not in BLOCKING_STATUSES


class TestSlotLedger:
    """Test seat claims and occupancy."""

    @pytest.mark.asyncio
    async def test_claim_until_full(self, session_factory):
        """Test seats fill in order and the next claim is rejected."""
        async with session_factory() as session:
            ledger = SlotLedger(session)

            first = await ledger.claim(KEY, uuid.uuid4(), capacity=2)
            second = await ledger.claim(KEY, uuid.uuid4(), capacity=2)

            assert (first.seat, second.seat) == (1, 2)
            assert await ledger.count(KEY) == 2
            assert not await ledger.has_capacity(KEY, 2)

            with pytest.raises(SlotFullError):
                await ledger.claim(KEY, uuid.uuid4(), capacity=2)

    @pytest.mark.asyncio
    async def test_release_frees_lowest_seat(self, session_factory):
        """Test a released seat is reused."""
        async with session_factory() as session:
            ledger = SlotLedger(session)
            first_id = uuid.uuid4()
            await ledger.claim(KEY, first_id, capacity=2)
            await ledger.claim(KEY, uuid.uuid4(), capacity=2)

            released = await ledger.release(first_id)

            assert released == KEY
            assert await ledger.count(KEY) == 1
            assert await ledger.claim_of(first_id) is None

            again = await ledger.claim(KEY, uuid.uuid4(), capacity=2)
            assert again.seat == 1

    @pytest.mark.asyncio
    async def test_release_without_claim(self, session_factory):
        """Test releasing an appointment that holds nothing."""
        async with session_factory() as session:
            assert await SlotLedger(session).release(uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_occupancy(self, session_factory):
        """Test occupancy per time for a doctor's day."""
        async with session_factory() as session:
            ledger = SlotLedger(session)
            later = SlotKey(DOCTOR_ID, KEY.day, "09:30")
            other_day = SlotKey(DOCTOR_ID, date(2030, 1, 8), "09:00")

            await ledger.claim(KEY, uuid.uuid4(), capacity=3)
            await ledger.claim(KEY, uuid.uuid4(), capacity=3)
            await ledger.claim(later, uuid.uuid4(), capacity=3)
            await ledger.claim(other_day, uuid.uuid4(), capacity=3)

            assert await ledger.occupancy(DOCTOR_ID, KEY.day) == {"09:00": 2, "09:30": 1}

    @pytest.mark.asyncio
    async def test_duplicate_seat_rejected_by_database(self, session_factory):
        """Test the unique constraint stops a writer that counted the same seat."""
        async with session_factory() as session:
            async with session.begin():
                await SlotLedger(session).claim(KEY, uuid.uuid4(), capacity=1)

        async with session_factory() as session:
            session.add(SlotClaim(
                slot_key=str(KEY),
                seat=1,
                doctor_id=KEY.doctor_id,
                claim_date=KEY.day,
                claim_time=KEY.time,
                appointment_id=uuid.uuid4(),
            ))
            with pytest.raises(IntegrityError):
                await session.flush()
