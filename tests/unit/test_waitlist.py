"""Tests for the Waitlist Manager."""

import uuid
from datetime import date

import pytest

from clinicflow.core.scheduling import (
    InvalidTransitionError,
    NotFoundError,
    SlotFullError,
    ValidationError,
)
from clinicflow.models.database import AppointmentStatus, WaitlistStatus
from tests.conftest import MONDAY, TUESDAY, notification_types


class TestJoinWaitlist:
    """Test waitlist enrolment."""

    @pytest.mark.asyncio
    async def test_fifo_positions(self, engine, doctor, clock):
        """Test entries line up in creation order."""
        entries = []
        for email in ["a@pat.test", "b@pat.test", "c@pat.test"]:
            entries.append(await engine.join_waitlist(doctor.id, email, MONDAY, "General"))
            clock.advance(minutes=1)

        positions = [(await engine.get_waitlist_entry(e.id))[1] for e in entries]

        assert positions == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_duplicate_returns_existing_entry(self, engine, doctor):
        """Test the same patient, doctor, date and type is enrolled once."""
        first = await engine.join_waitlist(doctor.id, "Pat@Pat.test", MONDAY, "General")
        second = await engine.join_waitlist(doctor.id, "pat@pat.test ", MONDAY, "general")

        assert second.id == first.id
        assert len(await engine.list_waitlist(doctor_id=doctor.id)) == 1

    @pytest.mark.asyncio
    async def test_different_type_is_separate_queue(self, engine, doctor):
        """Test type is part of the queue identity."""
        general = await engine.join_waitlist(doctor.id, "pat@pat.test", MONDAY, "General")
        dental = await engine.join_waitlist(doctor.id, "pat@pat.test", MONDAY, "Dental")

        assert general.id != dental.id

    @pytest.mark.asyncio
    async def test_past_date_rejected(self, engine, doctor):
        """Test enrolment for a day already gone."""
        with pytest.raises(ValidationError):
            await engine.join_waitlist(doctor.id, "pat@pat.test", date(2030, 1, 6), "General")

    @pytest.mark.asyncio
    async def test_type_required(self, engine, doctor):
        """Test blank type."""
        with pytest.raises(ValidationError):
            await engine.join_waitlist(doctor.id, "pat@pat.test", MONDAY, "  ")

    @pytest.mark.asyncio
    async def test_unknown_doctor(self, engine, doctor):
        """Test enrolment for a doctor that does not exist."""
        with pytest.raises(NotFoundError):
            await engine.join_waitlist(uuid.uuid4(), "pat@pat.test", MONDAY, "General")

    @pytest.mark.asyncio
    async def test_full_slot_enrols_patient(self, engine, doctor):
        """Test booking a full slot waitlists the patient."""
        await engine.book(doctor.id, "holder@pat.test", MONDAY, "09:00", "General")

        with pytest.raises(SlotFullError) as exc_info:
            await engine.book(doctor.id, "late@pat.test", MONDAY, "09:00", "General")

        entry = exc_info.value.waitlist_entry
        assert entry is not None
        assert entry.status == WaitlistStatus.WAITING
        assert entry.patient_email == "late@pat.test"

    @pytest.mark.asyncio
    async def test_full_slot_without_waitlist(self, engine, doctor):
        """Test join_waitlist=False only reports the full slot."""
        await engine.book(doctor.id, "holder@pat.test", MONDAY, "09:00", "General")

        with pytest.raises(SlotFullError) as exc_info:
            await engine.book(
                doctor.id, "late@pat.test", MONDAY, "09:00", "General", join_waitlist=False
            )

        assert exc_info.value.waitlist_entry is None
        assert await engine.list_waitlist(doctor_id=doctor.id) == []


class TestAutomaticPromotion:
    """Test promotion when a slot frees."""

    @pytest.mark.asyncio
    async def test_first_in_line_promoted_on_cancel(self, engine, doctor, clock, notifier):
        """Test the earliest entry gets the freed slot."""
        holder = await engine.book(doctor.id, "holder@pat.test", MONDAY, "09:00", "General")
        first = await engine.join_waitlist(doctor.id, "first@pat.test", MONDAY, "General")
        clock.advance(minutes=1)
        second = await engine.join_waitlist(doctor.id, "second@pat.test", MONDAY, "General")

        await engine.cancel(holder.id, reason="Patient request")

        promoted, _ = await engine.get_waitlist_entry(first.id)
        waiting, ahead = await engine.get_waitlist_entry(second.id)
        assert promoted.status == WaitlistStatus.PROMOTED
        assert promoted.notified_at is not None
        assert waiting.status == WaitlistStatus.WAITING
        assert ahead == 0

        appointment = await engine.get_appointment(promoted.promoted_appointment_id)
        assert appointment.patient_email == "first@pat.test"
        assert appointment.appointment_time == "09:00"
        assert appointment.status == AppointmentStatus.PENDING_PAYMENT
        assert appointment.waitlist_entry_id == first.id
        assert "waitlist.promoted" in notification_types(notifier)

    @pytest.mark.asyncio
    async def test_other_type_not_promoted(self, engine, doctor):
        """Test only the freed appointment's type is offered the slot."""
        holder = await engine.book(doctor.id, "holder@pat.test", MONDAY, "09:00", "General")
        dental = await engine.join_waitlist(doctor.id, "dental@pat.test", MONDAY, "Dental")

        await engine.cancel(holder.id)

        entry, _ = await engine.get_waitlist_entry(dental.id)
        assert entry.status == WaitlistStatus.WAITING

    @pytest.mark.asyncio
    async def test_no_show_promotes(self, engine, doctor):
        """Test a no-show frees the slot for the waitlist."""
        holder = await engine.book(doctor.id, "holder@pat.test", MONDAY, "09:00", "General")
        entry = await engine.join_waitlist(doctor.id, "next@pat.test", MONDAY, "General")

        await engine.no_show(holder.id)

        promoted, _ = await engine.get_waitlist_entry(entry.id)
        assert promoted.status == WaitlistStatus.PROMOTED


class TestStaffActions:
    """Test staff promotion and removal."""

    @pytest.mark.asyncio
    async def test_promote_first_in_line_to_earliest_free_slot(self, engine, doctor):
        """Test promotion without a time picks the earliest free slot."""
        await engine.book(doctor.id, "holder@pat.test", MONDAY, "09:00", "General")
        entry = await engine.join_waitlist(doctor.id, "pat@pat.test", MONDAY, "General")

        appointment = await engine.promote_waitlist_entry(entry.id)

        assert appointment.appointment_time == "09:30"
        promoted, _ = await engine.get_waitlist_entry(entry.id)
        assert promoted.status == WaitlistStatus.PROMOTED
        assert promoted.promoted_appointment_id == appointment.id

    @pytest.mark.asyncio
    async def test_promote_into_given_time(self, engine, doctor):
        """Test promotion into a chosen slot."""
        entry = await engine.join_waitlist(doctor.id, "pat@pat.test", MONDAY, "General")

        appointment = await engine.promote_waitlist_entry(entry.id, "10:30")

        assert appointment.appointment_time == "10:30"

    @pytest.mark.asyncio
    async def test_promote_out_of_order_rejected(self, engine, doctor, clock):
        """Test an entry behind others cannot jump the queue."""
        await engine.join_waitlist(doctor.id, "first@pat.test", MONDAY, "General")
        clock.advance(minutes=1)
        second = await engine.join_waitlist(doctor.id, "second@pat.test", MONDAY, "General")

        with pytest.raises(InvalidTransitionError):
            await engine.promote_waitlist_entry(second.id)

    @pytest.mark.asyncio
    async def test_promote_with_no_free_slot(self, engine, doctor):
        """Test promotion on a fully booked day."""
        for i, time in enumerate(["09:00", "09:00", "10:00", "10:00"]):
            await engine.book(doctor.id, f"p{i}@pat.test", TUESDAY, time, "General")
        entry = await engine.join_waitlist(doctor.id, "pat@pat.test", TUESDAY, "General")

        with pytest.raises(SlotFullError):
            await engine.promote_waitlist_entry(entry.id)

    @pytest.mark.asyncio
    async def test_remove(self, engine, doctor):
        """Test removal, and that a removed entry is never promoted."""
        holder = await engine.book(doctor.id, "holder@pat.test", MONDAY, "09:00", "General")
        entry = await engine.join_waitlist(doctor.id, "pat@pat.test", MONDAY, "General")

        removed = await engine.remove_waitlist_entry(entry.id)
        assert removed.status == WaitlistStatus.REMOVED

        with pytest.raises(InvalidTransitionError):
            await engine.remove_waitlist_entry(entry.id)

        await engine.cancel(holder.id)
        entry, _ = await engine.get_waitlist_entry(entry.id)
        assert entry.status == WaitlistStatus.REMOVED

    @pytest.mark.asyncio
    async def test_unknown_entry(self, engine, doctor):
        """Test lookups of missing entries."""
        with pytest.raises(NotFoundError):
            await engine.get_waitlist_entry(999)
        with pytest.raises(NotFoundError):
            await engine.remove_waitlist_entry(999)
