"""Tests for the Doctor Session Controller."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from clinicflow.core.scheduling import (
    SESSION_TRANSITIONS,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from clinicflow.models.database import (
    AppointmentStatus,
    MemoStatus,
    SessionStatus,
)
from tests.conftest import AVAILABILITY, MONDAY, TUESDAY, notification_types


async def checked_in_memo(engine, doctor, email: str, time: str):
    """Book, pay and check in on the Monday; returns the issued memo."""
    appointment = await engine.book(doctor.id, email, MONDAY, time, "General")
    await engine.mark_paid(appointment.id)
    _, memo = await engine.check_in(appointment.id)
    return memo


class TestSessionTable:
    """Test the session transition table."""

    def test_break_and_emergency_only_resume(self):
        """Test paused sessions can only go back to idle."""
        assert SESSION_TRANSITIONS[SessionStatus.BREAK] == {SessionStatus.IDLE}
        assert SESSION_TRANSITIONS[SessionStatus.EMERGENCY] == {SessionStatus.IDLE}

    def test_no_self_transitions(self):
        """Test a status never transitions to itself."""
        for status, targets in SESSION_TRANSITIONS.items():
            assert status not in targets


class TestSessionLifecycle:
    """Test session creation and simple status changes."""

    @pytest.mark.asyncio
    async def test_get_session_defaults_to_idle(self, engine, doctor):
        """Test a doctor without a session reads as idle."""
        session = await engine.get_session(doctor.id)

        assert session.status == SessionStatus.IDLE
        assert session.active_memo_id is None

    @pytest.mark.asyncio
    async def test_ensure_session_idempotent(self, engine, doctor):
        """Test ensuring twice keeps one idle session."""
        first = await engine.ensure_session(doctor.id)
        second = await engine.ensure_session(doctor.id)

        assert first.doctor_id == second.doctor_id == doctor.id
        assert second.status == SessionStatus.IDLE

    @pytest.mark.asyncio
    async def test_unknown_doctor(self, engine, doctor):
        """Test sessions for a missing doctor."""
        with pytest.raises(NotFoundError):
            await engine.ensure_session(uuid.uuid4())
        with pytest.raises(NotFoundError):
            await engine.get_session(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_break_and_resume(self, engine, doctor):
        """Test idle -> break -> idle."""
        change = await engine.set_session_status(doctor.id, SessionStatus.BREAK)
        assert change.previous == SessionStatus.IDLE
        assert change.session.status == SessionStatus.BREAK
        assert change.session.note == "On break"

        with pytest.raises(InvalidTransitionError):
            await engine.set_session_status(doctor.id, SessionStatus.EMERGENCY)

        resumed = await engine.set_session_status(doctor.id, SessionStatus.IDLE)
        assert resumed.session.status == SessionStatus.IDLE
        assert resumed.session.note is None

    @pytest.mark.asyncio
    async def test_emergency_notifies(self, engine, doctor, notifier):
        """Test an emergency is announced to reception."""
        change = await engine.set_session_status(
            doctor.id, SessionStatus.EMERGENCY, note="Called to ER"
        )

        assert change.session.note == "Called to ER"
        assert notification_types(notifier) == ["doctor.emergency"]
        assert notifier.dispatch.call_args.args[0].message == "Called to ER"

    @pytest.mark.asyncio
    async def test_busy_requires_memo(self, engine, doctor):
        """Test a consultation cannot start without a memo."""
        with pytest.raises(ValidationError):
            await engine.set_session_status(doctor.id, SessionStatus.BUSY)

    @pytest.mark.asyncio
    async def test_busy_with_other_doctors_memo(self, engine, doctor):
        """Test a doctor cannot serve another doctor's patient."""
        other = await engine.add_doctor(
            "Dr. Ben Ortiz", "ben.ortiz@clinic.test", availability_doc=AVAILABILITY
        )
        memo = await checked_in_memo(engine, other, "pat@pat.test", "09:00")

        with pytest.raises(ValidationError):
            await engine.set_session_status(doctor.id, SessionStatus.BUSY, memo_id=memo.id)


class TestInterruptedConsultation:
    """Test break or emergency while a patient is being seen."""

    @pytest.mark.asyncio
    async def test_emergency_reschedules_patient(self, engine, doctor):
        """Test the active memo is rescheduled with its appointment."""
        memo = await checked_in_memo(engine, doctor, "pat@pat.test", "09:00")
        await engine.start_memo(memo.id)
        new_start = datetime(2030, 1, 8, 9, 0)

        change = await engine.set_session_status(
            doctor.id, SessionStatus.EMERGENCY, reschedule_to=new_start
        )

        assert change.session.status == SessionStatus.EMERGENCY
        assert change.session.active_memo_id is None
        assert change.session.note == "Emergency - session paused"
        assert change.interrupted.status == MemoStatus.RESCHEDULED
        assert change.interrupted.rescheduled_to == new_start

        appointment = await engine.get_appointment(memo.appointment_id)
        assert appointment.status == AppointmentStatus.RESCHEDULED
        assert appointment.appointment_date == TUESDAY
        assert appointment.appointment_time == "09:00"
        assert appointment.paid_at is not None

        slots = {s.time: s for s in await engine.list_slots(doctor.id, MONDAY)}
        assert slots["09:00"].booked == 0

    @pytest.mark.asyncio
    async def test_reschedule_time_with_offset_read_in_clinic_time(self, engine, doctor):
        """Test an offset-aware new time lands on the matching clinic slot."""
        memo = await checked_in_memo(engine, doctor, "pat@pat.test", "09:00")
        await engine.start_memo(memo.id)
        # 14:00 at +05:00 is 09:00 in the clinic's UTC
        new_start = datetime(2030, 1, 8, 14, 0, tzinfo=timezone(timedelta(hours=5)))

        change = await engine.set_session_status(
            doctor.id, SessionStatus.EMERGENCY, reschedule_to=new_start
        )

        assert change.interrupted.rescheduled_to == datetime(2030, 1, 8, 9, 0)
        assert change.interrupted.rescheduled_to.tzinfo is None

        appointment = await engine.get_appointment(memo.appointment_id)
        assert appointment.status == AppointmentStatus.RESCHEDULED
        assert appointment.appointment_date == TUESDAY
        assert appointment.appointment_time == "09:00"

    @pytest.mark.asyncio
    async def test_break_without_new_time_cancels(self, engine, doctor):
        """Test the appointment is cancelled when no new time is given."""
        memo = await checked_in_memo(engine, doctor, "pat@pat.test", "09:00")
        await engine.start_memo(memo.id)

        change = await engine.set_session_status(
            doctor.id, SessionStatus.BREAK, note="Power outage"
        )

        assert change.interrupted.status == MemoStatus.CANCELLED
        assert change.interrupted.note == "Power outage"

        appointment = await engine.get_appointment(memo.appointment_id)
        assert appointment.status == AppointmentStatus.CANCELLED
        assert appointment.cancellation_reason == "Power outage"

    @pytest.mark.asyncio
    async def test_invalid_new_time_changes_nothing(self, engine, doctor):
        """Test a rejected reschedule rolls the whole change back."""
        memo = await checked_in_memo(engine, doctor, "pat@pat.test", "09:00")
        await engine.start_memo(memo.id)

        with pytest.raises(ValidationError):
            await engine.set_session_status(
                doctor.id,
                SessionStatus.EMERGENCY,
                reschedule_to=datetime(2030, 1, 12, 9, 0),  # Saturday, off
            )

        session = await engine.get_session(doctor.id)
        assert session.status == SessionStatus.BUSY
        assert session.active_memo_id == memo.id
        assert (await engine.get_memo(memo.id)).status == MemoStatus.IN_PROGRESS
