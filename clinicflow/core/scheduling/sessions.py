"""
Doctor Session Controller.

Sole writer of doctor_sessions. Owns the doctor's working state and which
memo, if any, is being served:

    idle  -> busy       start a waiting memo (memo -> in_progress)
    busy  -> idle       finish the active memo (memo -> completed)
    idle  -> break | emergency
    busy  -> break | emergency
                        an in-progress memo is rescheduled (when a new time
                        is supplied) or cancelled, and the active memo clears
    break | emergency -> idle   resume
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.scheduling.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from clinicflow.models.database import (
    ConsultationMemo,
    Doctor,
    DoctorSession,
    MemoStatus,
    SessionStatus,
)

logger = logging.getLogger(__name__)


SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.IDLE: frozenset({SessionStatus.BUSY, SessionStatus.BREAK, SessionStatus.EMERGENCY}),
    SessionStatus.BUSY: frozenset({SessionStatus.IDLE, SessionStatus.BREAK, SessionStatus.EMERGENCY}),
    SessionStatus.BREAK: frozenset({SessionStatus.IDLE}),
    SessionStatus.EMERGENCY: frozenset({SessionStatus.IDLE}),
}

DEFAULT_NOTES = {
    SessionStatus.EMERGENCY: "Emergency - session paused",
    SessionStatus.BREAK: "On break",
}


def session_lock_key(doctor_id: uuid.UUID) -> str:
    """Lock key for a doctor's session row."""
    return f"doctor-session:{doctor_id}"


@dataclass
class SessionChange:
    """Outcome of a session status change."""

    session: DoctorSession
    previous: SessionStatus
    started: Optional[ConsultationMemo] = None
    completed: Optional[ConsultationMemo] = None
    interrupted: Optional[ConsultationMemo] = None  # rescheduled or cancelled


class DoctorSessionController:
    """Doctor session state machine for one database session."""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime]):
        self.session = session
        self.clock = clock

    async def ensure_session(self, doctor_id: uuid.UUID) -> DoctorSession:
        """
        Get the doctor's session, creating it idle on first use.

        Raises:
            NotFoundError: Unknown doctor
        """
        existing = await self.session.get(DoctorSession, doctor_id)
        if existing is not None:
            return existing

        if await self.session.get(Doctor, doctor_id) is None:
            raise NotFoundError(f"Doctor {doctor_id} not found")

        now = self.clock()
        doctor_session = DoctorSession(
            doctor_id=doctor_id,
            status=SessionStatus.IDLE,
            created_at=now,
            updated_at=now,
        )
        self.session.add(doctor_session)
        await self.session.flush()
        logger.info(f"Session created for doctor {doctor_id}")
        return doctor_session

    async def get_memo(self, memo_id: uuid.UUID) -> ConsultationMemo:
        """Load a memo or raise NotFoundError."""
        memo = await self.session.get(ConsultationMemo, memo_id)
        if memo is None:
            raise NotFoundError(f"Consultation memo {memo_id} not found")
        return memo

    async def set_status(
        self,
        doctor_id: uuid.UUID,
        status: SessionStatus,
        note: Optional[str] = None,
        memo_id: Optional[uuid.UUID] = None,
        reschedule_to: Optional[datetime] = None,
    ) -> SessionChange:
        """
        Move the doctor's session to a new status.

        Args:
            doctor_id: Doctor
            status: Target status
            note: Free-text note stored on the session (and on an
                interrupted memo)
            memo_id: Waiting memo to start; required when entering busy
            reschedule_to: New slot for an interrupted consultation

        Returns:
            SessionChange describing the memo side effects

        Raises:
            InvalidTransitionError: Transition not allowed
            ValidationError: Missing or unsuitable memo
        """
        doctor_session = await self.ensure_session(doctor_id)
        current = doctor_session.status

        if status not in SESSION_TRANSITIONS[current]:
            raise InvalidTransitionError(
                f"Doctor session cannot go from {current.value} to {status.value}",
                current=current.value,
            )

        change = SessionChange(session=doctor_session, previous=current)
        now = self.clock()

        if status == SessionStatus.BUSY:
            change.started = await self._start_memo(doctor_session, memo_id, now)
        elif current == SessionStatus.BUSY and status == SessionStatus.IDLE:
            change.completed = await self._complete_active(doctor_session, now)
        elif status in (SessionStatus.BREAK, SessionStatus.EMERGENCY):
            change.interrupted = await self._interrupt_active(
                doctor_session, note or DEFAULT_NOTES[status], reschedule_to, now
            )

        doctor_session.status = status
        if status in (SessionStatus.BREAK, SessionStatus.EMERGENCY):
            doctor_session.note = note or DEFAULT_NOTES[status]
        else:
            doctor_session.note = note
        doctor_session.updated_at = now
        await self.session.flush()

        logger.info(
            f"Doctor {doctor_id} session {current.value} -> {status.value}"
            + (f" (memo {doctor_session.active_memo_id})" if doctor_session.active_memo_id else "")
        )
        return change

    async def cancel_memo(self, memo: ConsultationMemo, note: Optional[str] = None) -> ConsultationMemo:
        """
        Cancel a queued memo along with its appointment.

        If the memo is the one being served, the active memo clears and
        the session returns to idle.
        """
        now = self.clock()
        if memo.status == MemoStatus.IN_PROGRESS:
            doctor_session = await self.ensure_session(memo.doctor_id)
            if doctor_session.active_memo_id == memo.id:
                doctor_session.active_memo_id = None
                doctor_session.status = SessionStatus.IDLE
                doctor_session.note = None
                doctor_session.updated_at = now
                logger.info(
                    f"Doctor {memo.doctor_id} session busy -> idle "
                    f"(memo {memo.id} cancelled)"
                )

        memo.status = MemoStatus.CANCELLED
        memo.note = note
        memo.updated_at = now
        await self.session.flush()
        return memo

    async def _start_memo(
        self,
        doctor_session: DoctorSession,
        memo_id: Optional[uuid.UUID],
        now: datetime,
    ) -> ConsultationMemo:
        if memo_id is None:
            raise ValidationError("A waiting memo is required to start a consultation")

        memo = await self.get_memo(memo_id)
        if memo.doctor_id != doctor_session.doctor_id:
            raise ValidationError(f"Memo {memo_id} belongs to another doctor")
        if memo.status != MemoStatus.WAITING:
            raise InvalidTransitionError(
                f"Memo #{memo.memo_number} is {memo.status.value}, not waiting",
                current=memo.status.value,
            )

        memo.status = MemoStatus.IN_PROGRESS
        memo.started_at = now
        memo.updated_at = now
        doctor_session.active_memo_id = memo.id
        return memo

    async def _complete_active(
        self,
        doctor_session: DoctorSession,
        now: datetime,
    ) -> Optional[ConsultationMemo]:
        memo = await self._active_memo(doctor_session)
        doctor_session.active_memo_id = None
        if memo is None:
            return None

        memo.status = MemoStatus.COMPLETED
        memo.completed_at = now
        memo.updated_at = now
        return memo

    async def _interrupt_active(
        self,
        doctor_session: DoctorSession,
        note: str,
        reschedule_to: Optional[datetime],
        now: datetime,
    ) -> Optional[ConsultationMemo]:
        memo = await self._active_memo(doctor_session)
        doctor_session.active_memo_id = None
        if memo is None:
            return None

        if reschedule_to is not None:
            memo.status = MemoStatus.RESCHEDULED
            memo.rescheduled_to = reschedule_to
        else:
            memo.status = MemoStatus.CANCELLED
        memo.note = note
        memo.updated_at = now
        return memo

    async def _active_memo(self, doctor_session: DoctorSession) -> Optional[ConsultationMemo]:
        if doctor_session.active_memo_id is None:
            return None
        memo = await self.session.get(ConsultationMemo, doctor_session.active_memo_id)
        if memo is None or memo.status != MemoStatus.IN_PROGRESS:
            # Stale pointer; the memo was closed elsewhere
            logger.warning(
                f"Doctor {doctor_session.doctor_id} active memo "
                f"{doctor_session.active_memo_id} is not in progress"
            )
            return None
        return memo
