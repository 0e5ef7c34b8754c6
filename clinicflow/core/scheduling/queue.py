"""
Consultation Queue (memo) Engine.

Issues sequential memo numbers per doctor per day at check-in and reports
queue positions. Starting and finishing consultations goes through the
Doctor Session Controller so the session and its active memo never
disagree.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinicflow.core.scheduling.errors import InvalidTransitionError, NotFoundError
from clinicflow.core.scheduling.sessions import DoctorSessionController, SessionChange
from clinicflow.models.database import (
    Appointment,
    ConsultationMemo,
    MemoStatus,
    SessionStatus,
)

logger = logging.getLogger(__name__)


ACTIVE_MEMO_STATUSES = (MemoStatus.WAITING, MemoStatus.IN_PROGRESS)


def memo_lock_key(doctor_id: uuid.UUID, day: date) -> str:
    """Lock key for a doctor's memo counter on a date."""
    return f"memo:{doctor_id}|{day.isoformat()}"


@dataclass
class QueuePosition:
    """Where a memo stands in its doctor's queue."""

    memo_id: uuid.UUID
    memo_number: int
    status: MemoStatus
    ahead: int
    queue_size: int
    now_serving: Optional[int] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "memo_id": str(self.memo_id),
            "memo_number": self.memo_number,
            "status": self.status.value,
            "ahead": self.ahead,
            "queue_size": self.queue_size,
            "now_serving": self.now_serving,
        }


class ConsultationQueue:
    """Memo numbering and queue operations for one database session."""

    def __init__(
        self,
        session: AsyncSession,
        controller: DoctorSessionController,
        clock: Callable[[], datetime],
    ):
        self.session = session
        self.controller = controller
        self.clock = clock

    async def get_memo(self, memo_id: uuid.UUID) -> ConsultationMemo:
        """Load a memo or raise NotFoundError."""
        return await self.controller.get_memo(memo_id)

    async def issue_memo(self, appointment: Appointment) -> ConsultationMemo:
        """
        Issue the next memo number for the appointment's doctor today.

        The caller holds the memo lock for (doctor, today); the unique
        constraint on (doctor_id, issue_date, memo_number) rejects a
        duplicate from any writer that did not.

        Args:
            appointment: Appointment being checked in

        Returns:
            New waiting memo
        """
        now = self.clock()
        today = now.date()

        result = await self.session.execute(
            select(func.max(ConsultationMemo.memo_number)).where(
                ConsultationMemo.doctor_id == appointment.doctor_id,
                ConsultationMemo.issue_date == today,
            )
        )
        number = (result.scalar_one_or_none() or 0) + 1

        memo = ConsultationMemo(
            appointment_id=appointment.id,
            doctor_id=appointment.doctor_id,
            memo_number=number,
            issue_date=today,
            status=MemoStatus.WAITING,
            checked_in_at=now,
            created_at=now,
            updated_at=now,
        )
        self.session.add(memo)
        await self.session.flush()

        logger.info(f"Memo #{number} issued for appointment {appointment.id}")
        return memo

    async def memo_for_appointment(self, appointment_id: uuid.UUID) -> Optional[ConsultationMemo]:
        """Latest memo issued for an appointment."""
        result = await self.session.execute(
            select(ConsultationMemo)
            .where(ConsultationMemo.appointment_id == appointment_id)
            .order_by(ConsultationMemo.created_at.desc(), ConsultationMemo.memo_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def cancel_for_appointment(
        self,
        appointment_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> Optional[ConsultationMemo]:
        """Take a cancelled appointment's memo out of the queue, if still queued."""
        memo = await self.memo_for_appointment(appointment_id)
        if memo is None or memo.status not in ACTIVE_MEMO_STATUSES:
            return None
        return await self.controller.cancel_memo(memo, reason)

    async def queue_position(self, memo_id: uuid.UUID) -> QueuePosition:
        """
        Position of a memo in its doctor's queue for the memo's day.

        `ahead` counts waiting or in-progress memos with a lower number;
        a memo that is no longer queued reports zero ahead.
        """
        memo = await self.get_memo(memo_id)
        same_queue = (
            ConsultationMemo.doctor_id == memo.doctor_id,
            ConsultationMemo.issue_date == memo.issue_date,
            ConsultationMemo.status.in_(ACTIVE_MEMO_STATUSES),
        )

        size_result = await self.session.execute(
            select(func.count(ConsultationMemo.id)).where(*same_queue)
        )
        queue_size = size_result.scalar_one()

        ahead = 0
        if memo.status in ACTIVE_MEMO_STATUSES:
            ahead_result = await self.session.execute(
                select(func.count(ConsultationMemo.id)).where(
                    *same_queue,
                    ConsultationMemo.memo_number < memo.memo_number,
                )
            )
            ahead = ahead_result.scalar_one()

        serving_result = await self.session.execute(
            select(ConsultationMemo.memo_number).where(
                ConsultationMemo.doctor_id == memo.doctor_id,
                ConsultationMemo.issue_date == memo.issue_date,
                ConsultationMemo.status == MemoStatus.IN_PROGRESS,
            )
        )
        now_serving = serving_result.scalars().first()

        return QueuePosition(
            memo_id=memo.id,
            memo_number=memo.memo_number,
            status=memo.status,
            ahead=ahead,
            queue_size=queue_size,
            now_serving=now_serving,
        )

    async def next_waiting(self, doctor_id: uuid.UUID, day: date) -> Optional[ConsultationMemo]:
        """Lowest-numbered waiting memo of a doctor on a day."""
        result = await self.session.execute(
            select(ConsultationMemo)
            .where(
                ConsultationMemo.doctor_id == doctor_id,
                ConsultationMemo.issue_date == day,
                ConsultationMemo.status == MemoStatus.WAITING,
            )
            .order_by(ConsultationMemo.memo_number)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def start(self, memo_id: uuid.UUID) -> SessionChange:
        """Begin the consultation for a waiting memo (doctor becomes busy)."""
        memo = await self.get_memo(memo_id)
        return await self.controller.set_status(
            memo.doctor_id, SessionStatus.BUSY, memo_id=memo.id
        )

    async def complete(self, memo_id: uuid.UUID) -> SessionChange:
        """
        Finish the consultation for the doctor's active memo.

        Raises:
            InvalidTransitionError: Memo is not the one being served
        """
        memo = await self.get_memo(memo_id)
        doctor_session = await self.controller.ensure_session(memo.doctor_id)
        if memo.status != MemoStatus.IN_PROGRESS or doctor_session.active_memo_id != memo.id:
            raise InvalidTransitionError(
                f"Memo #{memo.memo_number} is {memo.status.value}, not in progress",
                current=memo.status.value,
            )
        return await self.controller.set_status(memo.doctor_id, SessionStatus.IDLE)

    async def start_next(self, doctor_id: uuid.UUID) -> list[SessionChange]:
        """
        Serve the next patient.

        A consultation still open is finished first, then the
        lowest-numbered waiting memo of today is started.

        Returns:
            The session changes applied, in order

        Raises:
            NotFoundError: Nobody is waiting and nothing was open
        """
        changes: list[SessionChange] = []
        doctor_session = await self.controller.ensure_session(doctor_id)
        if doctor_session.status == SessionStatus.BUSY:
            changes.append(await self.controller.set_status(doctor_id, SessionStatus.IDLE))

        memo = await self.next_waiting(doctor_id, self.clock().date())
        if memo is None:
            if changes:
                # Finished the open consultation; the doctor stays idle
                return changes
            raise NotFoundError(f"No waiting patients for doctor {doctor_id} today")

        changes.append(
            await self.controller.set_status(doctor_id, SessionStatus.BUSY, memo_id=memo.id)
        )
        return changes

    async def list_queue(
        self,
        doctor_id: uuid.UUID,
        day: date,
        include_finished: bool = False,
    ) -> list[ConsultationMemo]:
        """Memos of a doctor's day in number order."""
        query = select(ConsultationMemo).where(
            ConsultationMemo.doctor_id == doctor_id,
            ConsultationMemo.issue_date == day,
        )
        if not include_finished:
            query = query.where(ConsultationMemo.status.in_(ACTIVE_MEMO_STATUSES))

        result = await self.session.execute(query.order_by(ConsultationMemo.memo_number))
        return list(result.scalars().all())
