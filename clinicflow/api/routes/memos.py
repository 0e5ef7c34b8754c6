"""
Consultation Memo Endpoints.

Queue tickets issued at check-in: lookup, queue position, and starting or
finishing the consultation.
"""

import logging
import uuid
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from clinicflow.core.scheduling import SchedulingEngine, get_scheduling_engine, status_label
from clinicflow.models.database import ConsultationMemo

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/consultation-memos", tags=["Consultation Queue"])


class MemoResponse(BaseModel):
    """Consultation memo."""

    id: uuid.UUID
    appointment_id: uuid.UUID
    doctor_id: uuid.UUID
    memo_number: int
    issue_date: date
    status: str
    status_label: str
    checked_in_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rescheduled_to: Optional[datetime] = None
    note: Optional[str] = None

    @classmethod
    def from_model(cls, memo: ConsultationMemo) -> "MemoResponse":
        """Build from ORM model."""
        return cls(
            id=memo.id,
            appointment_id=memo.appointment_id,
            doctor_id=memo.doctor_id,
            memo_number=memo.memo_number,
            issue_date=memo.issue_date,
            status=memo.status.value,
            status_label=status_label(memo.status),
            checked_in_at=memo.checked_in_at,
            started_at=memo.started_at,
            completed_at=memo.completed_at,
            rescheduled_to=memo.rescheduled_to,
            note=memo.note,
        )


class QueuePositionResponse(BaseModel):
    """Where a memo stands in its doctor's queue."""

    memo_id: uuid.UUID
    memo_number: int
    status: str
    ahead: int = Field(..., description="Waiting or in-progress memos with a lower number")
    queue_size: int = Field(..., description="Waiting or in-progress memos that day")
    now_serving: Optional[int] = Field(default=None, description="Memo number in consultation")


class MemoActionResponse(BaseModel):
    """Result of starting or finishing a consultation."""

    memo: MemoResponse
    doctor_status: str
    active_memo_id: Optional[uuid.UUID] = None


@router.get(
    "/{memo_id}",
    response_model=MemoResponse,
    summary="Get a consultation memo",
)
async def get_memo(
    memo_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> MemoResponse:
    """Get memo by ID."""
    return MemoResponse.from_model(await engine.get_memo(memo_id))


@router.get(
    "/{memo_id}/position",
    response_model=QueuePositionResponse,
    summary="Queue position",
    description="Number of patients ahead of this memo in the doctor's queue.",
)
async def get_position(
    memo_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> QueuePositionResponse:
    """Get queue position for a memo."""
    position = await engine.queue_position(memo_id)
    return QueuePositionResponse(**position.to_dict())


@router.post(
    "/{memo_id}/start",
    response_model=MemoActionResponse,
    status_code=status.HTTP_200_OK,
    summary="Start consultation",
    description="Doctor starts seeing the patient; the doctor's session becomes busy.",
)
async def start_memo(
    memo_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> MemoActionResponse:
    """Start the consultation for a waiting memo."""
    change = await engine.start_memo(memo_id)
    return MemoActionResponse(
        memo=MemoResponse.from_model(change.started),
        doctor_status=change.session.status.value,
        active_memo_id=change.session.active_memo_id,
    )


@router.post(
    "/{memo_id}/complete",
    response_model=MemoActionResponse,
    status_code=status.HTTP_200_OK,
    summary="Complete consultation",
    description="Finishes the consultation, completes the appointment and requests a receipt.",
)
async def complete_memo(
    memo_id: uuid.UUID,
    engine: SchedulingEngine = Depends(get_scheduling_engine),
) -> MemoActionResponse:
    """Complete the doctor's active memo."""
    change = await engine.complete_memo(memo_id)
    return MemoActionResponse(
        memo=MemoResponse.from_model(change.completed),
        doctor_status=change.session.status.value,
        active_memo_id=change.session.active_memo_id,
    )
