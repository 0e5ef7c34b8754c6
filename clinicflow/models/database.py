"""
Database Models

SQLAlchemy ORM models for the clinic booking and consultation-queue core.

All timestamps are naive wall-clock times in the clinic timezone. Generic
column types (Uuid, JSON) are used so the same models run on PostgreSQL in
production and SQLite in tests.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    JSON, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text,
    UniqueConstraint, Uuid, Enum as SQLEnum, text
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    CHECKED_IN = "checked_in"
    RESCHEDULED = "rescheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    EXPIRED = "expired"


class WaitlistStatus(str, Enum):
    """Waitlist entry status enumeration."""
    WAITING = "waiting"
    PROMOTED = "promoted"
    REMOVED = "removed"


class MemoStatus(str, Enum):
    """Consultation memo status enumeration."""
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"


class SessionStatus(str, Enum):
    """Doctor session status enumeration."""
    IDLE = "idle"
    BUSY = "busy"
    BREAK = "break"
    EMERGENCY = "emergency"


class PaymentMethod(str, Enum):
    """Where the patient settles the consultation fee."""
    ONLINE = "online"
    RECEPTION = "reception"


class Doctor(Base, TimestampMixin):
    """
    Doctor model.

    `availability` is the weekly schedule document read by the
    availability resolver, e.g.::

        {"mon": {"start": "09:00", "end": "17:00", "slots": 8},
         "sat": "off"}
    """

    __tablename__ = "doctors"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    specialty: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    availability: Mapped[dict] = mapped_column(JSON, default=dict)

    # Relationships
    appointments: Mapped[List["Appointment"]] = relationship(
        "Appointment",
        back_populates="doctor"
    )
    session: Mapped[Optional["DoctorSession"]] = relationship(
        "DoctorSession",
        back_populates="doctor",
        uselist=False
    )

    def __repr__(self) -> str:
        return f"<Doctor(id={self.id}, name='{self.name}', specialty='{self.specialty}')>"


class Appointment(Base, TimestampMixin):
    """
    Appointment model.

    Owned by the lifecycle manager. Never deleted: cancellation, no-show
    and expiry are statuses.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointment_slot", "doctor_id", "appointment_date", "appointment_time"),
        Index("idx_appointment_patient", "patient_email"),
        Index("idx_appointment_deadline", "status", "payment_deadline"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    doctor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False
    )
    patient_email: Mapped[str] = mapped_column(String(200), nullable=False)
    patient_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    appointment_date: Mapped[date] = mapped_column(Date, nullable=False)
    appointment_time: Mapped[str] = mapped_column(String(5), nullable=False)
    appointment_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[AppointmentStatus] = mapped_column(
        SQLEnum(AppointmentStatus),
        default=AppointmentStatus.PENDING_PAYMENT,
        nullable=False
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(PaymentMethod),
        default=PaymentMethod.ONLINE,
        nullable=False
    )
    payment_channel: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_instrument: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_deadline: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    recorded_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rescheduled_from: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    reschedule_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    waitlist_entry_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("waitlist_entries.id", ondelete="SET NULL"),
        unique=True,
        nullable=True
    )

    # Relationships
    doctor: Mapped["Doctor"] = relationship("Doctor", back_populates="appointments")

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, doctor_id={self.doctor_id}, "
            f"slot={self.appointment_date} {self.appointment_time}, "
            f"status={self.status.value})>"
        )


class SlotClaim(Base):
    """
    Slot occupancy row.

    One row per appointment in a blocking status. The (slot_key, seat)
    unique constraint turns "count then insert" into an atomic claim: two
    writers racing for the last seat cannot both commit.
    """

    __tablename__ = "slot_claims"
    __table_args__ = (
        UniqueConstraint("slot_key", "seat", name="uq_slot_claim_seat"),
        Index("idx_slot_claim_day", "doctor_id", "claim_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    slot_key: Mapped[str] = mapped_column(String(200), nullable=False)
    seat: Mapped[int] = mapped_column(Integer, nullable=False)
    doctor_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    claim_date: Mapped[date] = mapped_column(Date, nullable=False)
    claim_time: Mapped[str] = mapped_column(String(5), nullable=False)
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        unique=True,
        nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        server_default=text("CURRENT_TIMESTAMP"),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<SlotClaim(slot_key='{self.slot_key}', seat={self.seat})>"


class WaitlistEntry(Base, TimestampMixin):
    """
    Waitlist entry.

    FIFO order is (created_at, id); the integer id breaks ties between
    entries created within the same clock tick.
    """

    __tablename__ = "waitlist_entries"
    __table_args__ = (
        Index(
            "idx_waitlist_queue",
            "doctor_id", "preferred_date", "appointment_type", "status", "created_at",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    doctor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False
    )
    patient_email: Mapped[str] = mapped_column(String(200), nullable=False)
    patient_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    preferred_date: Mapped[date] = mapped_column(Date, nullable=False)
    appointment_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[WaitlistStatus] = mapped_column(
        SQLEnum(WaitlistStatus),
        default=WaitlistStatus.WAITING,
        nullable=False
    )
    promoted_appointment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry(id={self.id}, doctor_id={self.doctor_id}, "
            f"date={self.preferred_date}, status={self.status.value})>"
        )


class ConsultationMemo(Base, TimestampMixin):
    """
    Consultation memo (queue ticket).

    memo_number is sequential per doctor per issue_date; the unique
    constraint rejects a duplicate number from a concurrent check-in.
    """

    __tablename__ = "consultation_memos"
    __table_args__ = (
        UniqueConstraint(
            "doctor_id", "issue_date", "memo_number",
            name="uq_memo_number_per_doctor_day",
        ),
        Index("idx_memo_appointment", "appointment_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid.uuid4
    )
    appointment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False
    )
    doctor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("doctors.id", ondelete="CASCADE"),
        nullable=False
    )
    memo_number: Mapped[int] = mapped_column(Integer, nullable=False)
    issue_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[MemoStatus] = mapped_column(
        SQLEnum(MemoStatus),
        default=MemoStatus.WAITING,
        nullable=False
    )
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rescheduled_to: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<ConsultationMemo(id={self.id}, doctor_id={self.doctor_id}, "
            f"number={self.memo_number}, status={self.status.value})>"
        )


class DoctorSession(Base, TimestampMixin):
    """
    Doctor session model.

    Exactly one row per doctor, written only by the session controller.
    """

    __tablename__ = "doctor_sessions"

    doctor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("doctors.id", ondelete="CASCADE"),
        primary_key=True
    )
    status: Mapped[SessionStatus] = mapped_column(
        SQLEnum(SessionStatus),
        default=SessionStatus.IDLE,
        nullable=False
    )
    active_memo_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("consultation_memos.id", ondelete="SET NULL"),
        nullable=True
    )
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Relationships
    doctor: Mapped["Doctor"] = relationship("Doctor", back_populates="session")

    def __repr__(self) -> str:
        return (
            f"<DoctorSession(doctor_id={self.doctor_id}, status={self.status.value}, "
            f"active_memo_id={self.active_memo_id})>"
        )
