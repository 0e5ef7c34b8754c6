"""
Scheduling Engine - Main Orchestrator.

Runs every mutating operation the same way:

1. plan   - read what the operation will touch and derive its lock keys
2. lock   - hold those keys (sorted, Redis + in-process)
3. sweep  - expire overdue unpaid appointments in the locked slots,
            releasing and re-offering their seats (own transaction)
4. apply  - one transaction: re-plan, then run the operation
5. notify - hand the collected side effects to collaborators after commit

A unique-constraint collision or a changed plan retries the whole
operation once; a second failure surfaces as ConcurrencyConflictError.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Awaitable, Callable, Optional, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clinicflow.config import Settings, get_settings
from clinicflow.core.scheduling import availability
from clinicflow.core.scheduling.errors import (
    ConcurrencyConflictError,
    SlotFullError,
    ValidationError,
)
from clinicflow.core.scheduling.ledger import SlotKey, SlotLedger
from clinicflow.core.scheduling.lifecycle import (
    AppointmentLifecycle,
    PaymentDetails,
    appointment_lock_key,
    normalize_email,
    slot_key_of,
)
from clinicflow.core.scheduling.outbox import Outbox
from clinicflow.core.scheduling.queue import ConsultationQueue, QueuePosition, memo_lock_key
from clinicflow.core.scheduling.sessions import (
    DoctorSessionController,
    SessionChange,
    session_lock_key,
)
from clinicflow.core.scheduling.waitlist import WaitlistManager, waitlist_lock_key
from clinicflow.infra.billing import ReceiptGenerator, get_receipt_generator
from clinicflow.infra.notifications import (
    AUDIENCE_DOCTOR,
    AUDIENCE_RECEPTION,
    Notification,
    NotificationDispatcher,
    get_notification_dispatcher,
)
from clinicflow.infra.redis import KeyLockManager, LockTimeoutError
from clinicflow.models.database import (
    Appointment,
    AppointmentStatus,
    ConsultationMemo,
    Doctor,
    DoctorSession,
    MemoStatus,
    SessionStatus,
    WaitlistEntry,
    WaitlistStatus,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Attempts per operation: the first run plus one retry
MAX_ATTEMPTS = 2


def clinic_clock(timezone: str) -> Callable[[], datetime]:
    """Naive wall-clock "now" in the clinic's timezone."""
    zone = ZoneInfo(timezone)

    def now() -> datetime:
        return datetime.now(zone).replace(tzinfo=None)

    return now


def to_clinic_time(value: datetime, timezone: str) -> datetime:
    """Naive clinic wall-clock time; offset-aware values are converted first."""
    if value.tzinfo is None:
        return value
    return value.astimezone(ZoneInfo(timezone)).replace(tzinfo=None)


def slot_locks(key: SlotKey) -> set[str]:
    """Locks covering a slot and the waitlist its release may promote from."""
    return {key.lock_key, waitlist_lock_key(key.doctor_id, key.day)}


class _PlanChanged(Exception):
    """The lock set read inside the transaction differs from the one held."""


@dataclass
class Components:
    """Scheduling components bound to one database session."""

    session: AsyncSession
    outbox: Outbox
    ledger: SlotLedger
    waitlist: WaitlistManager
    sessions: DoctorSessionController
    queue: ConsultationQueue
    lifecycle: AppointmentLifecycle


@dataclass
class SlotAvailability:
    """One slot in a doctor's day listing."""

    time: str
    capacity: int
    booked: int
    available: bool

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "time": self.time,
            "capacity": self.capacity,
            "booked": self.booked,
            "available": self.available,
        }


@dataclass
class DailySummary:
    """Front-desk counts for one clinic day, across all doctors."""

    day: date
    appointments: dict[str, int]
    waitlist_waiting: int
    memos: dict[str, int]
    overdue_unpaid: int

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "date": self.day.isoformat(),
            "appointments": dict(self.appointments),
            "waitlist_waiting": self.waitlist_waiting,
            "memos": dict(self.memos),
            "overdue_unpaid": self.overdue_unpaid,
        }


Plan = Callable[[Components], Awaitable[set[str]]]
Operation = Callable[[Components], Awaitable[T]]


class SchedulingEngine:
    """
    Entry point for every booking, waitlist, session and queue operation.

    Coordinates:
    - Availability resolution and slot capacity
    - Appointment lifecycle and payment expiry
    - Waitlist enrolment and promotion
    - Doctor sessions and the consultation queue
    - Notification and receipt collaborators
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        locks: Optional[KeyLockManager] = None,
        notifier: Optional[NotificationDispatcher] = None,
        billing: Optional[ReceiptGenerator] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize engine with optional dependencies.

        Args:
            settings: Application settings (defaults to cached settings)
            session_factory: Async session factory (defaults to the app database)
            locks: Per-key lock manager
            notifier: Notification dispatcher
            billing: Receipt generator
            clock: Returns naive wall-clock now in the clinic timezone
        """
        self.settings = settings or get_settings()
        if session_factory is None:
            from clinicflow.infra.database import async_session_factory
            session_factory = async_session_factory
        self.session_factory = session_factory
        self.locks = locks or KeyLockManager()
        self.notifier = notifier or get_notification_dispatcher()
        self.billing = billing or get_receipt_generator()
        self.clock = clock or clinic_clock(self.settings.clinic_timezone)

    def _components(self, session: AsyncSession, outbox: Outbox) -> Components:
        ledger = SlotLedger(session)
        waitlist = WaitlistManager(session, self.clock)
        controller = DoctorSessionController(session, self.clock)
        queue = ConsultationQueue(session, controller, self.clock)
        lifecycle = AppointmentLifecycle(
            session, self.settings, self.clock, outbox, ledger, waitlist, queue
        )
        return Components(session, outbox, ledger, waitlist, controller, queue, lifecycle)

    # === Execution ===

    async def _read(self, op: Operation[T]) -> T:
        """Run a read-only operation in its own session."""
        async with self.session_factory() as session:
            return await op(self._components(session, Outbox()))

    async def _execute(self, name: str, plan: Plan, op: Operation[T]) -> T:
        """Run a mutating operation under locks in one transaction."""
        for attempt in range(1, MAX_ATTEMPTS + 1):
            keys = await self._read(plan)
            try:
                async with self.locks.hold(*keys) as held:
                    await self._sweep(held)
                    result, outbox = await self._apply(plan, op, set(held))
            except LockTimeoutError as e:
                logger.warning(f"{name}: {e}")
                raise ConcurrencyConflictError(
                    "Another request is working on this booking, try again", key=e.key
                ) from e
            except IntegrityError as e:
                if attempt < MAX_ATTEMPTS:
                    logger.info(f"{name}: constraint collision, retrying ({e.orig})")
                    continue
                logger.warning(f"{name}: constraint collision after retry ({e.orig})")
                raise ConcurrencyConflictError(
                    "A concurrent request changed the same slot or queue, try again"
                ) from e
            except _PlanChanged:
                if attempt < MAX_ATTEMPTS:
                    logger.info(f"{name}: data changed while waiting for locks, retrying")
                    continue
                raise ConcurrencyConflictError(
                    "The booking changed while this request was waiting, try again"
                )

            self._dispatch(outbox)
            return result

        raise ConcurrencyConflictError(f"{name} could not complete")

    async def _apply(self, plan: Plan, op: Operation[T], held: set[str]) -> tuple[T, Outbox]:
        outbox = Outbox()
        async with self.session_factory() as session:
            async with session.begin():
                components = self._components(session, outbox)
                if not (await plan(components)) <= held:
                    raise _PlanChanged()
                result = await op(components)
        return result, outbox

    async def _sweep(self, held: list[str]) -> int:
        """Lazily expire overdue appointments in every locked slot.

        Returns:
            Number of appointments expired
        """
        keys = [SlotKey.parse(k[len("slot:"):]) for k in held if k.startswith("slot:")]
        if not keys:
            return 0

        expired = 0
        outbox = Outbox()
        async with self.session_factory() as session:
            async with session.begin():
                lifecycle = self._components(session, outbox).lifecycle
                for key in keys:
                    expired += len(await lifecycle.expire_overdue(key))
        self._dispatch(outbox)
        return expired

    def _dispatch(self, outbox: Outbox) -> None:
        for notification in outbox.notifications:
            self.notifier.dispatch(notification)
        for receipt in outbox.receipts:
            self.billing.request_receipt(receipt)

    # === Doctors & availability ===

    async def add_doctor(
        self,
        name: str,
        email: str,
        specialty: Optional[str] = None,
        availability_doc: Optional[dict] = None,
    ) -> Doctor:
        """Register a doctor (used by seeding scripts and tests)."""
        problems = availability.validate_availability(availability_doc or {})
        if problems:
            raise ValidationError("; ".join(problems))

        async with self.session_factory() as session:
            async with session.begin():
                now = self.clock()
                doctor = Doctor(
                    id=uuid.uuid4(),
                    name=name,
                    email=normalize_email(email),
                    specialty=specialty,
                    availability=availability_doc or {},
                    created_at=now,
                    updated_at=now,
                )
                session.add(doctor)
        logger.info(f"Doctor {doctor.id} ({name}) registered")
        return doctor

    async def get_doctor(self, doctor_id: uuid.UUID) -> Doctor:
        return await self._read(lambda c: c.lifecycle.get_doctor(doctor_id))

    async def update_availability(self, doctor_id: uuid.UUID, availability_doc: dict) -> Doctor:
        """
        Replace a doctor's weekly availability.

        Existing appointments keep their slots; the new schedule applies to
        bookings made from now on.
        """
        problems = availability.validate_availability(availability_doc)
        if problems:
            raise ValidationError("; ".join(problems))

        async def plan(c: Components) -> set[str]:
            return {f"doctor:{doctor_id}"}

        async def op(c: Components) -> Doctor:
            doctor = await c.lifecycle.get_doctor(doctor_id)
            doctor.availability = availability_doc
            doctor.updated_at = self.clock()
            logger.info(f"Availability updated for doctor {doctor_id}")
            return doctor

        return await self._execute("update_availability", plan, op)

    async def list_slots(self, doctor_id: uuid.UUID, day: date) -> list[SlotAvailability]:
        """Slots of a day with their occupancy. Read-only; booking re-checks."""
        async def op(c: Components) -> list[SlotAvailability]:
            doctor = await c.lifecycle.get_doctor(doctor_id)
            capacity = availability.capacity(
                doctor.availability, day, default=self.settings.default_slot_capacity
            )
            occupancy = await c.ledger.occupancy(doctor_id, day)
            now = self.clock()
            return [
                SlotAvailability(
                    time=time,
                    capacity=capacity,
                    booked=occupancy.get(time, 0),
                    available=(
                        occupancy.get(time, 0) < capacity
                        and c.lifecycle.slot_start(day, time) > now
                    ),
                )
                for time in availability.resolve(doctor.availability, day)
            ]

        return await self._read(op)

    # === Appointments ===

    def _appointment_plan(
        self,
        appointment_id: uuid.UUID,
        extra: Optional[Callable[[Appointment], set[str]]] = None,
    ) -> Plan:
        async def plan(c: Components) -> set[str]:
            appointment = await c.lifecycle.get(appointment_id)
            keys = {appointment_lock_key(appointment_id)} | slot_locks(slot_key_of(appointment))
            if extra is not None:
                keys |= extra(appointment)
            return keys
        return plan

    async def book(
        self,
        doctor_id: uuid.UUID,
        patient_email: str,
        day: date,
        time: str,
        appointment_type: str,
        payment: Optional[PaymentDetails] = None,
        patient_name: Optional[str] = None,
        join_waitlist: bool = True,
    ) -> Appointment:
        """
        Book a slot.

        Raises:
            SlotFullError: Slot at capacity; when `join_waitlist` the
                patient was enrolled and the error carries the entry
        """
        normalized = availability.normalize_time(time)
        if normalized is None:
            raise ValidationError(f"Invalid time {time!r}, expected HH:MM")
        key = SlotKey(doctor_id, day, normalized)

        async def plan(c: Components) -> set[str]:
            return slot_locks(key)

        async def op(c: Components) -> Appointment:
            return await c.lifecycle.book(
                doctor_id, patient_email, day, normalized, appointment_type,
                payment=payment, patient_name=patient_name,
            )

        try:
            return await self._execute("book", plan, op)
        except SlotFullError as e:
            if not join_waitlist:
                raise
            entry = await self.join_waitlist(
                doctor_id, patient_email, day, appointment_type, patient_name=patient_name
            )
            logger.info(f"Slot {key} full; {normalize_email(patient_email)} waitlisted as entry {entry.id}")
            raise SlotFullError(e.message, waitlist_entry=entry, **e.context) from e

    async def get_appointment(self, appointment_id: uuid.UUID) -> Appointment:
        """Load an appointment, expiring it first if its payment is overdue."""
        async def op(c: Components) -> Appointment:
            return await c.lifecycle.get(appointment_id)

        return await self._execute("get_appointment", self._appointment_plan(appointment_id), op)

    async def list_appointments(
        self,
        doctor_id: Optional[uuid.UUID] = None,
        day: Optional[date] = None,
        patient_email: Optional[str] = None,
        status: Optional[AppointmentStatus] = None,
    ) -> list[Appointment]:
        return await self._read(
            lambda c: c.lifecycle.list_appointments(doctor_id, day, patient_email, status)
        )

    async def mark_paid(
        self,
        appointment_id: uuid.UUID,
        recorded_by: Optional[str] = None,
        channel: Optional[str] = None,
        instrument: Optional[str] = None,
    ) -> Appointment:
        return await self._execute(
            "mark_paid",
            self._appointment_plan(appointment_id),
            lambda c: c.lifecycle.mark_paid(appointment_id, recorded_by, channel, instrument),
        )

    async def check_in(self, appointment_id: uuid.UUID) -> tuple[Appointment, ConsultationMemo]:
        """Check a paid patient in and issue their queue memo."""
        today = self.clock().date()
        return await self._execute(
            "check_in",
            self._appointment_plan(
                appointment_id, lambda a: {memo_lock_key(a.doctor_id, today)}
            ),
            lambda c: c.lifecycle.check_in(appointment_id),
        )

    async def cancel(self, appointment_id: uuid.UUID, reason: Optional[str] = None) -> Appointment:
        def extra(appointment: Appointment) -> set[str]:
            # A queued memo may be cancelled alongside
            if appointment.status == AppointmentStatus.CHECKED_IN:
                return {session_lock_key(appointment.doctor_id)}
            return set()

        return await self._execute(
            "cancel",
            self._appointment_plan(appointment_id, extra),
            lambda c: c.lifecycle.cancel(appointment_id, reason),
        )

    async def no_show(self, appointment_id: uuid.UUID) -> Appointment:
        return await self._execute(
            "no_show",
            self._appointment_plan(appointment_id),
            lambda c: c.lifecycle.no_show(appointment_id),
        )

    async def expire(self, appointment_id: uuid.UUID) -> Appointment:
        """Expire an unpaid appointment immediately."""
        return await self._execute(
            "expire",
            self._appointment_plan(appointment_id),
            lambda c: c.lifecycle.expire(appointment_id),
        )

    async def reschedule(self, appointment_id: uuid.UUID, new_day: date, new_time: str) -> Appointment:
        normalized = availability.normalize_time(new_time)
        if normalized is None:
            raise ValidationError(f"Invalid time {new_time!r}, expected HH:MM")

        return await self._execute(
            "reschedule",
            self._appointment_plan(
                appointment_id,
                lambda a: slot_locks(SlotKey(a.doctor_id, new_day, normalized)),
            ),
            lambda c: c.lifecycle.reschedule(appointment_id, new_day, normalized),
        )

    async def expire_overdue(self) -> int:
        """
        Expire every overdue unpaid appointment.

        Run periodically; each affected slot is processed under its own
        locks so promotion happens exactly as with lazy expiry.

        Returns:
            Number of appointments expired
        """
        async def overdue(c: Components) -> list[SlotKey]:
            result = await c.session.execute(
                select(
                    Appointment.doctor_id,
                    Appointment.appointment_date,
                    Appointment.appointment_time,
                )
                .where(
                    Appointment.status == AppointmentStatus.PENDING_PAYMENT,
                    Appointment.payment_deadline < self.clock(),
                )
                .distinct()
            )
            return [SlotKey(d, day, t) for d, day, t in result.all()]

        expired = 0
        for key in await self._read(overdue):
            try:
                async with self.locks.hold(*slot_locks(key)) as held:
                    expired += await self._sweep(held)
            except (LockTimeoutError, IntegrityError) as e:
                # Left for lazy expiry or the next sweep
                logger.warning(f"Expiry sweep skipped {key}: {e}")

        if expired:
            logger.info(f"Expiry sweep released {expired} unpaid appointment(s)")
        return expired

    async def daily_summary(self, day: Optional[date] = None) -> DailySummary:
        """
        Appointment, waitlist and queue counts for a day.

        `overdue_unpaid` counts pending-payment bookings past their
        deadline on any date, i.e. what the next sweep will release.
        """
        day = day or self.clock().date()

        async def op(c: Components) -> DailySummary:
            appointments = {s.value: 0 for s in AppointmentStatus}
            result = await c.session.execute(
                select(Appointment.status, func.count(Appointment.id))
                .where(Appointment.appointment_date == day)
                .group_by(Appointment.status)
            )
            for status, count in result.all():
                appointments[status.value] = count

            memos = {s.value: 0 for s in MemoStatus}
            result = await c.session.execute(
                select(ConsultationMemo.status, func.count(ConsultationMemo.id))
                .where(ConsultationMemo.issue_date == day)
                .group_by(ConsultationMemo.status)
            )
            for status, count in result.all():
                memos[status.value] = count

            waiting = await c.session.execute(
                select(func.count(WaitlistEntry.id)).where(
                    WaitlistEntry.preferred_date == day,
                    WaitlistEntry.status == WaitlistStatus.WAITING,
                )
            )
            overdue = await c.session.execute(
                select(func.count(Appointment.id)).where(
                    Appointment.status == AppointmentStatus.PENDING_PAYMENT,
                    Appointment.payment_deadline < self.clock(),
                )
            )
            return DailySummary(
                day=day,
                appointments=appointments,
                waitlist_waiting=waiting.scalar_one(),
                memos=memos,
                overdue_unpaid=overdue.scalar_one(),
            )

        return await self._read(op)

    # === Waitlist ===

    async def join_waitlist(
        self,
        doctor_id: uuid.UUID,
        patient_email: str,
        preferred_date: date,
        appointment_type: str,
        patient_name: Optional[str] = None,
    ) -> WaitlistEntry:
        email = normalize_email(patient_email)
        if not email:
            raise ValidationError("Patient email is required")
        if not appointment_type or not appointment_type.strip():
            raise ValidationError("Appointment type is required")

        async def plan(c: Components) -> set[str]:
            return {waitlist_lock_key(doctor_id, preferred_date)}

        async def op(c: Components) -> WaitlistEntry:
            await c.lifecycle.get_doctor(doctor_id)
            entry, _ = await c.waitlist.enqueue(
                doctor_id, email, preferred_date, appointment_type.strip(), patient_name
            )
            return entry

        return await self._execute("join_waitlist", plan, op)

    async def get_waitlist_entry(self, entry_id: int) -> tuple[WaitlistEntry, int]:
        """Entry plus the number of waiting entries ahead of it."""
        async def op(c: Components) -> tuple[WaitlistEntry, int]:
            entry = await c.waitlist.get(entry_id)
            return entry, await c.waitlist.position(entry)
        return await self._read(op)

    async def list_waitlist(
        self,
        doctor_id: Optional[uuid.UUID] = None,
        day: Optional[date] = None,
        status: Optional[WaitlistStatus] = None,
        patient_email: Optional[str] = None,
    ) -> list[WaitlistEntry]:
        email = normalize_email(patient_email) if patient_email else None
        return await self._read(
            lambda c: c.waitlist.list_entries(doctor_id, day, status, email)
        )

    async def promote_waitlist_entry(self, entry_id: int, time: Optional[str] = None) -> Appointment:
        """Book the first-in-line entry, into `time` or the earliest free slot."""
        normalized = None
        if time is not None:
            normalized = availability.normalize_time(time)
            if normalized is None:
                raise ValidationError(f"Invalid time {time!r}, expected HH:MM")

        async def plan(c: Components) -> set[str]:
            entry = await c.waitlist.get(entry_id)
            keys = {waitlist_lock_key(entry.doctor_id, entry.preferred_date)}
            target = normalized or await c.lifecycle.first_free_time(
                entry.doctor_id, entry.preferred_date
            )
            if target is not None:
                keys |= slot_locks(SlotKey(entry.doctor_id, entry.preferred_date, target))
            return keys

        return await self._execute(
            "promote_waitlist_entry",
            plan,
            lambda c: c.lifecycle.promote_entry(entry_id, normalized),
        )

    async def remove_waitlist_entry(self, entry_id: int) -> WaitlistEntry:
        async def plan(c: Components) -> set[str]:
            entry = await c.waitlist.get(entry_id)
            return {waitlist_lock_key(entry.doctor_id, entry.preferred_date)}

        return await self._execute(
            "remove_waitlist_entry", plan, lambda c: c.waitlist.remove(entry_id)
        )

    # === Doctor sessions ===

    async def ensure_session(self, doctor_id: uuid.UUID) -> DoctorSession:
        return await self._execute(
            "ensure_session",
            self._session_plan(doctor_id),
            lambda c: c.sessions.ensure_session(doctor_id),
        )

    async def get_session(self, doctor_id: uuid.UUID) -> DoctorSession:
        """Current session; a doctor who never started one is idle."""
        async def op(c: Components) -> DoctorSession:
            existing = await c.session.get(DoctorSession, doctor_id)
            if existing is not None:
                return existing
            await c.lifecycle.get_doctor(doctor_id)
            return DoctorSession(doctor_id=doctor_id, status=SessionStatus.IDLE)
        return await self._read(op)

    def _session_plan(
        self,
        doctor_id: uuid.UUID,
        memo_id: Optional[uuid.UUID] = None,
        reschedule_to: Optional[datetime] = None,
    ) -> Plan:
        """Locks for the doctor's session and any appointment its memos touch."""
        async def plan(c: Components) -> set[str]:
            keys = {session_lock_key(doctor_id)}
            doctor_session = await c.session.get(DoctorSession, doctor_id)
            memo_ids = [memo_id]
            if doctor_session is not None:
                memo_ids.append(doctor_session.active_memo_id)

            for mid in filter(None, memo_ids):
                memo = await c.session.get(ConsultationMemo, mid)
                if memo is None:
                    continue
                appointment = await c.session.get(Appointment, memo.appointment_id)
                if appointment is None:
                    continue
                keys.add(appointment_lock_key(appointment.id))
                keys |= slot_locks(slot_key_of(appointment))

            if reschedule_to is not None:
                keys |= slot_locks(SlotKey(
                    doctor_id,
                    reschedule_to.date(),
                    availability.format_time(reschedule_to.hour * 60 + reschedule_to.minute),
                ))
            return keys
        return plan

    async def _apply_session_change(self, c: Components, change: SessionChange) -> None:
        """Carry a session change through to the appointments involved."""
        if change.completed is not None:
            await c.lifecycle.complete(change.completed.appointment_id)

        interrupted = change.interrupted
        if interrupted is not None:
            if interrupted.status == MemoStatus.RESCHEDULED:
                await c.lifecycle.reschedule_interrupted(
                    interrupted.appointment_id, interrupted.rescheduled_to
                )
            else:
                await c.lifecycle.cancel(interrupted.appointment_id, interrupted.note)

    async def set_session_status(
        self,
        doctor_id: uuid.UUID,
        status: SessionStatus,
        note: Optional[str] = None,
        memo_id: Optional[uuid.UUID] = None,
        reschedule_to: Optional[datetime] = None,
    ) -> SessionChange:
        """
        Change a doctor's session status.

        Entering break or emergency mid-consultation reschedules the
        patient to `reschedule_to` (which must be a bookable slot of the
        same doctor) or cancels the appointment when no time is given.
        A `reschedule_to` carrying a UTC offset is read in clinic time.
        """
        if reschedule_to is not None:
            reschedule_to = to_clinic_time(reschedule_to, self.settings.clinic_timezone)

        async def op(c: Components) -> SessionChange:
            change = await c.sessions.set_status(
                doctor_id, status, note=note, memo_id=memo_id, reschedule_to=reschedule_to
            )
            await self._apply_session_change(c, change)
            if status == SessionStatus.EMERGENCY:
                c.outbox.notify(Notification(
                    type="doctor.emergency",
                    audience=[AUDIENCE_RECEPTION, AUDIENCE_DOCTOR],
                    message=change.session.note or "",
                    data={"doctor_id": str(doctor_id)},
                    created_at=self.clock(),
                ))
            return change

        return await self._execute(
            "set_session_status",
            self._session_plan(doctor_id, memo_id, reschedule_to),
            op,
        )

    async def start_next(self, doctor_id: uuid.UUID) -> list[SessionChange]:
        """Finish any open consultation and start the next waiting memo."""
        async def op(c: Components) -> list[SessionChange]:
            changes = await c.queue.start_next(doctor_id)
            for change in changes:
                await self._apply_session_change(c, change)
            return changes

        return await self._execute("start_next", self._session_plan(doctor_id), op)

    # === Consultation queue ===

    async def get_memo(self, memo_id: uuid.UUID) -> ConsultationMemo:
        return await self._read(lambda c: c.queue.get_memo(memo_id))

    async def queue_position(self, memo_id: uuid.UUID) -> QueuePosition:
        return await self._read(lambda c: c.queue.queue_position(memo_id))

    async def list_queue(
        self,
        doctor_id: uuid.UUID,
        day: Optional[date] = None,
        include_finished: bool = False,
    ) -> list[ConsultationMemo]:
        day = day or self.clock().date()

        async def op(c: Components) -> list[ConsultationMemo]:
            await c.lifecycle.get_doctor(doctor_id)
            return await c.queue.list_queue(doctor_id, day, include_finished)

        return await self._read(op)

    async def _memo_doctor(self, memo_id: uuid.UUID) -> uuid.UUID:
        memo = await self.get_memo(memo_id)
        return memo.doctor_id

    async def start_memo(self, memo_id: uuid.UUID) -> SessionChange:
        doctor_id = await self._memo_doctor(memo_id)
        return await self._execute(
            "start_memo",
            self._session_plan(doctor_id, memo_id),
            lambda c: c.queue.start(memo_id),
        )

    async def complete_memo(self, memo_id: uuid.UUID) -> SessionChange:
        """Finish a consultation; the appointment completes and a receipt is requested."""
        doctor_id = await self._memo_doctor(memo_id)

        async def op(c: Components) -> SessionChange:
            change = await c.queue.complete(memo_id)
            await self._apply_session_change(c, change)
            return change

        return await self._execute(
            "complete_memo", self._session_plan(doctor_id, memo_id), op
        )


# Singleton instance
_engine: Optional[SchedulingEngine] = None


def get_scheduling_engine() -> SchedulingEngine:
    """Get singleton scheduling engine."""
    global _engine
    if _engine is None:
        _engine = SchedulingEngine()
    return _engine

