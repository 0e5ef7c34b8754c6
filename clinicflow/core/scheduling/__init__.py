"""
Scheduling Module

Provides slot allocation, the appointment lifecycle, waitlist promotion,
doctor sessions and the consultation queue behind the clinic's booking and
front-desk workflows.

Usage:
    from clinicflow.core.scheduling import get_scheduling_engine, SlotFullError

    engine = get_scheduling_engine()
    try:
        appointment = await engine.book(
            doctor_id, "pat@example.com", date(2024, 6, 1), "10:00", "General",
        )
    except SlotFullError as e:
        print(e.waitlist_entry.id)  # Patient joined the waitlist
"""

# Errors
from clinicflow.core.scheduling.errors import (
    SchedulingError,
    SlotFullError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    ConcurrencyConflictError,
)

# Availability Resolver
from clinicflow.core.scheduling.availability import (
    resolve,
    capacity,
    validate_availability,
)

# Slot Ledger
from clinicflow.core.scheduling.ledger import (
    SlotKey,
    SlotLedger,
    BLOCKING_STATUSES,
)

# Appointment Lifecycle
from clinicflow.core.scheduling.lifecycle import (
    AppointmentLifecycle,
    PaymentDetails,
    TRANSITIONS,
    TERMINAL_STATUSES,
    can_transition,
)

# Waitlist
from clinicflow.core.scheduling.waitlist import WaitlistManager

# Doctor Sessions
from clinicflow.core.scheduling.sessions import (
    DoctorSessionController,
    SessionChange,
    SESSION_TRANSITIONS,
)

# Consultation Queue
from clinicflow.core.scheduling.queue import (
    ConsultationQueue,
    QueuePosition,
)

# Display
from clinicflow.core.scheduling.display import status_label

# Scheduling Engine (main orchestrator)
from clinicflow.core.scheduling.engine import (
    SchedulingEngine,
    SlotAvailability,
    DailySummary,
    get_scheduling_engine,
)

# Payment expiry sweep
from clinicflow.core.scheduling.sweeper import ExpirySweeper, get_expiry_sweeper

__all__ = [
    # Errors
    "SchedulingError",
    "SlotFullError",
    "InvalidTransitionError",
    "NotFoundError",
    "ValidationError",
    "ConcurrencyConflictError",
    # Availability Resolver
    "resolve",
    "capacity",
    "validate_availability",
    # Slot Ledger
    "SlotKey",
    "SlotLedger",
    "BLOCKING_STATUSES",
    # Appointment Lifecycle
    "AppointmentLifecycle",
    "PaymentDetails",
    "TRANSITIONS",
    "TERMINAL_STATUSES",
    "can_transition",
    # Waitlist
    "WaitlistManager",
    # Doctor Sessions
    "DoctorSessionController",
    "SessionChange",
    "SESSION_TRANSITIONS",
    # Consultation Queue
    "ConsultationQueue",
    "QueuePosition",
    # Display
    "status_label",
    # Scheduling Engine
    "SchedulingEngine",
    "SlotAvailability",
    "DailySummary",
    "get_scheduling_engine",
    # Payment expiry sweep
    "ExpirySweeper",
    "get_expiry_sweeper",
]
