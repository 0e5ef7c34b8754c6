"""
Display labels for statuses.

Status enums carry storage values only; front-desk text lives here.
"""

from enum import Enum

from clinicflow.models.database import (
    AppointmentStatus,
    MemoStatus,
    PaymentMethod,
    SessionStatus,
    WaitlistStatus,
)


# Keyed by enum class: str-valued members of different enums compare equal
STATUS_LABELS: dict[type, dict[str, str]] = {
    AppointmentStatus: {
        "pending_payment": "Pending Payment",
        "paid": "Paid",
        "checked_in": "Checked In",
        "rescheduled": "Rescheduled",
        "completed": "Completed",
        "cancelled": "Cancelled",
        "no_show": "No Show",
        "expired": "Expired",
    },
    WaitlistStatus: {
        "waiting": "Waiting",
        "promoted": "Promoted",
        "removed": "Removed",
    },
    MemoStatus: {
        "waiting": "Waiting",
        "in_progress": "In Consultation",
        "completed": "Completed",
        "rescheduled": "Rescheduled",
        "cancelled": "Cancelled",
    },
    SessionStatus: {
        "idle": "Idle",
        "busy": "Busy",
        "break": "On Break",
        "emergency": "Emergency",
    },
    PaymentMethod: {
        "online": "Online",
        "reception": "Reception",
    },
}


def status_label(status: Enum) -> str:
    """Human-readable label for any status enum member."""
    labels = STATUS_LABELS.get(type(status), {})
    return labels.get(status.value, str(status.value).replace("_", " ").title())
