"""
Scheduling errors.

Every failure a scheduling operation can report is a SchedulingError with
a stable machine-readable `code`. The API layer maps codes to HTTP status.
"""

from typing import Any, Optional


class SchedulingError(Exception):
    """Base class for scheduling failures."""

    code = "scheduling_error"

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        """Convert to API error body."""
        result = {"error": self.code, "detail": self.message}
        if self.context:
            result["context"] = {k: str(v) for k, v in self.context.items()}
        return result


class SlotFullError(SchedulingError):
    """The requested slot has no remaining capacity.

    When the patient was enrolled in the waitlist instead, `waitlist_entry`
    holds the created (or existing) entry.
    """

    code = "slot_full"

    def __init__(self, message: str, waitlist_entry: Optional[Any] = None, **context: Any):
        super().__init__(message, **context)
        self.waitlist_entry = waitlist_entry


class InvalidTransitionError(SchedulingError):
    """Operation is not allowed from the entity's current status."""

    code = "invalid_transition"

    def __init__(self, message: str, current: Optional[str] = None, **context: Any):
        super().__init__(message, **context)
        self.current = current


class NotFoundError(SchedulingError):
    """Referenced doctor, appointment, waitlist entry or memo does not exist."""

    code = "not_found"


class ValidationError(SchedulingError):
    """Input rejected before any capacity was touched."""

    code = "validation_error"


class ConcurrencyConflictError(SchedulingError):
    """Lost a race with a concurrent writer. Safe to retry."""

    code = "concurrency_conflict"
    retryable = True
