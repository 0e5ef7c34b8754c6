"""
Availability Resolver.

Turns a doctor's weekly availability document into the concrete slot
labels bookable on a given date.

Supported day entry shapes:

    {"start": "09:00", "end": "17:00", "slots": 8}   # 8 evenly spaced slots
    {"start": "09:00", "end": "12:00"}               # 30-minute steps
    {"start": "09:00", "end": "12:00", "capacity": 2}
    "09:00-12:00"                                    # legacy range
    ["09:00-12:00", "14:00-16:00"]                   # legacy ranges
    "off" / "none" / "—" / ""                        # day off
"""

import logging
from datetime import date
from typing import Any, Optional

logger = logging.getLogger(__name__)


DAY_KEYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
OFF_VALUES = {"off", "none", "—", "-", ""}
DEFAULT_STEP_MINUTES = 30


def day_key(day: date) -> str:
    """Weekday key ("mon".."sun") for a date."""
    return DAY_KEYS[day.weekday()]


def parse_time(value: Any) -> Optional[int]:
    """Parse "HH:MM" (or "HH:MM:SS") into minutes since midnight.

    Returns:
        Minutes, or None if the value is not a valid clock time
    """
    if not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
    except ValueError:
        return None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return None
    return hours * 60 + minutes


def format_time(minutes: int) -> str:
    """Format minutes since midnight as "HH:MM"."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def normalize_time(value: str) -> Optional[str]:
    """Canonical "HH:MM" form of a clock time, or None if invalid."""
    minutes = parse_time(value)
    return format_time(minutes) if minutes is not None else None


def is_off(value: Any) -> bool:
    """Check whether a day entry marks the day as off."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in OFF_VALUES
    return False


def expand_range(start: str, end: str, slots: Optional[int] = None) -> list[str]:
    """Expand [start, end) into slot labels.

    With `slots`, exactly that many labels are spread evenly:
    label i = start + round(i * (end - start) / slots). Without it the
    range is cut into 30-minute steps.

    Args:
        start: Range start "HH:MM"
        end: Range end "HH:MM" (exclusive)
        slots: Number of slots to generate

    Returns:
        Slot labels in order (empty for an invalid or empty range)
    """
    start_min = parse_time(start)
    end_min = parse_time(end)
    if start_min is None or end_min is None or end_min <= start_min:
        return []

    total = end_min - start_min
    if slots is not None and slots > 0:
        interval = total / slots
        return [format_time(round(start_min + i * interval)) for i in range(slots)]

    return [
        format_time(minute)
        for minute in range(start_min, end_min, DEFAULT_STEP_MINUTES)
    ]


def _parse_range_string(value: str) -> list[str]:
    parts = value.split("-")
    if len(parts) != 2:
        return []
    return expand_range(parts[0].strip(), parts[1].strip())


def _coerce_slots(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _day_entry(availability: Optional[dict], day: date) -> Any:
    if not isinstance(availability, dict):
        return None
    key = day_key(day)
    if key in availability:
        return availability[key]
    # Tolerate full or capitalised day names ("Monday", "MON")
    for name, value in availability.items():
        if isinstance(name, str) and name.strip().lower()[:3] == key:
            return value
    return None


def resolve(availability: Optional[dict], day: date) -> list[str]:
    """
    Bookable slot labels for a date.

    Never raises: malformed entries are logged and treated as a day off.

    Args:
        availability: Doctor's weekly availability document
        day: Date to resolve

    Returns:
        Sorted, de-duplicated "HH:MM" labels
    """
    entry = _day_entry(availability, day)
    if is_off(entry):
        return []

    labels: list[str] = []

    if isinstance(entry, dict):
        start, end = entry.get("start"), entry.get("end")
        if not start or not end:
            logger.warning(f"Availability for {day_key(day)} lacks start/end: {entry}")
            return []
        labels = expand_range(str(start), str(end), _coerce_slots(entry.get("slots")))
        if not labels:
            logger.warning(f"Availability for {day_key(day)} has an empty or invalid range: {entry}")
        elif len(set(labels)) < len(labels):
            logger.warning(
                f"Availability for {day_key(day)} asks for more slots than minutes "
                f"in range; {len(set(labels))} distinct slots kept: {entry}"
            )
    elif isinstance(entry, list):
        for item in entry:
            if isinstance(item, str) and not is_off(item):
                labels.extend(_parse_range_string(item))
    elif isinstance(entry, str):
        labels = _parse_range_string(entry)
        if not labels:
            logger.warning(f"Unparseable availability range for {day_key(day)}: {entry!r}")
    else:
        logger.warning(f"Unsupported availability entry for {day_key(day)}: {entry!r}")

    return sorted(set(labels))


def capacity(availability: Optional[dict], day: date, default: int = 1) -> int:
    """
    Seats per slot on a date.

    Args:
        availability: Doctor's weekly availability document
        day: Date to check
        default: Capacity when the day entry does not declare one

    Returns:
        Capacity (at least 1)
    """
    entry = _day_entry(availability, day)
    if isinstance(entry, dict):
        declared = _coerce_slots(entry.get("capacity"))
        if declared is not None and declared > 0:
            return declared
    return max(1, default)


def validate_availability(availability: dict) -> list[str]:
    """
    Check an availability document before it is stored.

    Returns:
        List of problems (empty when valid)
    """
    problems: list[str] = []
    for name, entry in availability.items():
        key = name.strip().lower()[:3] if isinstance(name, str) else None
        if key not in DAY_KEYS:
            problems.append(f"Unknown day key: {name!r}")
            continue
        if is_off(entry):
            continue
        if isinstance(entry, dict):
            start_min, end_min = parse_time(entry.get("start")), parse_time(entry.get("end"))
            if start_min is None or end_min is None:
                problems.append(f"{name}: start and end must be HH:MM")
            elif end_min <= start_min:
                problems.append(f"{name}: end must be after start")
            if "slots" in entry:
                slots = _coerce_slots(entry["slots"]) or 0
                if slots <= 0:
                    problems.append(f"{name}: slots must be a positive integer")
                elif start_min is not None and end_min is not None and 0 < end_min - start_min < slots:
                    # Labels are whole minutes
                    problems.append(f"{name}: more slots than minutes between start and end")
            if "capacity" in entry and (_coerce_slots(entry["capacity"]) or 0) <= 0:
                problems.append(f"{name}: capacity must be a positive integer")
        elif isinstance(entry, str):
            if not _parse_range_string(entry):
                problems.append(f"{name}: range must look like HH:MM-HH:MM")
        elif isinstance(entry, list):
            for item in entry:
                if not isinstance(item, str) or (not is_off(item) and not _parse_range_string(item)):
                    problems.append(f"{name}: invalid range {item!r}")
        else:
            problems.append(f"{name}: unsupported entry {entry!r}")
    return problems
