#!/usr/bin/env python3
"""
Setup Verification Script

Checks the clinic configuration, the booking policy and the services the
scheduling engine depends on. PostgreSQL is required; Redis is optional
(without it key locks only hold within one process).

Usage:
    python scripts/verify_setup.py
    python scripts/verify_setup.py --seed    # also create tables and a demo doctor
"""

import asyncio
import datetime as dt
import os
import sys
from dataclasses import dataclass
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
load_dotenv(project_root / ".env")


# Weekly schedule used by --seed; Friday runs double-booked slots
DEMO_AVAILABILITY = {
    "mon": {"start": "09:00", "end": "17:00", "slots": 16},
    "tue": {"start": "09:00", "end": "17:00", "slots": 16},
    "wed": {"start": "09:00", "end": "13:00", "slots": 8},
    "thu": {"start": "09:00", "end": "17:00", "slots": 16},
    "fri": {"start": "09:00", "end": "15:00", "slots": 12, "capacity": 2},
    "sat": "off",
    "sun": "off",
}

GREEN, RED, YELLOW, RESET = "\033[92m", "\033[91m", "\033[93m", "\033[0m"


@dataclass
class Check:
    """Outcome of one verification step."""
    name: str
    ok: bool
    message: str = ""
    required: bool = True

    def show(self) -> None:
        if self.ok:
            mark = f"{GREEN}[PASS]{RESET}"
        elif self.required:
            mark = f"{RED}[FAIL]{RESET}"
        else:
            mark = f"{YELLOW}[WARN]{RESET}"
        suffix = f" - {self.message}" if self.message else ""
        print(f"  {mark} {self.name}{suffix}")


def section(title: str, checks: list[Check]) -> list[Check]:
    """Print a titled block of checks and pass them through."""
    print(f"\n{title}\n{'-' * len(title)}")
    for check in checks:
        check.show()
    return checks


def mask_url(value: str) -> str:
    """Drop credentials from a connection URL."""
    return f"...@{value.rsplit('@', 1)[-1]}" if "@" in value else value


def environment_checks() -> list[Check]:
    checks = [
        Check(
            ".env file",
            (project_root / ".env").exists(),
            "found" if (project_root / ".env").exists() else "not found, using defaults",
            required=False,
        )
    ]
    for var, required in (("DATABASE_URL", True), ("REDIS_URL", False)):
        value = os.getenv(var, "")
        checks.append(Check(var, bool(value), mask_url(value) if value else "not set", required))
    return checks


def policy_checks() -> list[Check]:
    """Booking policy; Settings rejects bad zones, capacities and deadlines."""
    from pydantic import ValidationError

    try:
        # Importing the module builds the settings
        from clinicflow.config import get_settings
        settings = get_settings()
    except ValidationError as e:
        return [Check(f"Settings: {err['loc'][0]}", False, err["msg"]) for err in e.errors()]

    online = settings.online_payment_deadline_minutes
    reception = settings.reception_payment_deadline_minutes
    sweep = settings.expiry_sweep_interval_seconds

    return [
        Check("Clinic timezone", True, settings.clinic_timezone),
        Check("Default slot capacity", True, str(settings.default_slot_capacity)),
        Check(
            "Payment deadlines",
            True,
            f"{online} min before slot online, {reception} min at reception",
        ),
        Check(
            "Expiry sweep",
            sweep > 0,
            f"every {sweep}s" if sweep > 0 else "disabled, unpaid bookings expire only when touched",
            required=False,
        ),
        Check(
            "Notification webhook",
            bool(settings.notification_webhook_url),
            settings.notification_webhook_url or "unset, events are only logged",
            required=False,
        ),
        Check(
            "Billing webhook",
            bool(settings.billing_webhook_url),
            settings.billing_webhook_url or "unset, receipts are only logged",
            required=False,
        ),
    ]


def demo_schedule_checks() -> list[Check]:
    """Make sure the seed document resolves to bookable slots."""
    from clinicflow.core.scheduling import availability

    errors = availability.validate_availability(DEMO_AVAILABILITY)
    if errors:
        return [Check("Demo availability", False, "; ".join(errors))]

    monday = dt.date.today() + dt.timedelta(days=(7 - dt.date.today().weekday()) % 7)
    slots = availability.resolve(DEMO_AVAILABILITY, monday)
    if not slots:
        return [Check("Demo availability", False, "no slots on Mondays")]
    return [Check("Demo availability", True, f"{len(slots)} slots on Mondays, first {slots[0]}")]


async def service_checks() -> list[Check]:
    from clinicflow.infra.database import check_db_health
    from clinicflow.infra.redis import check_redis_health

    db_ok = await check_db_health()
    redis_ok = await check_redis_health()
    return [
        Check("PostgreSQL", db_ok, "connected" if db_ok else "connection failed"),
        Check(
            "Redis",
            redis_ok,
            "connected" if redis_ok else "unavailable, locks are process-local",
            required=False,
        ),
    ]


async def seed() -> list[Check]:
    """Create tables and register a demo doctor."""
    from clinicflow.core.scheduling import SchedulingError, get_scheduling_engine
    from clinicflow.infra.database import init_db

    await init_db()
    try:
        doctor = await get_scheduling_engine().add_doctor(
            name="Dr. Demo",
            email=f"demo-{os.getpid()}@clinic.example",
            specialty="General Practice",
            availability_doc=DEMO_AVAILABILITY,
        )
    except SchedulingError as e:
        return [Check("Demo doctor", False, e.message)]
    return [Check("Demo doctor", True, str(doctor.id))]


async def main() -> int:
    """Run all verification checks."""
    print("\nClinicflow - Setup Verification")

    results = section("Environment", environment_checks())
    policy = section("Booking Policy", policy_checks())
    results += policy
    if not all(c.ok for c in policy):
        print(f"\n  {RED}Fix the settings above; nothing else can be checked.{RESET}")
        return 1
    results += section("Demo Schedule", demo_schedule_checks())

    services = section("Services", await service_checks())
    results += services
    if "--seed" in sys.argv and services[0].ok:
        results += section("Seed", await seed())

    failed = [c for c in results if not c.ok and c.required]
    warned = [c for c in results if not c.ok and not c.required]

    print()
    if failed:
        print(f"  {RED}{len(failed)} required check(s) failed:{RESET} {', '.join(c.name for c in failed)}")
        return 1
    if warned:
        print(f"  {YELLOW}Ready with warnings:{RESET} {', '.join(c.name for c in warned)}")
    else:
        print(f"  {GREEN}All checks passed.{RESET}")
    print("  Start the API with: uvicorn clinicflow.main:app --reload\n")
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
