"""Shared fixtures: a SQLite-backed scheduling engine with a controllable clock."""

from datetime import date, datetime, timedelta
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from clinicflow.config import Settings
from clinicflow.core.scheduling import SchedulingEngine
from clinicflow.infra.database import build_engine, build_session_factory, init_db
from clinicflow.infra.redis import KeyLockManager


# 2030-01-07 is a Monday
MONDAY = date(2030, 1, 7)
TUESDAY = date(2030, 1, 8)
SATURDAY = date(2030, 1, 12)

AVAILABILITY = {
    "mon": {"start": "09:00", "end": "12:00"},  # 30-minute slots, capacity 1
    "tue": {"start": "09:00", "end": "11:00", "slots": 2, "capacity": 2},
    "sat": "off",
    "sun": "off",
}


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock():
    """Clock at 08:00 on the Monday."""
    return FakeClock(datetime(2030, 1, 7, 8, 0))


@pytest.fixture
def settings(tmp_path):
    """Settings for tests: no Redis, no background sweep."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'clinic.db'}",
        redis_locks_enabled=False,
        expiry_sweep_interval_seconds=0,
        clinic_timezone="UTC",
        default_slot_capacity=1,
    )


@pytest_asyncio.fixture
async def db_engine(settings):
    """Fresh database with all tables."""
    engine = build_engine(settings.database_url)
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test database."""
    return build_session_factory(db_engine)


@pytest.fixture
def notifier():
    """Mock notification dispatcher."""
    return MagicMock()


@pytest.fixture
def billing():
    """Mock receipt generator."""
    return MagicMock()


@pytest.fixture
def locks():
    """In-process locks only."""
    return KeyLockManager(use_redis=False, wait_timeout=2.0)


@pytest.fixture
def engine(settings, session_factory, locks, notifier, billing, clock):
    """Scheduling engine wired to the test database and mocks."""
    return SchedulingEngine(
        settings=settings,
        session_factory=session_factory,
        locks=locks,
        notifier=notifier,
        billing=billing,
        clock=clock,
    )


@pytest_asyncio.fixture
async def doctor(engine):
    """Doctor working Monday mornings and two Tuesday slots."""
    return await engine.add_doctor(
        name="Dr. Ada Stone",
        email="ada.stone@clinic.test",
        specialty="General Practice",
        availability_doc=AVAILABILITY,
    )


def notification_types(notifier) -> list[str]:
    """Types of every notification handed to the dispatcher, in order."""
    return [call.args[0].type for call in notifier.dispatch.call_args_list]


def receipt_reasons(billing) -> list[str]:
    """Reasons of every receipt request handed to billing, in order."""
    return [call.args[0].reason for call in billing.request_receipt.call_args_list]
