"""Tests for the Appointment Lifecycle transition table and payment rules."""

from datetime import date, datetime
from unittest.mock import MagicMock

import pytest

from clinicflow.config import Settings
from clinicflow.core.scheduling.lifecycle import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    AppointmentLifecycle,
    can_transition,
    normalize_email,
)
from clinicflow.core.scheduling.outbox import Outbox
from clinicflow.models.database import AppointmentStatus, PaymentMethod


S = AppointmentStatus


class TestTransitionTable:
    """Test the closed appointment state machine."""

    def test_every_status_has_an_entry(self):
        """Test the table covers all statuses."""
        assert set(TRANSITIONS) == set(AppointmentStatus)

    def test_terminal_statuses(self):
        """Test terminal statuses allow nothing."""
        assert TERMINAL_STATUSES == {S.COMPLETED, S.CANCELLED, S.NO_SHOW, S.EXPIRED}
        for status in TERMINAL_STATUSES:
            for target in AppointmentStatus:
                assert not can_transition(status, target)

    @pytest.mark.parametrize("current,target", [
        (S.PENDING_PAYMENT, S.PAID),
        (S.PENDING_PAYMENT, S.EXPIRED),
        (S.PENDING_PAYMENT, S.CANCELLED),
        (S.PENDING_PAYMENT, S.NO_SHOW),
        (S.PAID, S.CHECKED_IN),
        (S.PAID, S.RESCHEDULED),
        (S.RESCHEDULED, S.CHECKED_IN),
        (S.RESCHEDULED, S.RESCHEDULED),
        (S.CHECKED_IN, S.COMPLETED),
        (S.CHECKED_IN, S.CANCELLED),
    ])
    def test_allowed(self, current, target):
        """Test documented transitions."""
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (S.PENDING_PAYMENT, S.CHECKED_IN),
        (S.PENDING_PAYMENT, S.COMPLETED),
        (S.PAID, S.PAID),
        (S.PAID, S.EXPIRED),
        (S.CHECKED_IN, S.NO_SHOW),
        (S.CHECKED_IN, S.PAID),
        (S.RESCHEDULED, S.EXPIRED),
    ])
    def test_rejected(self, current, target):
        """Test transitions outside the table."""
        assert not can_transition(current, target)


class TestPaymentDeadline:
    """Test payment deadline policy."""

    @pytest.fixture
    def lifecycle(self):
        """Lifecycle with a clock at 08:00; nothing touches the database."""
        return AppointmentLifecycle(
            session=MagicMock(),
            settings=Settings(
                online_payment_deadline_minutes=60,
                reception_payment_deadline_minutes=15,
            ),
            clock=lambda: datetime(2030, 1, 7, 8, 0),
            outbox=Outbox(),
            ledger=MagicMock(),
            waitlist=MagicMock(),
            queue=MagicMock(),
        )

    def test_slot_start(self, lifecycle):
        """Test slot labels become wall-clock datetimes."""
        assert lifecycle.slot_start(date(2030, 1, 7), "10:30") == datetime(2030, 1, 7, 10, 30)

    def test_online_deadline(self, lifecycle):
        """Test online payments close an hour before the slot."""
        start = datetime(2030, 1, 7, 11, 0)
        assert lifecycle.payment_deadline(start, PaymentMethod.ONLINE) == datetime(2030, 1, 7, 10, 0)

    def test_reception_deadline(self, lifecycle):
        """Test reception payments close 15 minutes before the slot."""
        start = datetime(2030, 1, 7, 11, 0)
        assert lifecycle.payment_deadline(start, PaymentMethod.RECEPTION) == datetime(2030, 1, 7, 10, 45)

    def test_late_booking_pays_until_slot_start(self, lifecycle):
        """Test a booking inside the window keeps the slot start as deadline."""
        start = datetime(2030, 1, 7, 8, 30)
        assert lifecycle.payment_deadline(start, PaymentMethod.ONLINE) == start


class TestNormalizeEmail:
    """Test patient identity normalization."""

    def test_normalize(self):
        """Test trimming and lower-casing."""
        assert normalize_email("  Pat@Example.COM ") == "pat@example.com"
        assert normalize_email(None) == ""
