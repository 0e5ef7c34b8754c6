"""Tests for the Availability Resolver."""

import logging
from datetime import date

import pytest

from clinicflow.core.scheduling.availability import (
    capacity,
    day_key,
    expand_range,
    normalize_time,
    parse_time,
    resolve,
    validate_availability,
)


MONDAY = date(2030, 1, 7)
TUESDAY = date(2030, 1, 8)


class TestTimeHelpers:
    """Test clock-time parsing and formatting."""

    def test_parse_time(self):
        """Test HH:MM parsing to minutes."""
        assert parse_time("09:30") == 570
        assert parse_time("9:05") == 545
        assert parse_time("23:59:00") == 1439

    @pytest.mark.parametrize("value", ["24:00", "12:60", "noon", "", None, 930])
    def test_parse_time_invalid(self, value):
        """Test invalid times return None."""
        assert parse_time(value) is None

    def test_normalize_time(self):
        """Test canonical HH:MM form."""
        assert normalize_time("9:05") == "09:05"
        assert normalize_time("bad") is None

    def test_day_key(self):
        """Test weekday keys."""
        assert day_key(MONDAY) == "mon"
        assert day_key(date(2030, 1, 13)) == "sun"


class TestExpandRange:
    """Test range expansion."""

    def test_evenly_spaced_slots(self):
        """Test slot count spreads labels over the range."""
        assert expand_range("09:00", "17:00", 8) == [
            "09:00", "10:00", "11:00", "12:00",
            "13:00", "14:00", "15:00", "16:00",
        ]

    def test_rounding_to_minutes(self):
        """Test uneven intervals round to the minute."""
        assert expand_range("09:00", "10:00", 3) == ["09:00", "09:20", "09:40"]

    def test_default_step(self):
        """Test 30-minute steps without a slot count."""
        assert expand_range("09:00", "11:00") == ["09:00", "09:30", "10:00", "10:30"]

    def test_end_is_exclusive(self):
        """Test the end time is never a slot."""
        assert "10:00" not in expand_range("09:00", "10:00")

    def test_empty_or_inverted_range(self):
        """Test ranges with no length produce nothing."""
        assert expand_range("10:00", "10:00") == []
        assert expand_range("12:00", "09:00") == []
        assert expand_range("xx", "10:00") == []


class TestResolve:
    """Test resolving a date against an availability document."""

    def test_structured_entry(self):
        """Test start/end/slots entry."""
        doc = {"mon": {"start": "09:00", "end": "10:00", "slots": 3}}
        assert resolve(doc, MONDAY) == ["09:00", "09:20", "09:40"]

    def test_other_weekday_is_off(self):
        """Test a weekday missing from the document has no slots."""
        doc = {"mon": {"start": "09:00", "end": "10:00"}}
        assert resolve(doc, TUESDAY) == []

    def test_legacy_range_string(self):
        """Test "HH:MM-HH:MM" entries."""
        assert resolve({"mon": "09:00-10:00"}, MONDAY) == ["09:00", "09:30"]

    def test_legacy_range_list_sorted_and_deduplicated(self):
        """Test lists of ranges are merged in time order."""
        doc = {"mon": ["14:00-15:00", "09:00-10:00", "09:30-10:30"]}
        assert resolve(doc, MONDAY) == ["09:00", "09:30", "10:00", "14:00", "14:30"]

    @pytest.mark.parametrize("value", ["off", "OFF", "none", "—", "-", "", None])
    def test_off_values(self, value):
        """Test every spelling of a day off."""
        assert resolve({"mon": value}, MONDAY) == []

    @pytest.mark.parametrize("key", ["Monday", "MON", "monday"])
    def test_day_name_variants(self, key):
        """Test full or capitalised day names."""
        doc = {key: {"start": "09:00", "end": "10:00"}}
        assert resolve(doc, MONDAY) == ["09:00", "09:30"]

    def test_missing_document(self):
        """Test a doctor without availability has no slots."""
        assert resolve(None, MONDAY) == []
        assert resolve({}, MONDAY) == []

    def test_malformed_entry_logs_and_returns_empty(self, caplog):
        """Test malformed entries never raise."""
        with caplog.at_level(logging.WARNING):
            assert resolve({"mon": {"start": "09:00"}}, MONDAY) == []
            assert resolve({"mon": 42}, MONDAY) == []
            assert resolve({"mon": "nine to five"}, MONDAY) == []

        assert len([r for r in caplog.records if r.levelno == logging.WARNING]) == 3

    def test_more_slots_than_minutes_logs(self, caplog):
        """Test an oversized slot count keeps distinct minutes and warns."""
        doc = {"mon": {"start": "09:00", "end": "09:05", "slots": 10}}

        with caplog.at_level(logging.WARNING):
            labels = resolve(doc, MONDAY)

        assert labels == ["09:00", "09:01", "09:02", "09:03", "09:04"]
        assert any("more slots than minutes" in r.getMessage() for r in caplog.records)


class TestCapacity:
    """Test per-slot capacity."""

    def test_declared_capacity(self):
        """Test capacity from the day entry."""
        doc = {"mon": {"start": "09:00", "end": "10:00", "capacity": 3}}
        assert capacity(doc, MONDAY) == 3

    def test_default_capacity(self):
        """Test fallback to the configured default."""
        doc = {"mon": {"start": "09:00", "end": "10:00"}}
        assert capacity(doc, MONDAY) == 1
        assert capacity(doc, MONDAY, default=2) == 2
        assert capacity({"mon": "09:00-10:00"}, MONDAY, default=4) == 4

    def test_non_positive_capacity_ignored(self):
        """Test zero capacity falls back to the default."""
        doc = {"mon": {"start": "09:00", "end": "10:00", "capacity": 0}}
        assert capacity(doc, MONDAY, default=2) == 2


class TestValidateAvailability:
    """Test availability document validation."""

    def test_valid_document(self):
        """Test a well-formed document has no problems."""
        doc = {
            "mon": {"start": "09:00", "end": "17:00", "slots": 8},
            "tue": "09:00-12:00",
            "wed": ["09:00-10:00", "14:00-15:00"],
            "sat": "off",
        }
        assert validate_availability(doc) == []

    def test_unknown_day(self):
        """Test unknown day keys are reported."""
        problems = validate_availability({"funday": "off"})
        assert problems == ["Unknown day key: 'funday'"]

    def test_inverted_range(self):
        """Test end before start."""
        problems = validate_availability({"mon": {"start": "10:00", "end": "09:00"}})
        assert any("end must be after start" in p for p in problems)

    def test_bad_slots_and_capacity(self):
        """Test non-positive slots and capacity."""
        problems = validate_availability(
            {"mon": {"start": "09:00", "end": "10:00", "slots": 0, "capacity": -1}}
        )
        assert len(problems) == 2

    def test_more_slots_than_minutes(self):
        """Test a slot count the range cannot hold in whole minutes."""
        assert validate_availability(
            {"mon": {"start": "09:00", "end": "09:05", "slots": 10}}
        ) == ["mon: more slots than minutes between start and end"]
        assert validate_availability(
            {"mon": {"start": "09:00", "end": "09:05", "slots": 5}}
        ) == []

    def test_bad_range_string(self):
        """Test unparseable legacy ranges."""
        problems = validate_availability({"tue": "9-5"})
        assert problems == ["tue: range must look like HH:MM-HH:MM"]
