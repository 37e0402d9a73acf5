"""
Tests for the two-shift plant calendar.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from core.errors import ClockAmbiguity
from shifts.clock import ShiftClock, ShiftType, coerce_timestamp


class TestClassify:
    @pytest.mark.parametrize(
        "instant,expected",
        [
            (datetime(2026, 3, 10, 7, 0), ShiftType.DAY),
            (datetime(2026, 3, 10, 12, 30), ShiftType.DAY),
            (datetime(2026, 3, 10, 18, 59, 59), ShiftType.DAY),
            (datetime(2026, 3, 10, 19, 0), ShiftType.NIGHT),
            (datetime(2026, 3, 10, 23, 59), ShiftType.NIGHT),
            (datetime(2026, 3, 11, 0, 0), ShiftType.NIGHT),
            (datetime(2026, 3, 11, 6, 59, 59), ShiftType.NIGHT),
        ],
    )
    def test_boundaries(self, clock, instant, expected):
        assert clock.classify(instant) is expected

    def test_every_minute_of_a_day_maps_to_exactly_one_window(self, clock):
        cursor = datetime(2026, 3, 10, 0, 0)
        end = cursor + timedelta(days=1)
        while cursor < end:
            window = clock.window(cursor)
            assert window.contains(cursor)
            assert window.shift_type is clock.classify(cursor)
            cursor += timedelta(minutes=1)


class TestShiftDate:
    def test_night_after_midnight_belongs_to_previous_date(self, clock):
        window = clock.window(datetime(2026, 3, 15, 2, 0))
        assert window.shift_type is ShiftType.NIGHT
        assert window.shift_date == date(2026, 3, 14)
        assert window.start == datetime(2026, 3, 14, 19, 0)
        assert window.end == datetime(2026, 3, 15, 7, 0)

    def test_night_before_midnight_keeps_its_date(self, clock):
        window = clock.window(datetime(2026, 3, 14, 22, 0))
        assert window.shift_date == date(2026, 3, 14)
        assert window.key == (date(2026, 3, 14), "NIGHT")

    def test_both_halves_of_a_night_share_one_key(self, clock):
        before = clock.window(datetime(2026, 3, 14, 23, 30))
        after = clock.window(datetime(2026, 3, 15, 0, 30))
        assert before.key == after.key


class TestBounds:
    def test_day_bounds(self, clock):
        start, end = clock.bounds(date(2026, 3, 10), ShiftType.DAY)
        assert start == datetime(2026, 3, 10, 7, 0)
        assert end == datetime(2026, 3, 10, 19, 0)

    def test_night_ends_next_day(self, clock):
        start, end = clock.bounds(date(2026, 3, 10), "NIGHT")
        assert start == datetime(2026, 3, 10, 19, 0)
        assert end == datetime(2026, 3, 11, 7, 0)

    def test_unknown_shift_type_rejected(self, clock):
        with pytest.raises(ValueError):
            clock.bounds(date(2026, 3, 10), "AFTERNOON")

    def test_windows_are_twelve_hours(self, clock):
        assert clock.window(datetime(2026, 3, 10, 9, 0)).duration_minutes() == 720
        assert clock.window(datetime(2026, 3, 10, 21, 0)).duration_minutes() == 720

    def test_next_boundary(self, clock):
        assert clock.next_boundary(datetime(2026, 3, 10, 18, 0)) == datetime(2026, 3, 10, 19, 0)

    def test_invalid_boundary_hours(self):
        with pytest.raises(ValueError):
            ShiftClock(day_start_hour=19, night_start_hour=7)


class TestCoerceTimestamp:
    def test_naive_passthrough(self):
        instant = datetime(2026, 3, 10, 8, 0)
        assert coerce_timestamp(instant) == instant

    def test_iso_string(self):
        assert coerce_timestamp("2026-03-10T08:15:00") == datetime(2026, 3, 10, 8, 15)

    def test_aware_value_converted_to_plant_time(self):
        # America/Sao_Paulo is UTC-3 (no DST since 2019)
        aware = datetime(2026, 3, 10, 11, 0, tzinfo=timezone.utc)
        assert coerce_timestamp(aware) == datetime(2026, 3, 10, 8, 0)

    def test_utc_z_suffix(self):
        assert coerce_timestamp("2026-03-10T22:30:00Z") == datetime(2026, 3, 10, 19, 30)

    @pytest.mark.parametrize("value", ["not-a-date", "", 12345, None])
    def test_malformed_input_raises(self, value):
        with pytest.raises(ClockAmbiguity):
            coerce_timestamp(value)
