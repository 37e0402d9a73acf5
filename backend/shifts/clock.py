"""
Shift Clock — maps wall-clock instants onto the two-shift plant calendar.

  DAY   = [day_start, night_start)            e.g. 07:00 - 19:00
  NIGHT = [night_start, next day's day_start) e.g. 19:00 - 07:00 (+1 day)

Every instant belongs to exactly one window. A window is identified by the
calendar date it *starts* on, so 02:00 on the 15th belongs to the NIGHT shift
of the 14th.

All instants handled here are naive plant-local wall-clock datetimes.
Aware datetimes are converted to the plant timezone at the input boundary.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from functools import lru_cache
from zoneinfo import ZoneInfo

from core.config import get_settings
from core.errors import ClockAmbiguity


class ShiftType(str, Enum):
    DAY = "DAY"
    NIGHT = "NIGHT"


@dataclass(frozen=True)
class ShiftWindow:
    shift_date: date
    shift_type: ShiftType
    start: datetime
    end: datetime

    @property
    def key(self) -> tuple[date, str]:
        return (self.shift_date, self.shift_type.value)

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60


class ShiftClock:
    """Pure shift calendar. Holds no state beyond its two boundary hours."""

    def __init__(self, day_start_hour: int = 7, night_start_hour: int = 19):
        if not (0 <= day_start_hour < night_start_hour <= 23):
            raise ValueError(f"invalid shift boundaries: day={day_start_hour} night={night_start_hour}")
        self.day_start = time(day_start_hour)
        self.night_start = time(night_start_hour)

    @property
    def boundary_hours(self) -> tuple[int, int]:
        return (self.day_start.hour, self.night_start.hour)

    def classify(self, instant: datetime) -> ShiftType:
        """Return the shift an instant belongs to."""
        wall = instant.time()
        if self.day_start <= wall < self.night_start:
            return ShiftType.DAY
        return ShiftType.NIGHT

    def shift_date(self, instant: datetime) -> date:
        """Calendar date the instant's shift window started on."""
        if instant.time() < self.day_start:
            return instant.date() - timedelta(days=1)
        return instant.date()

    def bounds(self, shift_date: date, shift_type: ShiftType | str) -> tuple[datetime, datetime]:
        """Theoretical start/end of a shift window; NIGHT ends on the following date."""
        shift_type = ShiftType(shift_type)
        if shift_type is ShiftType.DAY:
            return (
                datetime.combine(shift_date, self.day_start),
                datetime.combine(shift_date, self.night_start),
            )
        return (
            datetime.combine(shift_date, self.night_start),
            datetime.combine(shift_date + timedelta(days=1), self.day_start),
        )

    def window(self, instant: datetime) -> ShiftWindow:
        shift_type = self.classify(instant)
        shift_date = self.shift_date(instant)
        start, end = self.bounds(shift_date, shift_type)
        return ShiftWindow(shift_date=shift_date, shift_type=shift_type, start=start, end=end)

    def next_boundary(self, instant: datetime) -> datetime:
        return self.window(instant).end


def coerce_timestamp(value: datetime | str | None, *, field: str = "timestamp") -> datetime:
    """Normalise an external timestamp into naive plant-local wall-clock time."""
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ClockAmbiguity(f"Malformed {field}: {value!r}", field=field) from exc
    if not isinstance(value, datetime):
        raise ClockAmbiguity(f"Unclassifiable {field}: {value!r}", field=field)
    if value.tzinfo is not None:
        value = value.astimezone(_plant_zone()).replace(tzinfo=None)
    return value


def plant_now() -> datetime:
    """Current plant-local wall-clock time (naive)."""
    return datetime.now(_plant_zone()).replace(tzinfo=None, microsecond=0)


def _plant_zone() -> ZoneInfo:
    return ZoneInfo(get_settings().plant_timezone)


@lru_cache
def get_shift_clock() -> ShiftClock:
    settings = get_settings()
    return ShiftClock(settings.day_shift_start_hour, settings.night_shift_start_hour)
