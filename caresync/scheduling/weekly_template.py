"""Recurring weekly availability of a provider.

The template is an immutable value: every edit returns a new
``WeeklyTemplate``. It only describes availability; nothing is bookable until
a date is materialized from it.
"""

from dataclasses import dataclass, field, replace
from datetime import date, time
from types import MappingProxyType
from typing import Mapping

from caresync.scheduling.errors import (
    InvalidDayError,
    InvalidRangeError,
    OverlappingRangeError,
    RangeNotFoundError,
)

DAYS_OF_WEEK = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')
WORKING_DAYS = DAYS_OF_WEEK[:5]
DEFAULT_RANGE_START = time(9, 0)
DEFAULT_RANGE_END = time(17, 0)


@dataclass(frozen=True, order=True)
class TimeRange:
    start: time
    end: time

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise InvalidRangeError(
                'Range start must be before range end.',
                start=self.start.isoformat(),
                end=self.end.isoformat(),
            )

    def overlaps(self, other: 'TimeRange') -> bool:
        return self.start < other.end and other.start < self.end


DEFAULT_RANGE = TimeRange(DEFAULT_RANGE_START, DEFAULT_RANGE_END)


@dataclass(frozen=True)
class DaySchedule:
    enabled: bool = False
    ranges: tuple[TimeRange, ...] = ()


def normalize_day(day: str) -> str:
    normalized = (day or '').strip().lower()
    if normalized not in DAYS_OF_WEEK:
        raise InvalidDayError(f'Unknown day of week: {day!r}.', day=day)
    return normalized


def day_for_date(value: date) -> str:
    return DAYS_OF_WEEK[value.weekday()]


def validate_ranges(ranges) -> tuple[TimeRange, ...]:
    """Sort ranges by start time and reject any overlap between them."""
    ordered = tuple(sorted(ranges))
    for previous, current in zip(ordered, ordered[1:]):
        if previous.overlaps(current):
            raise OverlappingRangeError(
                'Time ranges for a day must not overlap.',
                existing=f'{previous.start.isoformat()}-{previous.end.isoformat()}',
                requested=f'{current.start.isoformat()}-{current.end.isoformat()}',
            )
    return ordered


@dataclass(frozen=True)
class WeeklyTemplate:
    days: Mapping[str, DaySchedule] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Always exactly seven day keys, read-only.
        days = {day: self.days.get(day, DaySchedule()) for day in DAYS_OF_WEEK}
        object.__setattr__(self, 'days', MappingProxyType(days))

    def __hash__(self) -> int:
        return hash(tuple(self.days.items()))

    @classmethod
    def default(cls) -> 'WeeklyTemplate':
        return cls({
            day: DaySchedule(enabled=True, ranges=(DEFAULT_RANGE,)) if day in WORKING_DAYS else DaySchedule()
            for day in DAYS_OF_WEEK
        })

    def day(self, day: str) -> DaySchedule:
        return self.days[normalize_day(day)]

    def for_date(self, value: date) -> DaySchedule:
        return self.days[day_for_date(value)]

    def _with_day(self, day: str, schedule: DaySchedule) -> 'WeeklyTemplate':
        days = dict(self.days)
        days[day] = schedule
        return WeeklyTemplate(days)

    def toggle_day(self, day: str) -> 'WeeklyTemplate':
        day = normalize_day(day)
        schedule = self.days[day]
        ranges = schedule.ranges
        if not schedule.enabled and not ranges:
            ranges = (DEFAULT_RANGE,)
        return self._with_day(day, DaySchedule(enabled=not schedule.enabled, ranges=ranges))

    def add_range(self, day: str, time_range: TimeRange) -> 'WeeklyTemplate':
        day = normalize_day(day)
        schedule = self.days[day]
        for existing in schedule.ranges:
            if existing.overlaps(time_range):
                raise OverlappingRangeError(
                    'Time range overlaps an existing range.',
                    day=day,
                    existing=f'{existing.start.isoformat()}-{existing.end.isoformat()}',
                    requested=f'{time_range.start.isoformat()}-{time_range.end.isoformat()}',
                )
        return self._with_day(day, replace(schedule, ranges=tuple(sorted(schedule.ranges + (time_range,)))))

    def remove_range(self, day: str, index: int) -> 'WeeklyTemplate':
        day = normalize_day(day)
        schedule = self.days[day]
        if index < 0 or index >= len(schedule.ranges):
            raise RangeNotFoundError(f'No time range at index {index}.', day=day, index=index)
        ranges = schedule.ranges[:index] + schedule.ranges[index + 1:]
        return self._with_day(day, replace(schedule, ranges=ranges))

    def set_day(self, day: str, ranges, enabled: bool | None = None) -> 'WeeklyTemplate':
        day = normalize_day(day)
        schedule = self.days[day]
        return self._with_day(
            day,
            DaySchedule(
                enabled=schedule.enabled if enabled is None else enabled,
                ranges=validate_ranges(ranges),
            ),
        )

    def copy_day(self, source_day: str, target_day: str) -> 'WeeklyTemplate':
        source = self.days[normalize_day(source_day)]
        return self._with_day(normalize_day(target_day), DaySchedule(enabled=source.enabled, ranges=source.ranges))

    def apply_to_enabled_days(self, time_range: TimeRange) -> 'WeeklyTemplate':
        """Replace the ranges of every enabled day with ``time_range``."""
        return WeeklyTemplate({
            day: DaySchedule(enabled=True, ranges=(time_range,)) if schedule.enabled else schedule
            for day, schedule in self.days.items()
        })

    @property
    def working_days(self) -> int:
        return sum(1 for schedule in self.days.values() if schedule.enabled)
