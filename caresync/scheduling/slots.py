from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from caresync.scheduling.errors import InvalidRangeError


def _to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def _from_minutes(total_minutes: int) -> time:
    return time(total_minutes // 60, total_minutes % 60)


@dataclass(frozen=True)
class SlotRange:
    """Start times from ``start`` stepping by ``duration_minutes`` that fit before ``end``.

    Iterating is lazy and can be repeated; a trailing interval shorter than
    the duration is dropped.
    """

    start: time
    end: time
    duration_minutes: int

    def __post_init__(self) -> None:
        for value in (self.start, self.end):
            if value.second or value.microsecond:
                raise InvalidRangeError(
                    'Range bounds must fall on a whole minute.',
                    start=self.start.isoformat(),
                    end=self.end.isoformat(),
                )
        if self.duration_minutes <= 0:
            raise InvalidRangeError(
                'Slot duration must be a positive number of minutes.',
                duration_minutes=self.duration_minutes,
            )
        if self.start >= self.end:
            raise InvalidRangeError(
                'Range start must be before range end.',
                start=self.start.isoformat(),
                end=self.end.isoformat(),
            )

    def __iter__(self) -> Iterator[time]:
        current = _to_minutes(self.start)
        end = _to_minutes(self.end)
        while current + self.duration_minutes <= end:
            yield _from_minutes(current)
            current += self.duration_minutes

    def __len__(self) -> int:
        span = _to_minutes(self.end) - _to_minutes(self.start)
        return span // self.duration_minutes

    def __contains__(self, value: object) -> bool:
        if not isinstance(value, time):
            return False
        offset = _to_minutes(value) - _to_minutes(self.start)
        return (
            value.second == 0
            and value.microsecond == 0
            and 0 <= offset <= _to_minutes(self.end) - _to_minutes(self.start) - self.duration_minutes
            and offset % self.duration_minutes == 0
        )


def generate_slots(start: time, end: time, duration_minutes: int) -> SlotRange:
    return SlotRange(start=start, end=end, duration_minutes=duration_minutes)


def merge_slot_times(
    existing: Iterable[tuple[time, int]],
    generated: Iterable[tuple[time, int]],
) -> list[time]:
    """Return the generated start times whose interval is free on the day.

    Both inputs are ``(start, duration_minutes)`` pairs. A generated slot is
    skipped when it overlaps an existing slot or one accepted before it, so
    grids of different durations never stack on the same minutes. Existing
    slots keep their available/booked state untouched, and running a
    generation twice is a no-op the second time.
    """
    taken = [(_to_minutes(start), _to_minutes(start) + duration) for start, duration in existing]
    new_times: list[time] = []
    for slot_time, duration in sorted(generated):
        begin = _to_minutes(slot_time)
        finish = begin + duration
        if any(begin < taken_end and taken_begin < finish for taken_begin, taken_end in taken):
            continue
        taken.append((begin, finish))
        new_times.append(slot_time)
    return sorted(new_times)


def slot_start(slot_date: date, slot_time: time) -> datetime:
    return datetime.combine(slot_date, slot_time)


def slot_end(slot_date: date, slot_time: time, duration_minutes: int) -> datetime:
    return slot_start(slot_date, slot_time) + timedelta(minutes=duration_minutes)
