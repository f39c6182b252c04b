import logging
from datetime import date, time

from sqlalchemy.orm import Session

from caresync.models.weekly_template import WeeklyTemplateDay, WeeklyTemplateRange
from caresync.scheduling.errors import InvalidRangeError
from caresync.scheduling.slots import generate_slots, slot_end
from caresync.scheduling.weekly_template import (
    DAYS_OF_WEEK,
    DaySchedule,
    TimeRange,
    WeeklyTemplate,
)

logger = logging.getLogger(__name__)


def get_template(db: Session, provider_id: int) -> WeeklyTemplate:
    """Load a provider's template, falling back to the default working week."""
    day_rows = db.query(WeeklyTemplateDay).filter(WeeklyTemplateDay.provider_id == provider_id).all()
    if not day_rows:
        return WeeklyTemplate.default()

    range_rows = db.query(WeeklyTemplateRange).filter(
        WeeklyTemplateRange.provider_id == provider_id,
    ).order_by(WeeklyTemplateRange.day, WeeklyTemplateRange.position).all()

    ranges_by_day: dict[str, list[TimeRange]] = {day: [] for day in DAYS_OF_WEEK}
    for row in range_rows:
        ranges_by_day[row.day].append(TimeRange(row.start_time, row.end_time))

    return WeeklyTemplate({
        row.day: DaySchedule(enabled=row.enabled, ranges=tuple(ranges_by_day[row.day]))
        for row in day_rows
    })


def save_template(db: Session, provider_id: int, template: WeeklyTemplate) -> WeeklyTemplate:
    db.query(WeeklyTemplateRange).filter(WeeklyTemplateRange.provider_id == provider_id).delete(
        synchronize_session='fetch',
    )
    db.query(WeeklyTemplateDay).filter(WeeklyTemplateDay.provider_id == provider_id).delete(
        synchronize_session='fetch',
    )

    for day, schedule in template.days.items():
        db.add(WeeklyTemplateDay(provider_id=provider_id, day=day, enabled=schedule.enabled))
        for position, time_range in enumerate(schedule.ranges):
            db.add(
                WeeklyTemplateRange(
                    provider_id=provider_id,
                    day=day,
                    position=position,
                    start_time=time_range.start,
                    end_time=time_range.end,
                )
            )

    db.commit()
    return template


def _edit(db: Session, provider_id: int, edit) -> WeeklyTemplate:
    template = edit(get_template(db, provider_id))
    saved = save_template(db, provider_id, template)
    logger.info("Weekly template updated for provider %s (%s working days)", provider_id, saved.working_days)
    return saved


def toggle_day(db: Session, provider_id: int, day: str) -> WeeklyTemplate:
    return _edit(db, provider_id, lambda template: template.toggle_day(day))


def add_range(db: Session, provider_id: int, day: str, start: time, end: time) -> WeeklyTemplate:
    time_range = TimeRange(start, end)
    return _edit(db, provider_id, lambda template: template.add_range(day, time_range))


def remove_range(db: Session, provider_id: int, day: str, index: int) -> WeeklyTemplate:
    return _edit(db, provider_id, lambda template: template.remove_range(day, index))


def set_weekly_template(
    db: Session,
    provider_id: int,
    day: str,
    ranges: list[tuple[time, time]],
    enabled: bool | None = None,
) -> WeeklyTemplate:
    time_ranges = [TimeRange(start, end) for start, end in ranges]
    return _edit(db, provider_id, lambda template: template.set_day(day, time_ranges, enabled=enabled))


def copy_day(db: Session, provider_id: int, source_day: str, target_day: str) -> WeeklyTemplate:
    return _edit(db, provider_id, lambda template: template.copy_day(source_day, target_day))


def apply_generated_slots(db: Session, provider_id: int, start: time, end: time, duration_minutes: int) -> WeeklyTemplate:
    """Set every enabled day to the span covered by whole slots of ``start``-``end``."""
    slot_range = generate_slots(start, end, duration_minutes)
    if not len(slot_range):
        raise InvalidRangeError(
            'Range is shorter than one slot.',
            start=start.isoformat(),
            end=end.isoformat(),
            duration_minutes=duration_minutes,
        )

    last_end = slot_end(date.min, slot_range.start, len(slot_range) * duration_minutes).time()
    time_range = TimeRange(slot_range.start, last_end)
    return _edit(db, provider_id, lambda template: template.apply_to_enabled_days(time_range))
