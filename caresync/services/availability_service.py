"""Per-date availability of a provider.

Slots are materialized from the weekly template the first time a date is
queried, or explicitly through generation. A date that has been materialized
keeps an ``AvailabilityDay`` row, so removing its slots never brings the
template back. Merging only ever inserts free intervals, so it cannot clobber
a booking made in the meantime or stack two grids on the same minutes.
"""

import logging
from datetime import date, datetime, time

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from caresync.core import config
from caresync.database import atomic
from caresync.models.availability import AvailabilityDay, AvailabilitySlot, BlockedTime
from caresync.scheduling.errors import RangeNotFoundError, SlotUnavailableError
from caresync.scheduling.slots import generate_slots, merge_slot_times, slot_end, slot_start
from caresync.scheduling.weekly_template import TimeRange
from caresync.services.template_store import get_template

logger = logging.getLogger(__name__)

MERGE_ATTEMPTS = 2


def slot_key(provider_id: int, slot_date: date, slot_time: time) -> dict:
    return {
        'provider_id': provider_id,
        'date': slot_date.isoformat(),
        'time': slot_time.isoformat(timespec='minutes'),
    }


def _day_query(db: Session, provider_id: int, slot_date: date):
    return db.query(AvailabilitySlot).filter(
        AvailabilitySlot.provider_id == provider_id,
        AvailabilitySlot.date == slot_date,
    )


def _slot_query(db: Session, provider_id: int, slot_date: date, slot_time: time):
    return _day_query(db, provider_id, slot_date).filter(AvailabilitySlot.time == slot_time)


def _marker_query(db: Session, provider_id: int, slot_date: date):
    return db.query(AvailabilityDay).filter(
        AvailabilityDay.provider_id == provider_id,
        AvailabilityDay.date == slot_date,
    )


def _blocks_query(db: Session, provider_id: int, slot_date: date):
    return db.query(BlockedTime).filter(
        BlockedTime.provider_id == provider_id,
        BlockedTime.date == slot_date,
    )


def get_day_slots(db: Session, provider_id: int, slot_date: date) -> list[AvailabilitySlot]:
    return _day_query(db, provider_id, slot_date).order_by(AvailabilitySlot.time.asc()).all()


def is_materialized(db: Session, provider_id: int, slot_date: date) -> bool:
    return _marker_query(db, provider_id, slot_date).first() is not None


def _lock_day(db: Session, provider_id: int, slot_date: date) -> None:
    """Bump the day's marker row, creating it on first use. Must run inside ``atomic``."""
    bumped = _marker_query(db, provider_id, slot_date).update(
        {AvailabilityDay.revision: AvailabilityDay.revision + 1},
        synchronize_session=False,
    )
    if not bumped:
        db.add(AvailabilityDay(provider_id=provider_id, date=slot_date, revision=1))
        db.flush()


def _overlaps(slot_date: date, slot_time: time, duration_minutes: int, start: time, end: time) -> bool:
    return (
        slot_start(slot_date, slot_time) < datetime.combine(slot_date, end)
        and slot_end(slot_date, slot_time, duration_minutes) > datetime.combine(slot_date, start)
    )


def _is_blocked(blocks: list[BlockedTime], slot_date: date, slot_time: time, duration_minutes: int) -> bool:
    return any(_overlaps(slot_date, slot_time, duration_minutes, block.start_time, block.end_time) for block in blocks)


def merge_slots(
    db: Session,
    provider_id: int,
    slot_date: date,
    candidates: dict[time, tuple[int, bool]],
) -> list[AvailabilitySlot]:
    """Insert the candidate slots (duration, available flag) whose interval is still free on the date.

    Candidates that fall inside a blocked time are stored unavailable.
    """
    generated = [(slot_time, duration_minutes) for slot_time, (duration_minutes, _) in candidates.items()]

    for attempt in range(1, MERGE_ATTEMPTS + 1):
        try:
            with atomic(db):
                _lock_day(db, provider_id, slot_date)
                existing = [
                    (row.time, row.duration_minutes)
                    for row in _day_query(db, provider_id, slot_date).with_entities(
                        AvailabilitySlot.time,
                        AvailabilitySlot.duration_minutes,
                    )
                ]
                blocks = _blocks_query(db, provider_id, slot_date).all()
                new_times = merge_slot_times(existing, generated)

                for slot_time in new_times:
                    duration_minutes, is_available = candidates[slot_time]
                    if _is_blocked(blocks, slot_date, slot_time, duration_minutes):
                        is_available = False
                    db.add(
                        AvailabilitySlot(
                            provider_id=provider_id,
                            date=slot_date,
                            time=slot_time,
                            duration_minutes=duration_minutes,
                            is_available=is_available,
                            is_booked=False,
                        )
                    )
        except IntegrityError:
            # A concurrent materialization created the same day or keys.
            if attempt == MERGE_ATTEMPTS:
                raise
            logger.warning('Slot merge collided for provider %s on %s; merging again', provider_id, slot_date)
            continue

        if new_times:
            logger.info('Added %d slots for provider %s on %s', len(new_times), provider_id, slot_date)
        break

    return get_day_slots(db, provider_id, slot_date)


def generate_availability(
    db: Session,
    provider_id: int,
    slot_date: date,
    start: time,
    end: time,
    duration_minutes: int,
) -> list[AvailabilitySlot]:
    slot_range = generate_slots(start, end, duration_minutes)
    candidates = {slot_time: (slot_range.duration_minutes, True) for slot_time in slot_range}
    return merge_slots(db, provider_id, slot_date, candidates)


def apply_template(
    db: Session,
    provider_id: int,
    slot_date: date,
    duration_minutes: int | None = None,
) -> list[AvailabilitySlot]:
    schedule = get_template(db, provider_id).for_date(slot_date)
    if not schedule.enabled:
        return get_day_slots(db, provider_id, slot_date)

    duration_minutes = duration_minutes or config.DEFAULT_SLOT_DURATION_MINUTES
    candidates: dict[time, tuple[int, bool]] = {}
    for time_range in schedule.ranges:
        for slot_time in generate_slots(time_range.start, time_range.end, duration_minutes):
            candidates[slot_time] = (duration_minutes, True)

    return merge_slots(db, provider_id, slot_date, candidates)


def list_availability(db: Session, provider_id: int, slot_date: date) -> list[AvailabilitySlot]:
    slots = get_day_slots(db, provider_id, slot_date)
    if slots or is_materialized(db, provider_id, slot_date):
        return slots
    return apply_template(db, provider_id, slot_date)


def set_slot_availability(
    db: Session,
    provider_id: int,
    slot_date: date,
    slot_time: time,
    is_available: bool,
) -> AvailabilitySlot:
    """Block or reopen a slot. A booked slot cannot be blocked."""
    query = _slot_query(db, provider_id, slot_date, slot_time)
    if not is_available:
        query = query.filter(AvailabilitySlot.is_booked.is_(False))

    with atomic(db):
        updated = query.update({AvailabilitySlot.is_available: is_available}, synchronize_session=False)
        if updated != 1:
            raise _unavailable(db, provider_id, slot_date, slot_time)

    logger.info(
        '%s slot %s',
        'Reopened' if is_available else 'Blocked',
        slot_key(provider_id, slot_date, slot_time),
    )
    return _slot_query(db, provider_id, slot_date, slot_time).one()


def remove_slot(db: Session, provider_id: int, slot_date: date, slot_time: time) -> None:
    with atomic(db):
        deleted = _slot_query(db, provider_id, slot_date, slot_time).filter(
            AvailabilitySlot.is_booked.is_(False),
        ).delete(synchronize_session='fetch')
        if deleted != 1:
            raise _unavailable(db, provider_id, slot_date, slot_time)
        _lock_day(db, provider_id, slot_date)

    logger.info('Removed slot %s', slot_key(provider_id, slot_date, slot_time))


def list_blocked_times(db: Session, provider_id: int, slot_date: date | None = None) -> list[BlockedTime]:
    query = db.query(BlockedTime).filter(BlockedTime.provider_id == provider_id)
    if slot_date is not None:
        query = query.filter(BlockedTime.date == slot_date)
    return query.order_by(BlockedTime.date, BlockedTime.start_time, BlockedTime.id).all()


def block_time(
    db: Session,
    provider_id: int,
    slot_date: date,
    start: time,
    end: time,
    reason: str | None = None,
) -> BlockedTime:
    """Block a time range of a date. Unbooked slots touching it become unavailable; bookings stay."""
    TimeRange(start, end)  # rejects an empty or inverted range

    with atomic(db):
        block = BlockedTime(provider_id=provider_id, date=slot_date, start_time=start, end_time=end, reason=reason)
        db.add(block)
        db.flush()
        slot_ids = [
            slot.id
            for slot in _day_query(db, provider_id, slot_date)
            if _overlaps(slot_date, slot.time, slot.duration_minutes, start, end)
        ]
        blocked = 0
        if slot_ids:
            blocked = db.query(AvailabilitySlot).filter(
                AvailabilitySlot.id.in_(slot_ids),
                AvailabilitySlot.is_booked.is_(False),
            ).update({AvailabilitySlot.is_available: False}, synchronize_session=False)

    db.refresh(block)
    logger.info(
        'Blocked %s-%s on %s for provider %s (%d slots, %d booked left as is): %s',
        start.isoformat(timespec='minutes'),
        end.isoformat(timespec='minutes'),
        slot_date,
        provider_id,
        blocked,
        len(slot_ids) - blocked,
        reason,
    )
    return block


def unblock_time(db: Session, provider_id: int, block_id: int) -> None:
    """Remove a blocked time and reopen its slots that no other block still covers."""
    block = db.query(BlockedTime).filter(
        BlockedTime.id == block_id,
        BlockedTime.provider_id == provider_id,
    ).first()
    if block is None:
        raise RangeNotFoundError('Blocked time not found.', provider_id=provider_id, block_id=block_id)

    slot_date, start, end = block.date, block.start_time, block.end_time
    with atomic(db):
        db.delete(block)
        db.flush()
        remaining = _blocks_query(db, provider_id, slot_date).all()
        slot_ids = [
            slot.id
            for slot in _day_query(db, provider_id, slot_date).filter(AvailabilitySlot.is_available.is_(False))
            if _overlaps(slot_date, slot.time, slot.duration_minutes, start, end)
            and not _is_blocked(remaining, slot_date, slot.time, slot.duration_minutes)
        ]
        if slot_ids:
            db.query(AvailabilitySlot).filter(AvailabilitySlot.id.in_(slot_ids)).update(
                {AvailabilitySlot.is_available: True},
                synchronize_session=False,
            )

    logger.info('Unblocked time %s for provider %s (%d slots reopened)', block_id, provider_id, len(slot_ids))


def copy_availability(db: Session, provider_id: int, source_date: date, target_date: date) -> list[AvailabilitySlot]:
    """Copy a date's slot times onto another date; bookings are never copied."""
    candidates = {
        slot.time: (slot.duration_minutes, slot.is_available)
        for slot in get_day_slots(db, provider_id, source_date)
    }
    return merge_slots(db, provider_id, target_date, candidates)


def _unavailable(db: Session, provider_id: int, slot_date: date, slot_time: time) -> SlotUnavailableError:
    slot = _slot_query(db, provider_id, slot_date, slot_time).first()
    key = slot_key(provider_id, slot_date, slot_time)
    if slot is None:
        return SlotUnavailableError('No slot exists at this time.', **key)
    return SlotUnavailableError('This time slot is already booked.', is_booked=slot.is_booked, **key)
