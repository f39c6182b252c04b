from datetime import date, time

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from caresync.routes.common import ensure_database_ready, get_db, service_errors
from caresync.scheduling.slots import generate_slots
from caresync.scheduling.weekly_template import DAYS_OF_WEEK, WeeklyTemplate
from caresync.services import availability_service, template_store

router = APIRouter(tags=['availability'])

MAX_SLOT_DURATION_MINUTES = 480


class TimeRangeModel(BaseModel):
    start: time
    end: time


class DayScheduleResponse(BaseModel):
    day: str
    enabled: bool
    ranges: list[TimeRangeModel]


class WeeklyTemplateResponse(BaseModel):
    provider_id: int
    working_days: int
    total_ranges: int
    days: list[DayScheduleResponse]


class SetDayRequest(BaseModel):
    ranges: list[TimeRangeModel]
    enabled: bool | None = None


class CopyDayRequest(BaseModel):
    target_day: str

    @field_validator('target_day')
    @classmethod
    def validate_target_day(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in DAYS_OF_WEEK:
            raise ValueError('Invalid day of week.')
        return normalized


class GenerateSlotsRequest(BaseModel):
    start: time
    end: time
    duration_minutes: int = Field(gt=0, le=MAX_SLOT_DURATION_MINUTES)


class GenerateAvailabilityRequest(GenerateSlotsRequest):
    date: date


class ApplyTemplateRequest(BaseModel):
    date: date
    duration_minutes: int | None = Field(default=None, gt=0, le=MAX_SLOT_DURATION_MINUTES)


class UpdateSlotRequest(BaseModel):
    is_available: bool


class CopyAvailabilityRequest(BaseModel):
    source_date: date
    target_date: date


class BlockTimeRequest(BaseModel):
    date: date
    start: time
    end: time
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class BlockedTimeResponse(BaseModel):
    id: int
    provider_id: int
    date: date
    start_time: time
    end_time: time
    reason: str | None = None

    class Config:
        from_attributes = True


class SlotResponse(BaseModel):
    id: int
    provider_id: int
    date: date
    time: time
    duration_minutes: int
    is_available: bool
    is_booked: bool
    appointment_id: int | None = None

    class Config:
        from_attributes = True


def build_template_response(provider_id: int, template: WeeklyTemplate) -> WeeklyTemplateResponse:
    days = [
        DayScheduleResponse(
            day=day,
            enabled=schedule.enabled,
            ranges=[TimeRangeModel(start=time_range.start, end=time_range.end) for time_range in schedule.ranges],
        )
        for day, schedule in template.days.items()
    ]
    return WeeklyTemplateResponse(
        provider_id=provider_id,
        working_days=template.working_days,
        total_ranges=sum(len(schedule.ranges) for schedule in template.days.values() if schedule.enabled),
        days=days,
    )


@router.get('/providers/{provider_id}/template', response_model=WeeklyTemplateResponse)
def get_weekly_template(provider_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        return build_template_response(provider_id, template_store.get_template(db, provider_id))


@router.put('/providers/{provider_id}/template/{day}', response_model=WeeklyTemplateResponse)
def set_template_day(provider_id: int, day: str, data: SetDayRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        template = template_store.set_weekly_template(
            db,
            provider_id,
            day,
            [(time_range.start, time_range.end) for time_range in data.ranges],
            enabled=data.enabled,
        )
        return build_template_response(provider_id, template)


@router.post('/providers/{provider_id}/template/{day}/toggle', response_model=WeeklyTemplateResponse)
def toggle_template_day(provider_id: int, day: str, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        return build_template_response(provider_id, template_store.toggle_day(db, provider_id, day))


@router.post(
    '/providers/{provider_id}/template/{day}/ranges',
    response_model=WeeklyTemplateResponse,
    status_code=status.HTTP_201_CREATED,
)
def add_template_range(provider_id: int, day: str, data: TimeRangeModel, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        template = template_store.add_range(db, provider_id, day, data.start, data.end)
        return build_template_response(provider_id, template)


@router.delete('/providers/{provider_id}/template/{day}/ranges/{index}', response_model=WeeklyTemplateResponse)
def remove_template_range(provider_id: int, day: str, index: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        return build_template_response(provider_id, template_store.remove_range(db, provider_id, day, index))


@router.post('/providers/{provider_id}/template/{day}/copy', response_model=WeeklyTemplateResponse)
def copy_template_day(provider_id: int, day: str, data: CopyDayRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        template = template_store.copy_day(db, provider_id, day, data.target_day)
        return build_template_response(provider_id, template)


@router.post('/providers/{provider_id}/template/apply-slots', response_model=WeeklyTemplateResponse)
def apply_slots_to_template(provider_id: int, data: GenerateSlotsRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        template = template_store.apply_generated_slots(db, provider_id, data.start, data.end, data.duration_minutes)
        return build_template_response(provider_id, template)


@router.post('/slots/preview', response_model=list[time])
def preview_slots(data: GenerateSlotsRequest):
    with service_errors():
        return list(generate_slots(data.start, data.end, data.duration_minutes))


@router.get('/providers/{provider_id}/slots', response_model=list[SlotResponse])
def list_provider_slots(
    provider_id: int,
    slot_date: date = Query(..., alias='date'),
    available_only: bool = Query(default=False),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with service_errors(db):
        slots = availability_service.list_availability(db, provider_id, slot_date)
        if available_only:
            slots = [slot for slot in slots if slot.is_available and not slot.is_booked]
        return slots


@router.post(
    '/providers/{provider_id}/slots/generate',
    response_model=list[SlotResponse],
    status_code=status.HTTP_201_CREATED,
)
def generate_provider_slots(provider_id: int, data: GenerateAvailabilityRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        return availability_service.generate_availability(
            db,
            provider_id,
            data.date,
            data.start,
            data.end,
            data.duration_minutes,
        )


@router.post('/providers/{provider_id}/slots/apply-template', response_model=list[SlotResponse])
def apply_provider_template(provider_id: int, data: ApplyTemplateRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        return availability_service.apply_template(db, provider_id, data.date, data.duration_minutes)


@router.patch('/providers/{provider_id}/slots/{slot_date}/{slot_time}', response_model=SlotResponse)
def update_provider_slot(
    provider_id: int,
    slot_date: date,
    slot_time: time,
    data: UpdateSlotRequest,
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with service_errors(db):
        return availability_service.set_slot_availability(db, provider_id, slot_date, slot_time, data.is_available)


@router.delete('/providers/{provider_id}/slots/{slot_date}/{slot_time}', status_code=status.HTTP_204_NO_CONTENT)
def remove_provider_slot(provider_id: int, slot_date: date, slot_time: time, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        availability_service.remove_slot(db, provider_id, slot_date, slot_time)


@router.post('/providers/{provider_id}/slots/copy', response_model=list[SlotResponse])
def copy_provider_slots(provider_id: int, data: CopyAvailabilityRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        return availability_service.copy_availability(db, provider_id, data.source_date, data.target_date)


@router.get('/providers/{provider_id}/blocked-times', response_model=list[BlockedTimeResponse])
def list_provider_blocked_times(
    provider_id: int,
    block_date: date | None = Query(default=None, alias='date'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    with service_errors(db):
        return availability_service.list_blocked_times(db, provider_id, block_date)


@router.post(
    '/providers/{provider_id}/blocked-times',
    response_model=BlockedTimeResponse,
    status_code=status.HTTP_201_CREATED,
)
def block_provider_time(provider_id: int, data: BlockTimeRequest, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        return availability_service.block_time(db, provider_id, data.date, data.start, data.end, data.reason)


@router.delete('/providers/{provider_id}/blocked-times/{block_id}', status_code=status.HTTP_204_NO_CONTENT)
def unblock_provider_time(provider_id: int, block_id: int, db: Session = Depends(get_db)):
    ensure_database_ready()

    with service_errors(db):
        availability_service.unblock_time(db, provider_id, block_id)
