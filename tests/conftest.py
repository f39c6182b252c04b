import os
from datetime import date, datetime, time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from caresync.database import Base  # noqa: E402
from caresync.models.appointment import Appointment  # noqa: E402
from caresync.models.availability import AvailabilityDay, AvailabilitySlot, BlockedTime  # noqa: E402
from caresync.models.weekly_template import WeeklyTemplateDay, WeeklyTemplateRange  # noqa: E402

TABLES = [
    WeeklyTemplateDay.__table__,
    WeeklyTemplateRange.__table__,
    AvailabilityDay.__table__,
    AvailabilitySlot.__table__,
    BlockedTime.__table__,
    Appointment.__table__,
]

PROVIDER_ID = 7
PATIENT_ID = 41
OTHER_PATIENT_ID = 42
# A Monday.
SLOT_DATE = date(2026, 3, 2)
BEFORE_DAY = datetime(2026, 2, 28, 8, 0)


@pytest.fixture
def scheduling_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine, tables=TABLES)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine, tables=list(reversed(TABLES)))
        engine.dispose()


@pytest.fixture
def open_day(scheduling_db):
    """09:00-12:00 in 30-minute slots for the provider on SLOT_DATE."""
    from caresync.services.availability_service import generate_availability

    generate_availability(scheduling_db, PROVIDER_ID, SLOT_DATE, time(9, 0), time(12, 0), 30)
    return scheduling_db


@pytest.fixture
def no_database_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr('caresync.routes.availability_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr('caresync.routes.appointment_routes.ensure_database_ready', lambda: None)
