import pytest
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import sessionmaker

from caresync.database import atomic, ensure_appointment_schema, ensure_availability_schema


@pytest.fixture
def legacy_engine():
    engine = create_engine('sqlite:///:memory:')
    with engine.begin() as connection:
        connection.execute(text(
            'CREATE TABLE availability_slots ('
            'id INTEGER PRIMARY KEY, provider_id INTEGER, date DATE, time TIME, is_booked BOOLEAN)'
        ))
        connection.execute(text(
            'CREATE TABLE appointments ('
            'id INTEGER PRIMARY KEY, provider_id INTEGER, patient_id INTEGER, date DATE, time TIME, status VARCHAR)'
        ))
    yield engine
    engine.dispose()


def test_ensure_availability_schema_adds_missing_columns(legacy_engine) -> None:
    ensure_availability_schema(bind=legacy_engine)

    inspector = inspect(legacy_engine)
    columns = {column['name'] for column in inspector.get_columns('availability_slots')}
    indexes = {index['name'] for index in inspector.get_indexes('availability_slots')}
    assert {'duration_minutes', 'is_available', 'appointment_id'} <= columns
    assert 'idx_availability_provider_date' in indexes


def test_ensure_appointment_schema_is_repeatable(legacy_engine) -> None:
    ensure_appointment_schema(bind=legacy_engine)
    ensure_appointment_schema(bind=legacy_engine)

    columns = {column['name'] for column in inspect(legacy_engine).get_columns('appointments')}
    assert {'cancellation_reason', 'cancelled_at', 'cancelled_by', 'payment_status', 'rescheduled_from_id'} <= columns


def test_atomic_rolls_back_on_error(legacy_engine) -> None:
    db = sessionmaker(bind=legacy_engine)()
    try:
        with pytest.raises(RuntimeError):
            with atomic(db):
                db.execute(text('INSERT INTO appointments (provider_id, patient_id, status) VALUES (1, 2, :status)'),
                           {'status': 'scheduled'})
                raise RuntimeError('boom')

        assert db.execute(text('SELECT COUNT(*) FROM appointments')).scalar() == 0
    finally:
        db.close()
