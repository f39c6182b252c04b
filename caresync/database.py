from contextlib import contextmanager
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from caresync.core import config


DATABASE_URL = config.DATABASE_URL

# SQLite connections are handed between FastAPI's worker threads.
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_availability_schema_checked = False
_appointment_schema_checked = False


def ensure_availability_schema(bind: Engine | None = None) -> None:
    global _availability_schema_checked

    if _availability_schema_checked and bind is None:
        return

    target = bind or engine

    with _schema_lock:
        if _availability_schema_checked and bind is None:
            return

        inspector = inspect(target)

        if 'availability_slots' not in inspector.get_table_names():
            if bind is None:
                _availability_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('availability_slots')}
        migration_steps = [
            ('duration_minutes', 'ALTER TABLE availability_slots ADD COLUMN duration_minutes INTEGER'),
            ('is_available', 'ALTER TABLE availability_slots ADD COLUMN is_available BOOLEAN DEFAULT TRUE'),
            ('appointment_id', 'ALTER TABLE availability_slots ADD COLUMN appointment_id INTEGER'),
        ]

        with target.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_availability_provider_date ON availability_slots(provider_id, date)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_availability_appointment ON availability_slots(appointment_id)')
            )

        if bind is None:
            _availability_schema_checked = True


def ensure_appointment_schema(bind: Engine | None = None) -> None:
    global _appointment_schema_checked

    if _appointment_schema_checked and bind is None:
        return

    target = bind or engine

    with _schema_lock:
        if _appointment_schema_checked and bind is None:
            return

        inspector = inspect(target)

        if 'appointments' not in inspector.get_table_names():
            if bind is None:
                _appointment_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('appointments')}
        migration_steps = [
            ('cancellation_reason', 'ALTER TABLE appointments ADD COLUMN cancellation_reason VARCHAR'),
            ('cancelled_at', 'ALTER TABLE appointments ADD COLUMN cancelled_at TIMESTAMP'),
            ('cancelled_by', 'ALTER TABLE appointments ADD COLUMN cancelled_by INTEGER'),
            ('payment_status', "ALTER TABLE appointments ADD COLUMN payment_status VARCHAR DEFAULT 'unpaid'"),
            ('payment_reference', 'ALTER TABLE appointments ADD COLUMN payment_reference VARCHAR'),
            ('rescheduled_from_id', 'ALTER TABLE appointments ADD COLUMN rescheduled_from_id INTEGER'),
        ]

        with target.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_provider_date ON appointments(provider_id, date)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_appointments_patient_date ON appointments(patient_id, date)')
            )

        if bind is None:
            _appointment_schema_checked = True


@contextmanager
def atomic(db: Session):
    """Commit everything done inside the block, or roll all of it back."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
