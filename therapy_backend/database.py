from datetime import datetime, timezone
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from therapy_backend.core import config


connect_args = {'check_same_thread': False} if config.DATABASE_URL.startswith('sqlite') else {}

engine = create_engine(config.DATABASE_URL, echo=config.DATABASE_ECHO, connect_args=connect_args)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_schema_checked: set[str] = set()


def _ensure_table_schema(table_name: str, migration_steps: list[tuple[str, str]], index_statements: list[str]) -> None:
    if table_name in _schema_checked:
        return

    with _schema_lock:
        if table_name in _schema_checked:
            return

        inspector = inspect(engine)

        if table_name not in inspector.get_table_names():
            _schema_checked.add(table_name)
            return

        existing_columns = {column['name'] for column in inspector.get_columns(table_name)}

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            for statement in index_statements:
                connection.execute(text(statement))

        _schema_checked.add(table_name)


def ensure_account_schema() -> None:
    _ensure_table_schema(
        'users',
        [
            ('reset_token', 'ALTER TABLE users ADD COLUMN reset_token VARCHAR'),
            ('reset_token_expiry', 'ALTER TABLE users ADD COLUMN reset_token_expiry TIMESTAMP'),
            ('is_approved', 'ALTER TABLE users ADD COLUMN is_approved BOOLEAN DEFAULT FALSE'),
            ('approved_by_id', 'ALTER TABLE users ADD COLUMN approved_by_id INTEGER'),
            ('approval_date', 'ALTER TABLE users ADD COLUMN approval_date TIMESTAMP'),
        ],
        [
            'CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)',
            'CREATE INDEX IF NOT EXISTS idx_users_verify_token ON users(verify_token)',
            'CREATE INDEX IF NOT EXISTS idx_users_reset_token ON users(reset_token)',
        ],
    )


def ensure_availability_schema() -> None:
    _ensure_table_schema(
        'availability',
        [
            ('is_recurring', 'ALTER TABLE availability ADD COLUMN is_recurring BOOLEAN DEFAULT FALSE'),
            ('day_of_week', 'ALTER TABLE availability ADD COLUMN day_of_week INTEGER'),
        ],
        [
            'CREATE INDEX IF NOT EXISTS idx_availability_therapist_date ON availability(therapist_id, date)',
            'CREATE INDEX IF NOT EXISTS idx_availability_therapist_day ON availability(therapist_id, day_of_week)',
        ],
    )


def ensure_appointment_schema() -> None:
    _ensure_table_schema(
        'appointments',
        [
            ('parent_id', 'ALTER TABLE appointments ADD COLUMN parent_id INTEGER'),
            ('appointment_type', "ALTER TABLE appointments ADD COLUMN appointment_type VARCHAR DEFAULT 'session'"),
            ('notes', 'ALTER TABLE appointments ADD COLUMN notes VARCHAR'),
            ('updated_at', 'ALTER TABLE appointments ADD COLUMN updated_at TIMESTAMP'),
        ],
        [
            'CREATE INDEX IF NOT EXISTS idx_appointments_therapist_date ON appointments(therapist_id, date)',
            'CREATE INDEX IF NOT EXISTS idx_appointments_student_date ON appointments(student_id, date)',
            'CREATE INDEX IF NOT EXISTS idx_appointments_status ON appointments(status)',
        ],
    )


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how timestamp columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
