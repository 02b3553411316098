from datetime import datetime, timezone
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

from backend.core import config


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 1800}


engine = create_engine(config.DATABASE_URL, **_engine_kwargs(config.DATABASE_URL))

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_user_schema_checked = False
_booking_schema_checked = False


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_user_schema() -> None:
    global _user_schema_checked

    if _user_schema_checked:
        return

    with _schema_lock:
        if _user_schema_checked:
            return

        inspector = inspect(engine)

        if 'users' not in inspector.get_table_names():
            _user_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('users')}
        migration_steps = [
            ('late_arrivals', 'ALTER TABLE users ADD COLUMN late_arrivals INTEGER DEFAULT 0'),
            ('reliability_score', 'ALTER TABLE users ADD COLUMN reliability_score FLOAT'),
            ('suspended_until', 'ALTER TABLE users ADD COLUMN suspended_until TIMESTAMP'),
            ('suspension_reason', 'ALTER TABLE users ADD COLUMN suspension_reason VARCHAR'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))

        _user_schema_checked = True


def ensure_booking_schema() -> None:
    global _booking_schema_checked

    if _booking_schema_checked:
        return

    with _schema_lock:
        if _booking_schema_checked:
            return

        inspector = inspect(engine)

        if 'bookings' not in inspector.get_table_names():
            _booking_schema_checked = True
            return

        existing_columns = {column['name'] for column in inspector.get_columns('bookings')}
        migration_steps = [
            ('processing_fee_cents', 'ALTER TABLE bookings ADD COLUMN processing_fee_cents INTEGER DEFAULT 0'),
            ('platform_credit_cents', 'ALTER TABLE bookings ADD COLUMN platform_credit_cents INTEGER DEFAULT 0'),
            ('microsoft_event_id', 'ALTER TABLE bookings ADD COLUMN microsoft_event_id VARCHAR'),
        ]

        with engine.begin() as connection:
            for column_name, statement in migration_steps:
                if column_name not in existing_columns:
                    connection.execute(text(statement))
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_bookings_reader_start ON bookings(reader_id, start_time)')
            )
            connection.execute(
                text('CREATE INDEX IF NOT EXISTS idx_bookings_status_start ON bookings(status, start_time)')
            )
            connection.execute(
                text(
                    'CREATE INDEX IF NOT EXISTS idx_availability_slots_reader_start '
                    'ON availability_slots(reader_id, start_time)'
                )
            )

        _booking_schema_checked = True
