import os
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from backend.database import Base  # noqa: E402
from backend.models.booking import (  # noqa: E402
    STATUS_COMPLETED,
    STATUS_CONFIRMED,
    STATUS_EXPIRED,
    STATUS_PENDING,
    Booking,
)
from backend.models.user import ROLE_ACTOR, ROLE_READER, User  # noqa: E402
from backend.services import jobs  # noqa: E402

NOW = datetime(2026, 3, 2, 12, 0)


@pytest.fixture
def jobs_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    tables = [User.__table__, Booking.__table__]
    Base.metadata.create_all(bind=engine, tables=tables)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine, tables=list(reversed(tables)))


@pytest.fixture
def make_booking(jobs_db):
    actor = User(email='actor@example.com', role=ROLE_ACTOR)
    reader = User(email='reader@example.com', role=ROLE_READER)
    jobs_db.add_all([actor, reader])
    jobs_db.commit()

    def _make(start: datetime, status: str = STATUS_CONFIRMED, **fields) -> Booking:
        booking = Booking(
            actor_id=actor.id,
            reader_id=reader.id,
            start_time=start,
            end_time=start + timedelta(minutes=30),
            duration_minutes=30,
            total_cents=2500,
            status=status,
            **fields,
        )
        jobs_db.add(booking)
        jobs_db.commit()
        return booking

    return _make


class RecordingSender:
    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.sent = []

    def __call__(self, booking: Booking, hours_before: int) -> bool:
        self.sent.append((booking.id, hours_before))
        return self.delivered


def test_reminder_window_is_thirty_minutes_either_side() -> None:
    assert jobs.reminder_window(NOW, 24) == (
        datetime(2026, 3, 3, 11, 30),
        datetime(2026, 3, 3, 12, 30),
    )


def test_send_reminders_only_picks_bookings_inside_window(jobs_db, make_booking) -> None:
    day_ahead = make_booking(NOW + timedelta(hours=24, minutes=10))
    too_late = make_booking(NOW + timedelta(hours=24, minutes=45))
    already_sent = make_booking(NOW + timedelta(hours=24), reminder_24h_sent=True)
    unpaid = make_booking(NOW + timedelta(hours=24), status=STATUS_PENDING)
    hour_ahead = make_booking(NOW + timedelta(minutes=40))
    sender = RecordingSender()

    results = jobs.send_reminders(jobs_db, now=NOW, send=sender)

    assert results == {
        'twenty_four_hour': {'sent': 1, 'failed': 0},
        'one_hour': {'sent': 1, 'failed': 0},
    }
    assert sorted(sender.sent) == sorted([(day_ahead.id, 24), (hour_ahead.id, 1)])
    assert day_ahead.reminder_24h_sent is True
    assert hour_ahead.reminder_1h_sent is True
    assert too_late.reminder_24h_sent is False
    assert unpaid.reminder_24h_sent is False
    assert already_sent.id not in [booking_id for booking_id, _ in sender.sent]


def test_send_reminders_leaves_flag_unset_when_delivery_fails(jobs_db, make_booking) -> None:
    booking = make_booking(NOW + timedelta(hours=24))

    results = jobs.send_reminders(jobs_db, now=NOW, send=RecordingSender(delivered=False))

    assert results['twenty_four_hour'] == {'sent': 0, 'failed': 1}
    jobs_db.refresh(booking)
    assert booking.reminder_24h_sent is False


def test_expire_pending_only_touches_stale_checkouts(jobs_db, make_booking) -> None:
    stale = make_booking(NOW + timedelta(days=2), status=STATUS_PENDING, created_at=NOW - timedelta(minutes=20))
    fresh = make_booking(NOW + timedelta(days=2), status=STATUS_PENDING, created_at=NOW - timedelta(minutes=5))
    paid = make_booking(NOW + timedelta(days=2), created_at=NOW - timedelta(hours=1))

    assert jobs.stale_pending_query(jobs_db, NOW).count() == 1
    assert jobs.expire_pending(jobs_db, now=NOW) == 1

    assert stale.status == STATUS_EXPIRED
    assert fresh.status == STATUS_PENDING
    assert paid.status == STATUS_CONFIRMED


def test_complete_sessions_closes_finished_bookings(jobs_db, make_booking) -> None:
    finished = make_booking(NOW - timedelta(hours=2))
    upcoming = make_booking(NOW + timedelta(hours=2))

    results = jobs.complete_sessions(jobs_db, now=NOW)

    assert results == {'completed': 1, 'failed': 0}
    assert finished.status == STATUS_COMPLETED
    assert finished.reader.completed_sessions == 1
    assert upcoming.status == STATUS_CONFIRMED
