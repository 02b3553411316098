import os
from datetime import date, datetime, timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from backend.database import Base, utcnow  # noqa: E402
from backend.models.availability import AvailabilitySlot, AvailabilityTemplate  # noqa: E402
from backend.models.booking import (  # noqa: E402
    REFUND_COMPLETED,
    STATUS_CANCELED,
    STATUS_CONFIRMED,
    STATUS_PENDING,
    Booking,
)
from backend.models.user import ROLE_ACTOR, ROLE_READER, User  # noqa: E402
from backend.routes import booking_routes  # noqa: E402
from backend.routes.availability_routes import get_available_slots  # noqa: E402
from backend.routes.booking_routes import (  # noqa: E402
    CancelBookingRequest,
    CreateBookingRequest,
    RescheduleBookingRequest,
    cancel_my_booking,
    create_booking,
    mark_booking_complete,
    price_for_duration,
    reschedule_booking,
)
from backend.services import availability as availability_service  # noqa: E402
from backend.services.payments import PaymentError  # noqa: E402

# Sunday 2026-01-04 07:00 in New York.
NOW = datetime(2026, 1, 4, 12, 0)


@pytest.fixture
def booking_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    tables = [User.__table__, Booking.__table__, AvailabilityTemplate.__table__, AvailabilitySlot.__table__]
    Base.metadata.create_all(bind=engine, tables=tables)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine, tables=list(reversed(tables)))


@pytest.fixture
def people(booking_db):
    actor = User(email='actor@example.com', role=ROLE_ACTOR, timezone='America/New_York')
    reader = User(
        email='reader@example.com',
        role=ROLE_READER,
        timezone='America/New_York',
        is_active=True,
        stripe_account_id='acct_123',
        min_advance_hours=2,
        max_advance_booking_hours=168,
    )
    stranger = User(email='stranger@example.com', role=ROLE_ACTOR)
    booking_db.add_all([actor, reader, stranger])
    booking_db.commit()
    return actor, reader, stranger


@pytest.fixture
def vendors(monkeypatch: pytest.MonkeyPatch):
    calls = {'checkouts': [], 'refunds': [], 'emails': []}

    def fake_checkout(booking, reader, actor):
        calls['checkouts'].append(booking.id)
        return 'cs_test', 'https://checkout.stripe.test/cs_test'

    def fake_refund(payment_intent_id, amount_cents, metadata=None):
        calls['refunds'].append((payment_intent_id, amount_cents))
        return 're_test'

    monkeypatch.setattr('backend.routes.booking_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr(booking_routes.payments, 'create_booking_checkout', fake_checkout)
    monkeypatch.setattr(booking_routes.payments, 'create_refund', fake_refund)
    monkeypatch.setattr(booking_routes.video, 'create_meeting_room', lambda booking: 'https://meet.test/room')
    monkeypatch.setattr(booking_routes.calendar_sync, 'busy_lookup_for', lambda db: None)
    monkeypatch.setattr(booking_routes.calendar_sync, 'create_booking_event', lambda db, user, booking: None)
    monkeypatch.setattr(booking_routes.calendar_sync, 'delete_booking_event', lambda db, user, booking: False)
    monkeypatch.setattr(
        booking_routes.email,
        'send_cancellation_emails',
        lambda booking, message: calls['emails'].append(('cancel', booking.id)) or True,
    )
    monkeypatch.setattr(
        booking_routes.email,
        'send_reschedule_emails',
        lambda booking, previous_start: calls['emails'].append(('reschedule', booking.id)) or True,
    )
    return calls


@pytest.fixture
def frozen_now(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr('backend.routes.booking_routes.utcnow', lambda: NOW)


def _open_monday_morning(db, reader: User) -> None:
    availability_service.replace_templates(
        db,
        reader,
        [availability_service.TemplateWindow(1, 9 * 60, 11 * 60)],
        now=NOW,
    )
    db.commit()


def _confirmed_booking(db, actor: User, reader: User, start: datetime) -> Booking:
    booking = Booking(
        actor_id=actor.id,
        reader_id=reader.id,
        start_time=start,
        end_time=start + timedelta(minutes=30),
        duration_minutes=30,
        total_cents=2500,
        status=STATUS_CONFIRMED,
        stripe_payment_intent_id='pi_test',
        reminder_24h_sent=True,
    )
    db.add(booking)
    db.commit()
    return booking


def test_price_for_duration_uses_reader_rates() -> None:
    reader = User(rate_per_15_min=1000, rate_per_30_min=None, rate_per_60_min=5000)

    assert price_for_duration(reader, 15) == 1000
    assert price_for_duration(reader, 30) == 2500
    assert price_for_duration(reader, 60) == 5000


def test_create_booking_request_rejects_unsupported_duration() -> None:
    with pytest.raises(ValueError):
        CreateBookingRequest(reader_id=1, date=date(2026, 1, 5), start_minute=540, duration=45)


def test_create_booking_starts_checkout_for_open_slot(booking_db, people, vendors, frozen_now) -> None:
    actor, reader, _ = people
    _open_monday_morning(booking_db, reader)
    data = CreateBookingRequest(reader_id=reader.id, date=date(2026, 1, 5), start_minute=540, duration=30)

    response = create_booking(data, current_user=actor, db=booking_db)

    assert response.checkout_url == 'https://checkout.stripe.test/cs_test'
    assert response.booking.status == STATUS_PENDING
    assert response.booking.start_time == datetime(2026, 1, 5, 14, 0)
    assert response.booking.total_cents == 2500
    assert response.booking.meeting_url == 'https://meet.test/room'
    booking = booking_db.get(Booking, response.booking.id)
    assert booking.stripe_checkout_session_id == 'cs_test'


def test_create_booking_accepts_slot_listed_for_actor_in_another_timezone(
    booking_db, people, vendors, frozen_now, monkeypatch: pytest.MonkeyPatch
) -> None:
    actor, reader, _ = people
    monkeypatch.setattr('backend.routes.availability_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr('backend.routes.availability_routes.utcnow', lambda: NOW)
    availability_service.replace_templates(
        booking_db,
        reader,
        [availability_service.TemplateWindow(1, 20 * 60, 21 * 60)],
        now=NOW,
    )
    booking_db.commit()

    listing = get_available_slots(
        reader_id=reader.id,
        date=date(2026, 1, 5),
        duration=30,
        timezone='Asia/Tokyo',
        db=booking_db,
    )
    slot = listing.slots[0]
    data = CreateBookingRequest(
        reader_id=reader.id,
        date=slot.local_date,
        start_minute=slot.start_minute,
        duration=30,
        timezone='Asia/Tokyo',
    )

    response = create_booking(data, current_user=actor, db=booking_db)

    assert (slot.local_date, slot.start_minute) == (date(2026, 1, 6), 600)
    assert response.booking.start_time == slot.start_time == datetime(2026, 1, 6, 1, 0)


def test_create_booking_returns_existing_booking_for_repeat_request(booking_db, people, vendors, frozen_now) -> None:
    actor, reader, _ = people
    _open_monday_morning(booking_db, reader)
    data = CreateBookingRequest(reader_id=reader.id, date=date(2026, 1, 5), start_minute=540, duration=30)

    first = create_booking(data, current_user=actor, db=booking_db)
    second = create_booking(data, current_user=actor, db=booking_db)

    assert second.booking.id == first.booking.id
    assert second.message == 'Booking already exists.'
    assert vendors['checkouts'] == [first.booking.id]


def test_create_booking_rejects_time_outside_availability(booking_db, people, vendors, frozen_now) -> None:
    actor, reader, _ = people
    _open_monday_morning(booking_db, reader)
    data = CreateBookingRequest(reader_id=reader.id, date=date(2026, 1, 5), start_minute=13 * 60, duration=30)

    with pytest.raises(HTTPException) as exception_info:
        create_booking(data, current_user=actor, db=booking_db)

    assert exception_info.value.status_code == 409
    assert exception_info.value.detail == 'This time is no longer available.'


def test_create_booking_rejects_held_slot(booking_db, people, vendors, frozen_now) -> None:
    actor, reader, stranger = people
    _open_monday_morning(booking_db, reader)
    data = CreateBookingRequest(reader_id=reader.id, date=date(2026, 1, 5), start_minute=540, duration=30)
    create_booking(data, current_user=actor, db=booking_db)

    with pytest.raises(HTTPException) as exception_info:
        create_booking(data, current_user=stranger, db=booking_db)

    assert exception_info.value.status_code == 409


def test_create_booking_rejects_suspended_reader(booking_db, people, vendors, frozen_now) -> None:
    actor, reader, _ = people
    _open_monday_morning(booking_db, reader)
    reader.suspended_until = NOW + timedelta(days=3)
    booking_db.commit()
    data = CreateBookingRequest(reader_id=reader.id, date=date(2026, 1, 5), start_minute=540, duration=30)

    with pytest.raises(HTTPException) as exception_info:
        create_booking(data, current_user=actor, db=booking_db)

    assert exception_info.value.detail == 'Reader is not accepting bookings.'


def test_create_booking_surfaces_checkout_failure(booking_db, people, vendors, frozen_now, monkeypatch) -> None:
    actor, reader, _ = people
    _open_monday_morning(booking_db, reader)

    def failing_checkout(booking, reader, actor):
        raise PaymentError('card network down')

    monkeypatch.setattr(booking_routes.payments, 'create_booking_checkout', failing_checkout)
    data = CreateBookingRequest(reader_id=reader.id, date=date(2026, 1, 5), start_minute=540, duration=30)

    with pytest.raises(HTTPException) as exception_info:
        create_booking(data, current_user=actor, db=booking_db)

    assert exception_info.value.status_code == 502
    assert booking_db.query(Booking).count() == 0


def test_actor_cancel_refunds_minus_processing_fee(booking_db, people, vendors) -> None:
    actor, reader, _ = people
    booking = _confirmed_booking(booking_db, actor, reader, utcnow() + timedelta(hours=5))

    response = cancel_my_booking(booking.id, CancelBookingRequest(reason='Booked elsewhere'), actor, booking_db)

    assert response.booking.status == STATUS_CANCELED
    assert response.booking.cancel_reason == 'Booked elsewhere'
    assert response.refund.refund_cents == 2300
    assert response.refund.processing_fee_cents == 200
    assert response.booking.refund_status == REFUND_COMPLETED
    assert vendors['refunds'] == [('pi_test', 2300)]
    assert vendors['emails'] == [('cancel', booking.id)]


def test_cancel_rejects_non_participant(booking_db, people, vendors) -> None:
    actor, reader, stranger = people
    booking = _confirmed_booking(booking_db, actor, reader, utcnow() + timedelta(hours=5))

    with pytest.raises(HTTPException) as exception_info:
        cancel_my_booking(booking.id, None, stranger, booking_db)

    assert exception_info.value.status_code == 403


def test_cancel_reports_refund_failure_without_canceling(booking_db, people, vendors, monkeypatch) -> None:
    actor, reader, _ = people
    booking = _confirmed_booking(booking_db, actor, reader, utcnow() + timedelta(hours=30))

    def failing_refund(payment_intent_id, amount_cents, metadata=None):
        raise PaymentError('refund declined')

    monkeypatch.setattr(booking_routes.payments, 'create_refund', failing_refund)

    with pytest.raises(HTTPException) as exception_info:
        cancel_my_booking(booking.id, None, reader, booking_db)

    assert exception_info.value.status_code == 502
    booking_db.refresh(booking)
    assert booking.status == STATUS_CONFIRMED
    assert vendors['emails'] == []


def test_reschedule_moves_booking_and_resets_reminders(booking_db, people, vendors, frozen_now) -> None:
    actor, reader, _ = people
    booking = _confirmed_booking(booking_db, actor, reader, datetime(2026, 1, 6, 15, 0))
    data = RescheduleBookingRequest(date=date(2026, 1, 7), start_minute=16 * 60, timezone='UTC')

    response = reschedule_booking(booking.id, data, actor, booking_db)

    assert response.start_time == datetime(2026, 1, 7, 16, 0)
    assert response.end_time == datetime(2026, 1, 7, 16, 30)
    assert booking.reminder_24h_sent is False
    assert vendors['emails'] == [('reschedule', booking.id)]


def test_reschedule_rejects_conflicting_booking(booking_db, people, vendors, frozen_now) -> None:
    actor, reader, stranger = people
    booking = _confirmed_booking(booking_db, actor, reader, datetime(2026, 1, 6, 15, 0))
    _confirmed_booking(booking_db, stranger, reader, datetime(2026, 1, 7, 16, 0))
    data = RescheduleBookingRequest(date=date(2026, 1, 7), start_minute=16 * 60 + 15, timezone='UTC')

    with pytest.raises(HTTPException) as exception_info:
        reschedule_booking(booking.id, data, actor, booking_db)

    assert exception_info.value.status_code == 409


def test_reschedule_rejects_overlap_with_old_pending_booking(booking_db, people, vendors, frozen_now) -> None:
    actor, reader, stranger = people
    booking = _confirmed_booking(booking_db, actor, reader, datetime(2026, 1, 6, 15, 0))
    booking_db.add(Booking(
        actor_id=stranger.id,
        reader_id=reader.id,
        start_time=datetime(2026, 1, 7, 16, 0),
        end_time=datetime(2026, 1, 7, 16, 30),
        duration_minutes=30,
        total_cents=2500,
        status=STATUS_PENDING,
        created_at=NOW - timedelta(minutes=20),
    ))
    booking_db.commit()
    data = RescheduleBookingRequest(date=date(2026, 1, 7), start_minute=16 * 60, timezone='UTC')

    with pytest.raises(HTTPException) as exception_info:
        reschedule_booking(booking.id, data, actor, booking_db)

    assert exception_info.value.status_code == 409
    assert booking.start_time == datetime(2026, 1, 6, 15, 0)


def test_reschedule_requires_two_hours_notice(booking_db, people, vendors, frozen_now) -> None:
    actor, reader, _ = people
    booking = _confirmed_booking(booking_db, actor, reader, NOW + timedelta(minutes=90))
    data = RescheduleBookingRequest(date=date(2026, 1, 7), start_minute=16 * 60, timezone='UTC')

    with pytest.raises(HTTPException) as exception_info:
        reschedule_booking(booking.id, data, actor, booking_db)

    assert exception_info.value.status_code == 400


def test_actor_cannot_mark_session_complete(booking_db, people, vendors) -> None:
    actor, reader, _ = people
    booking = _confirmed_booking(booking_db, actor, reader, utcnow() - timedelta(hours=1))

    with pytest.raises(HTTPException) as exception_info:
        mark_booking_complete(booking.id, actor, booking_db)

    assert exception_info.value.status_code == 403


def test_reader_marks_started_session_complete(booking_db, people, vendors) -> None:
    actor, reader, _ = people
    booking = _confirmed_booking(booking_db, actor, reader, utcnow() - timedelta(hours=1))

    response = mark_booking_complete(booking.id, reader, booking_db)

    assert response.status == 'COMPLETED'
    assert reader.completed_sessions == 1
