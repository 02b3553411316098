import asyncio
import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from backend.database import Base  # noqa: E402
from backend.models.availability import AvailabilitySlot  # noqa: E402
from backend.models.booking import STATUS_CANCELED, STATUS_CONFIRMED, STATUS_PENDING, Booking  # noqa: E402
from backend.models.user import ROLE_ACTOR, ROLE_READER, User  # noqa: E402
from backend.routes.payment_routes import (  # noqa: E402
    handle_checkout_completed,
    handle_invoice,
    handle_subscription_change,
    stripe_webhook,
)
from backend.services.payments import split_revenue  # noqa: E402

START = datetime(2026, 1, 5, 14, 0)
WEBHOOK_SECRET = 'whsec_test'


class SignedRequest:
    def __init__(self, payload: bytes) -> None:
        self.payload = payload

    async def body(self) -> bytes:
        return self.payload


def _stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f'{timestamp}.{payload.decode()}'.encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f't={timestamp},v1={digest}'


@pytest.fixture
def webhook_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr('backend.services.payments.config.STRIPE_WEBHOOK_SECRET', WEBHOOK_SECRET)
    monkeypatch.setattr('backend.routes.payment_routes.ensure_database_ready', lambda: None)
    confirmations = []
    monkeypatch.setattr(
        'backend.routes.payment_routes.email.send_booking_confirmation',
        lambda booking: confirmations.append(booking.id) or True,
    )
    monkeypatch.setattr(
        'backend.routes.payment_routes.calendar_sync.create_booking_event',
        lambda db, user, booking: None,
    )
    return confirmations


@pytest.fixture
def payment_db():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    tables = [User.__table__, Booking.__table__, AvailabilitySlot.__table__]
    Base.metadata.create_all(bind=engine, tables=tables)

    db = testing_session_local()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine, tables=list(reversed(tables)))


@pytest.fixture
def pending_booking(payment_db):
    actor = User(email='actor@example.com', role=ROLE_ACTOR)
    reader = User(email='reader@example.com', role=ROLE_READER)
    payment_db.add_all([actor, reader])
    payment_db.commit()

    booking = Booking(
        actor_id=actor.id,
        reader_id=reader.id,
        start_time=START,
        end_time=START + timedelta(minutes=60),
        duration_minutes=60,
        total_cents=6099,
        status=STATUS_PENDING,
    )
    payment_db.add(booking)
    payment_db.add_all([
        AvailabilitySlot(reader_id=reader.id, start_time=START, end_time=START + timedelta(minutes=30)),
        AvailabilitySlot(
            reader_id=reader.id,
            start_time=START + timedelta(minutes=30),
            end_time=START + timedelta(minutes=60),
        ),
        AvailabilitySlot(
            reader_id=reader.id,
            start_time=START + timedelta(minutes=60),
            end_time=START + timedelta(minutes=90),
        ),
    ])
    payment_db.commit()
    return booking


def _checkout_session(booking: Booking) -> dict:
    return {
        'id': 'cs_test',
        'payment_intent': 'pi_test',
        'metadata': {'bookingId': str(booking.id), 'readerId': str(booking.reader_id)},
    }


def test_split_revenue_floors_reader_share() -> None:
    assert split_revenue(6099) == (4879, 1220)
    assert split_revenue(2500) == (2000, 500)


def test_checkout_completed_confirms_booking_and_reserves_slots(payment_db, pending_booking) -> None:
    confirmed = handle_checkout_completed(payment_db, _checkout_session(pending_booking))
    payment_db.commit()

    assert confirmed is pending_booking
    assert pending_booking.status == STATUS_CONFIRMED
    assert pending_booking.stripe_payment_intent_id == 'pi_test'
    assert pending_booking.reader_earnings_cents + pending_booking.platform_fee_cents == 6099
    booked = payment_db.query(AvailabilitySlot).filter(AvailabilitySlot.is_booked.is_(True)).all()
    assert [slot.start_time for slot in booked] == [START, START + timedelta(minutes=30)]
    assert all(slot.booking_id == pending_booking.id for slot in booked)


def test_duplicate_checkout_event_is_ignored(payment_db, pending_booking) -> None:
    handle_checkout_completed(payment_db, _checkout_session(pending_booking))
    payment_db.commit()

    assert handle_checkout_completed(payment_db, _checkout_session(pending_booking)) is None


def test_payment_for_canceled_booking_does_not_confirm(payment_db, pending_booking) -> None:
    pending_booking.status = STATUS_CANCELED
    payment_db.commit()

    assert handle_checkout_completed(payment_db, _checkout_session(pending_booking)) is None
    assert pending_booking.status == STATUS_CANCELED


def test_checkout_without_booking_metadata_is_ignored(payment_db, pending_booking) -> None:
    assert handle_checkout_completed(payment_db, {'id': 'cs_other', 'metadata': {}}) is None
    assert pending_booking.status == STATUS_PENDING


def test_subscription_checkout_promotes_actor_to_reader(payment_db) -> None:
    user = User(email='new-reader@example.com', role=ROLE_ACTOR)
    payment_db.add(user)
    payment_db.commit()

    handle_checkout_completed(payment_db, {
        'id': 'cs_sub',
        'subscription': 'sub_123',
        'customer': 'cus_123',
        'metadata': {'type': 'reader_subscription', 'readerId': str(user.id)},
    })
    payment_db.commit()

    assert user.role == ROLE_READER
    assert user.subscription_id == 'sub_123'
    assert user.stripe_customer_id == 'cus_123'
    assert user.subscription_status == 'active'


def test_deleted_subscription_demotes_reader(payment_db) -> None:
    user = User(
        email='reader@example.com',
        role=ROLE_READER,
        subscription_id='sub_123',
        subscription_status='active',
    )
    payment_db.add(user)
    payment_db.commit()

    subscription = {'id': 'sub_123', 'customer': 'cus_123', 'status': 'canceled'}

    handle_subscription_change(payment_db, subscription, deleted=True)
    payment_db.commit()

    assert user.role == ROLE_ACTOR
    assert user.subscription_status == 'canceled'


def test_failed_invoice_marks_subscription_past_due(payment_db) -> None:
    user = User(
        email='reader@example.com',
        role=ROLE_READER,
        stripe_customer_id='cus_123',
        subscription_status='active',
    )
    payment_db.add(user)
    payment_db.commit()

    handle_invoice(payment_db, {'customer': 'cus_123', 'subscription': None}, paid=False)
    payment_db.commit()

    assert user.subscription_status == 'past_due'


def test_webhook_without_signature_is_rejected(payment_db, webhook_env) -> None:
    with pytest.raises(HTTPException) as exception_info:
        asyncio.run(stripe_webhook(SignedRequest(b'{}'), stripe_signature=None, db=payment_db))

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Missing Stripe signature.'


def test_webhook_with_forged_signature_is_rejected(payment_db, pending_booking, webhook_env) -> None:
    payload = json.dumps({
        'id': 'evt_forged',
        'object': 'event',
        'type': 'checkout.session.completed',
        'data': {'object': _checkout_session(pending_booking)},
    }).encode()

    with pytest.raises(HTTPException) as exception_info:
        asyncio.run(stripe_webhook(
            SignedRequest(payload),
            stripe_signature=_stripe_signature(payload, secret='whsec_other'),
            db=payment_db,
        ))

    assert exception_info.value.status_code == 400
    assert exception_info.value.detail == 'Invalid webhook signature.'
    assert pending_booking.status == STATUS_PENDING
    assert webhook_env == []


def test_signed_checkout_webhook_confirms_booking(payment_db, pending_booking, webhook_env) -> None:
    payload = json.dumps({
        'id': 'evt_paid',
        'object': 'event',
        'type': 'checkout.session.completed',
        'data': {'object': _checkout_session(pending_booking)},
    }).encode()

    response = asyncio.run(stripe_webhook(
        SignedRequest(payload),
        stripe_signature=_stripe_signature(payload),
        db=payment_db,
    ))

    assert response == {'received': True}
    assert pending_booking.status == STATUS_CONFIRMED
    assert webhook_env == [pending_booking.id]
