"""Stripe integration: booking checkout, refunds, reader subscriptions and Connect."""

import json
import logging

import stripe
from sqlalchemy.orm import Session

from backend.core import config
from backend.database import utcnow
from backend.models.booking import STATUS_CANCELED, STATUS_CONFIRMED, Booking
from backend.models.user import User
from backend.services.availability import reserve_slots

logger = logging.getLogger(__name__)

READER_SHARE_PERCENT = 80


class PaymentError(Exception):
    """A Stripe call failed; nothing should be persisted for the operation."""


def _client() -> None:
    stripe.api_key = config.STRIPE_SECRET_KEY


def split_revenue(total_cents: int) -> tuple[int, int]:
    """Return (reader_earnings_cents, platform_fee_cents); the reader share is floored."""
    reader_cents = total_cents * READER_SHARE_PERCENT // 100
    return reader_cents, total_cents - reader_cents


def create_booking_checkout(booking: Booking, reader: User, actor: User) -> tuple[str, str]:
    _client()
    start_label = booking.start_time.strftime('%Y-%m-%d %H:%M UTC')
    try:
        session = stripe.checkout.Session.create(
            payment_method_types=['card'],
            mode='payment',
            line_items=[{
                'price_data': {
                    'currency': config.STRIPE_CURRENCY,
                    'product_data': {
                        'name': f'{booking.duration_minutes}-minute session with {reader.public_name}',
                        'description': start_label,
                    },
                    'unit_amount': booking.total_cents,
                },
                'quantity': 1,
            }],
            success_url=f'{config.PUBLIC_URL}/checkout/success?bookingId={booking.id}',
            cancel_url=f'{config.PUBLIC_URL}/reader/{reader.id}',
            customer_email=actor.email,
            metadata={'bookingId': str(booking.id), 'readerId': str(reader.id)},
        )
    except stripe.StripeError as exc:
        logger.error('Stripe checkout creation failed for booking %s: %s', booking.id, exc)
        raise PaymentError(str(exc)) from exc

    logger.info('Stripe checkout %s created for booking %s', session.id, booking.id)
    return session.id, session.url


def create_refund(payment_intent_id: str, amount_cents: int, metadata: dict | None = None) -> str:
    _client()
    try:
        refund = stripe.Refund.create(
            payment_intent=payment_intent_id,
            amount=amount_cents,
            reason='requested_by_customer',
            metadata=metadata or {},
        )
    except stripe.StripeError as exc:
        logger.error('Stripe refund failed for %s: %s', payment_intent_id, exc)
        raise PaymentError(f'Refund failed: {exc}') from exc

    logger.info('Stripe refund %s issued for %s cents', refund.id, amount_cents)
    return refund.id


def verify_webhook_event(payload: bytes, signature: str) -> dict:
    """Check the Stripe signature and return the decoded event.

    Raises ``ValueError`` for a malformed payload and
    ``stripe.SignatureVerificationError`` for a bad signature.
    """
    stripe.Webhook.construct_event(payload, signature, config.STRIPE_WEBHOOK_SECRET)
    return json.loads(payload)


def create_subscription_checkout(user: User) -> str:
    _client()
    if not config.STRIPE_SUBSCRIPTION_PRICE_ID:
        raise PaymentError('Reader subscriptions are not configured.')

    params = {
        'mode': 'subscription',
        'line_items': [{'price': config.STRIPE_SUBSCRIPTION_PRICE_ID, 'quantity': 1}],
        'success_url': f'{config.PUBLIC_URL}/onboarding/complete?session_id={{CHECKOUT_SESSION_ID}}',
        'cancel_url': f'{config.PUBLIC_URL}/onboarding/subscribe',
        'metadata': {'type': 'reader_subscription', 'readerId': str(user.id)},
        'subscription_data': {'metadata': {'readerId': str(user.id)}},
    }
    if user.stripe_customer_id:
        params['customer'] = user.stripe_customer_id
    else:
        params['customer_email'] = user.email

    try:
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as exc:
        raise PaymentError(str(exc)) from exc
    return session.url


def cancel_subscription(subscription_id: str) -> str:
    """Schedule cancellation at period end; returns the resulting Stripe status."""
    _client()
    try:
        subscription = stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
    except stripe.StripeError as exc:
        raise PaymentError(str(exc)) from exc
    return 'canceling' if subscription.cancel_at_period_end else subscription.status


def create_connect_onboarding_link(user: User) -> tuple[str, str]:
    """Return (account_id, onboarding_url), creating the Express account on first use."""
    _client()
    try:
        account_id = user.stripe_account_id
        if not account_id:
            account = stripe.Account.create(
                type='express',
                email=user.email,
                capabilities={'transfers': {'requested': True}},
                metadata={'userId': str(user.id)},
            )
            account_id = account.id

        link = stripe.AccountLink.create(
            account=account_id,
            refresh_url=f'{config.PUBLIC_URL}/reader/stripe?refresh=1',
            return_url=f'{config.PUBLIC_URL}/reader/stripe?done=1',
            type='account_onboarding',
        )
    except stripe.StripeError as exc:
        raise PaymentError(str(exc)) from exc

    return account_id, link.url


def get_connect_account_status(account_id: str) -> dict:
    _client()
    try:
        account = stripe.Account.retrieve(account_id)
    except stripe.StripeError as exc:
        raise PaymentError(str(exc)) from exc

    return {
        'account_id': account.id,
        'charges_enabled': bool(account.charges_enabled),
        'payouts_enabled': bool(account.payouts_enabled),
        'details_submitted': bool(account.details_submitted),
    }


def confirm_booking_payment(
    db: Session,
    booking: Booking,
    payment_intent_id: str | None,
    checkout_session_id: str | None = None,
) -> bool:
    """Mark a paid booking confirmed and reserve its slots.

    Returns False when there is nothing to do: the booking is already confirmed
    or was canceled before payment landed. The caller commits.
    """
    if booking.status == STATUS_CONFIRMED:
        logger.info('Booking %s already confirmed, ignoring duplicate payment event', booking.id)
        return False
    if booking.status == STATUS_CANCELED:
        logger.warning('Payment received for canceled booking %s', booking.id)
        return False

    reader_cents, platform_cents = split_revenue(booking.total_cents)
    booking.status = STATUS_CONFIRMED
    booking.reader_earnings_cents = reader_cents
    booking.platform_fee_cents = platform_cents
    booking.stripe_payment_intent_id = payment_intent_id
    if checkout_session_id:
        booking.stripe_checkout_session_id = checkout_session_id
    booking.updated_at = utcnow()
    db.flush()
    reserve_slots(db, booking)
    logger.info('Booking %s confirmed (reader %s cents, platform %s cents)', booking.id, reader_cents, platform_cents)
    return True
