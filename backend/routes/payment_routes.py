import logging

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.auth.dependencies import get_current_user, require_reader
from backend.database import get_db
from backend.models.booking import Booking
from backend.models.user import ROLE_ACTOR, ROLE_READER, User
from backend.routes.common import database_unavailable, ensure_database_ready
from backend.services import calendar_sync, email, payments

router = APIRouter(tags=['payments'])
webhook_router = APIRouter(tags=['webhooks'])

logger = logging.getLogger(__name__)

ACTIVE_SUBSCRIPTION_STATUSES = ('active', 'trialing')


class CheckoutUrlResponse(BaseModel):
    checkout_url: str


class SubscriptionStatusResponse(BaseModel):
    subscription_status: str | None = None


class ConnectOnboardingResponse(BaseModel):
    account_id: str
    url: str


class ConnectStatusResponse(BaseModel):
    account_id: str | None = None
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False


@router.post('/subscription/checkout', response_model=CheckoutUrlResponse)
def start_subscription_checkout(current_user: User = Depends(get_current_user)):
    if current_user.subscription_status in ACTIVE_SUBSCRIPTION_STATUSES:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail='Subscription is already active.')

    try:
        url = payments.create_subscription_checkout(current_user)
    except payments.PaymentError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    return CheckoutUrlResponse(checkout_url=url)


@router.post('/subscription/cancel', response_model=SubscriptionStatusResponse)
def cancel_my_subscription(current_user: User = Depends(require_reader), db: Session = Depends(get_db)):
    if not current_user.subscription_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='No active subscription.')

    try:
        subscription_status = payments.cancel_subscription(current_user.subscription_id)
    except payments.PaymentError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    ensure_database_ready()
    try:
        current_user.subscription_status = subscription_status
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
    return SubscriptionStatusResponse(subscription_status=subscription_status)


@router.post('/connect/onboard', response_model=ConnectOnboardingResponse)
def start_connect_onboarding(current_user: User = Depends(require_reader), db: Session = Depends(get_db)):
    try:
        account_id, url = payments.create_connect_onboarding_link(current_user)
    except payments.PaymentError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc

    ensure_database_ready()
    try:
        if current_user.stripe_account_id != account_id:
            current_user.stripe_account_id = account_id
            db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc
    return ConnectOnboardingResponse(account_id=account_id, url=url)


@router.get('/connect/status', response_model=ConnectStatusResponse)
def get_connect_status(current_user: User = Depends(require_reader)):
    if not current_user.stripe_account_id:
        return ConnectStatusResponse()

    try:
        return ConnectStatusResponse(**payments.get_connect_account_status(current_user.stripe_account_id))
    except payments.PaymentError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc


def _find_subscriber(db: Session, subscription_id: str | None, customer_id: str | None) -> User | None:
    if subscription_id:
        user = db.query(User).filter(User.subscription_id == subscription_id).first()
        if user:
            return user
    if customer_id:
        return db.query(User).filter(User.stripe_customer_id == customer_id).first()
    return None


def _invoice_subscription_id(invoice: dict) -> str | None:
    if invoice.get('subscription'):
        return invoice['subscription']
    details = (invoice.get('parent') or {}).get('subscription_details') or {}
    return details.get('subscription')


def handle_checkout_completed(db: Session, session: dict) -> Booking | None:
    """Confirm a booking or activate a reader subscription. Returns a newly confirmed booking."""
    metadata = session.get('metadata') or {}

    if metadata.get('type') == 'reader_subscription':
        reader_id = metadata.get('readerId')
        user = db.get(User, int(reader_id)) if reader_id and str(reader_id).isdigit() else None
        if user is None:
            logger.warning('Subscription checkout %s has no matching user', session.get('id'))
            return None
        user.subscription_id = session.get('subscription')
        user.stripe_customer_id = session.get('customer') or user.stripe_customer_id
        user.subscription_status = 'active'
        if user.role == ROLE_ACTOR:
            user.role = ROLE_READER
        logger.info('Reader subscription activated for user %s', user.id)
        return None

    booking_id = metadata.get('bookingId')
    booking = db.get(Booking, int(booking_id)) if booking_id and str(booking_id).isdigit() else None
    if booking is None:
        logger.warning('Checkout session %s has no matching booking', session.get('id'))
        return None

    confirmed = payments.confirm_booking_payment(db, booking, session.get('payment_intent'), session.get('id'))
    return booking if confirmed else None


def handle_subscription_change(db: Session, subscription: dict, deleted: bool) -> None:
    user = _find_subscriber(db, subscription.get('id'), subscription.get('customer'))
    if user is None:
        logger.warning('Subscription %s has no matching user', subscription.get('id'))
        return

    subscription_status = 'canceled' if deleted else subscription.get('status')
    user.subscription_id = subscription.get('id')
    user.subscription_status = subscription_status
    if subscription_status in ACTIVE_SUBSCRIPTION_STATUSES and user.role == ROLE_ACTOR:
        user.role = ROLE_READER
    elif deleted and user.role == ROLE_READER:
        user.role = ROLE_ACTOR
    logger.info('Subscription %s for user %s is now %s', subscription.get('id'), user.id, subscription_status)


def handle_invoice(db: Session, invoice: dict, paid: bool) -> None:
    user = _find_subscriber(db, _invoice_subscription_id(invoice), invoice.get('customer'))
    if user is None:
        return
    user.subscription_status = 'active' if paid else 'past_due'
    if not paid:
        logger.warning('Subscription payment failed for user %s', user.id)


@webhook_router.post('/stripe')
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias='stripe-signature'),
    db: Session = Depends(get_db),
):
    payload = await request.body()
    if not stripe_signature:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Missing Stripe signature.')

    try:
        event = payments.verify_webhook_event(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError) as exc:
        logger.warning('Rejected Stripe webhook: %s', exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail='Invalid webhook signature.') from exc

    event_type = event.get('type')
    data_object = (event.get('data') or {}).get('object') or {}
    ensure_database_ready()

    confirmed_booking = None
    try:
        if event_type == 'checkout.session.completed':
            confirmed_booking = handle_checkout_completed(db, data_object)
        elif event_type in ('customer.subscription.updated', 'customer.subscription.deleted'):
            handle_subscription_change(db, data_object, deleted=event_type.endswith('deleted'))
        elif event_type in ('invoice.payment_failed', 'invoice.payment_succeeded'):
            handle_invoice(db, data_object, paid=event_type.endswith('succeeded'))
        else:
            logger.debug('Ignoring Stripe event %s', event_type)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise database_unavailable() from exc

    if confirmed_booking is not None:
        email.send_booking_confirmation(confirmed_booking)
        try:
            calendar_sync.create_booking_event(db, confirmed_booking.reader, confirmed_booking)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception('Could not store calendar event for booking %s', confirmed_booking.id)

    return {'received': True}
