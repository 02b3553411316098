"""Transactional email through Resend.

Every send is best effort: a failure is logged and reported as ``False`` so
booking and account flows never fail because mail could not go out.
"""

import logging
from datetime import datetime
from html import escape

import resend

from backend.core import config
from backend.models.booking import Booking
from backend.models.user import User
from backend.services.availability import get_zone, utc_to_local

logger = logging.getLogger(__name__)


def send_email(to: str | list[str], subject: str, html: str) -> bool:
    recipients = [to] if isinstance(to, str) else to
    if not config.SEND_EMAILS:
        logger.info('Email sending disabled, skipping "%s" to %s', subject, recipients)
        return False
    if not config.RESEND_API_KEY:
        logger.warning('RESEND_API_KEY missing, cannot send "%s" to %s', subject, recipients)
        return False

    resend.api_key = config.RESEND_API_KEY
    try:
        response = resend.Emails.send({
            'from': config.FROM_EMAIL,
            'to': recipients,
            'subject': subject,
            'html': html,
        })
    except Exception:
        logger.exception('Email send failed to %s', recipients)
        return False

    logger.info('Email "%s" sent to %s: %s', subject, recipients, response)
    return True


def _layout(heading: str, body: str) -> str:
    return (
        '<div style="font-family:Arial,sans-serif;max-width:560px;margin:0 auto">'
        f'<h2>{escape(heading)}</h2>{body}'
        f'<p style="color:#888;font-size:12px">Questions? Contact {escape(config.SUPPORT_EMAIL)}</p>'
        '</div>'
    )


def _button(url: str, label: str) -> str:
    return (
        f'<p><a href="{escape(url, quote=True)}" '
        'style="background:#111;color:#fff;padding:10px 16px;text-decoration:none;border-radius:4px">'
        f'{escape(label)}</a></p>'
    )


def format_session_time(value: datetime, tz_name: str | None) -> str:
    """Render a naive UTC time in the recipient's timezone."""
    local = utc_to_local(value, get_zone(tz_name))
    return local.strftime('%A, %B %d, %Y at %I:%M %p %Z')


def _dollars(cents: int | None) -> str:
    return f'${(cents or 0) / 100:.2f}'


def send_verification_email(user: User, token: str) -> bool:
    url = f'{config.PUBLIC_URL}/verify-email?token={token}'
    body = f'<p>Hi {escape(user.public_name)},</p><p>Confirm your email address to finish signing up.</p>'
    body += _button(url, 'Verify email') + '<p>This link expires in 24 hours.</p>'
    return send_email(user.email, 'Verify your email', _layout('Verify your email', body))


def send_password_reset_email(user: User, token: str) -> bool:
    url = f'{config.PUBLIC_URL}/reset-password?token={token}'
    body = '<p>We received a request to reset your password.</p>'
    body += _button(url, 'Reset password') + '<p>This link expires in 1 hour.</p>'
    return send_email(user.email, 'Reset your password', _layout('Reset your password', body))


def send_email_change_email(new_email: str, token: str) -> bool:
    url = f'{config.PUBLIC_URL}/verify-email-change?token={token}'
    body = '<p>Confirm this address to make it the email on your account.</p>'
    body += _button(url, 'Confirm new email') + '<p>This link expires in 24 hours.</p>'
    return send_email(new_email, 'Confirm your new email', _layout('Confirm your new email', body))


def _session_lines(booking: Booking, viewer: User) -> str:
    lines = [
        f'<p><strong>When:</strong> {escape(format_session_time(booking.start_time, viewer.timezone))}</p>',
        f'<p><strong>Length:</strong> {booking.duration_minutes} minutes</p>',
    ]
    if booking.meeting_url:
        meeting_url = escape(booking.meeting_url, quote=True)
        lines.append(f'<p><strong>Video room:</strong> <a href="{meeting_url}">Join</a></p>')
    return ''.join(lines)


def send_booking_confirmation(booking: Booking) -> bool:
    actor, reader = booking.actor, booking.reader
    actor_body = f'<p>Your session with {escape(reader.public_name)} is confirmed.</p>'
    actor_body += _session_lines(booking, actor)
    actor_sent = send_email(actor.email, 'Your session is booked', _layout('Session confirmed', actor_body))

    reader_body = f'<p>{escape(actor.public_name)} booked a session with you.</p>'
    reader_body += _session_lines(booking, reader)
    reader_body += f'<p><strong>Your earnings:</strong> {_dollars(booking.reader_earnings_cents)}</p>'
    if booking.notes:
        reader_body += f'<p><strong>Notes:</strong> {escape(booking.notes)}</p>'
    reader_sent = send_email(reader.email, 'New booking', _layout('New booking', reader_body))
    return actor_sent and reader_sent


def send_cancellation_emails(booking: Booking, refund_message: str) -> bool:
    actor, reader = booking.actor, booking.reader
    canceled_label = {'ACTOR': 'the actor', 'READER': 'the reader'}.get(booking.canceled_by, 'the platform')

    actor_body = f'<p>Your session with {escape(reader.public_name)} was canceled by {canceled_label}.</p>'
    actor_body += _session_lines(booking, actor)
    actor_body += f'<p><strong>Refund:</strong> {_dollars(booking.refund_cents)}</p>'
    if booking.platform_credit_cents:
        actor_body += f'<p><strong>Platform credit:</strong> {_dollars(booking.platform_credit_cents)}</p>'
    actor_body += f'<p>{escape(refund_message)}</p>'
    actor_sent = send_email(actor.email, 'Session canceled', _layout('Session canceled', actor_body))

    reader_body = f'<p>Your session with {escape(actor.public_name)} was canceled by {canceled_label}.</p>'
    reader_body += _session_lines(booking, reader)
    if booking.canceled_by == 'READER' and booking.canceled_at and booking.canceled_at == reader.last_warning_at:
        reader_body += (
            '<p><strong>Warning:</strong> this cancellation was made with less than 24 hours notice. '
            'Repeated late cancellations lead to suspension.</p>'
        )
    reader_sent = send_email(reader.email, 'Session canceled', _layout('Session canceled', reader_body))
    return actor_sent and reader_sent


def send_reschedule_emails(booking: Booking, previous_start: datetime) -> bool:
    sent = True
    for recipient, other in ((booking.actor, booking.reader), (booking.reader, booking.actor)):
        body = f'<p>Your session with {escape(other.public_name)} has a new time.</p>'
        previous = escape(format_session_time(previous_start, recipient.timezone))
        body += f'<p><strong>Previously:</strong> {previous}</p>'
        body += _session_lines(booking, recipient)
        sent = send_email(recipient.email, 'Session rescheduled', _layout('Session rescheduled', body)) and sent
    return sent


def send_booking_reminder(booking: Booking, hours_before: int) -> bool:
    label = '24 hours' if hours_before == 24 else '1 hour'
    sent = True
    for recipient, other in ((booking.actor, booking.reader), (booking.reader, booking.actor)):
        body = f'<p>Your session with {escape(other.public_name)} starts in about {label}.</p>'
        body += _session_lines(booking, recipient)
        subject = f'Reminder: session in {label}'
        sent = send_email(recipient.email, subject, _layout(subject, body)) and sent
    return sent
