"""Booking model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from backend.database import Base, utcnow

STATUS_PENDING = "PENDING"
STATUS_CONFIRMED = "CONFIRMED"
STATUS_COMPLETED = "COMPLETED"
STATUS_CANCELED = "CANCELED"
STATUS_NO_SHOW = "NO_SHOW"
STATUS_EXPIRED = "EXPIRED"

REFUND_NONE = "NONE"
REFUND_PENDING = "PENDING"
REFUND_COMPLETED = "COMPLETED"


class Booking(Base):
    """A session between an actor and a reader."""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    actor_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    reader_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    status = Column(String, default=STATUS_PENDING, nullable=False)

    total_cents = Column(Integer, nullable=False)
    reader_earnings_cents = Column(Integer)
    platform_fee_cents = Column(Integer)
    stripe_checkout_session_id = Column(String)
    stripe_payment_intent_id = Column(String)

    meeting_url = Column(String)
    sides_url = Column(String)
    sides_link = Column(String)
    sides_file_name = Column(String)
    notes = Column(Text)

    canceled_at = Column(DateTime)
    canceled_by = Column(String)
    cancel_reason = Column(String)
    refund_status = Column(String, default=REFUND_NONE)
    refund_cents = Column(Integer, default=0)
    refund_issued_at = Column(DateTime)
    processing_fee_cents = Column(Integer, default=0)
    platform_credit_cents = Column(Integer, default=0)
    stripe_refund_id = Column(String)

    has_issue = Column(Boolean, default=False)
    issue_type = Column(String)
    issue_reported_by = Column(String)
    issue_description = Column(Text)

    reminder_24h_sent = Column(Boolean, default=False)
    reminder_1h_sent = Column(Boolean, default=False)
    google_event_id = Column(String)
    microsoft_event_id = Column(String)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    actor = relationship("User", foreign_keys=[actor_id])
    reader = relationship("User", foreign_keys=[reader_id])
