"""User model definitions."""

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text

from backend.database import Base, utcnow

ROLE_ACTOR = "ACTOR"
ROLE_READER = "READER"
ROLE_ADMIN = "ADMIN"

DEFAULT_RATE_15_CENTS = 1500
DEFAULT_RATE_30_CENTS = 2500
DEFAULT_RATE_60_CENTS = 6000


class User(Base):
    """An actor or reader account.

    Readers carry booking rates, advance-booking windows and the reliability
    counters the cancellation policy updates.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String)
    name = Column(String)
    display_name = Column(String)
    bio = Column(Text)
    role = Column(String, default=ROLE_ACTOR, nullable=False)
    is_active = Column(Boolean, default=True)
    timezone = Column(String)
    email_verified = Column(Boolean, default=False)

    reset_token = Column(String, index=True)
    reset_token_expires_at = Column(DateTime)

    stripe_customer_id = Column(String, index=True)
    stripe_account_id = Column(String)
    subscription_id = Column(String, index=True)
    subscription_status = Column(String)

    rate_per_15_min = Column(Integer)
    rate_per_30_min = Column(Integer)
    rate_per_60_min = Column(Integer)
    min_advance_hours = Column(Integer, default=2)
    max_advance_booking_hours = Column(Integer, default=168)

    total_sessions = Column(Integer, default=0, nullable=False)
    completed_sessions = Column(Integer, default=0, nullable=False)
    canceled_sessions = Column(Integer, default=0, nullable=False)
    no_show_sessions = Column(Integer, default=0, nullable=False)
    late_arrivals = Column(Integer, default=0, nullable=False)
    reliability_score = Column(Float)
    last_warning_at = Column(DateTime)
    suspended_until = Column(DateTime)
    suspension_reason = Column(String)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def public_name(self) -> str:
        return self.display_name or self.name or self.email

    @property
    def is_reader(self) -> bool:
        return self.role in (ROLE_READER, ROLE_ADMIN)

    def is_suspended(self, now) -> bool:
        return self.suspended_until is not None and self.suspended_until > now

    def is_bookable(self, now) -> bool:
        """Actors can book this reader: active, not suspended, payouts set up."""
        return (
            self.is_reader
            and bool(self.is_active)
            and not self.is_suspended(now)
            and bool(self.stripe_account_id)
        )
