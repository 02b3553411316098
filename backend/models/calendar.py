"""Calendar connection model definitions."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from backend.database import Base, utcnow

PROVIDER_GOOGLE = "GOOGLE"
PROVIDER_MICROSOFT = "MICROSOFT"
PROVIDER_ICAL = "ICAL"


class CalendarConnection(Base):
    """External calendar linked to a user, used for busy-time lookups."""
    __tablename__ = "calendar_connections"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    provider = Column(String, nullable=False)
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expires_at = Column(DateTime)
    ical_url = Column(String)
    calendar_id = Column(String, default="primary")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
