"""Availability model definitions."""

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String

from backend.database import Base, utcnow


class AvailabilityTemplate(Base):
    """A recurring weekly window in the reader's own timezone.

    day_of_week follows 0=Sunday .. 6=Saturday; start/end are "HH:MM".
    """
    __tablename__ = "availability_templates"

    id = Column(Integer, primary_key=True)
    reader_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(String, nullable=False)
    end_time = Column(String, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AvailabilitySlot(Base):
    """A concrete bookable interval, stored in UTC."""
    __tablename__ = "availability_slots"

    id = Column(Integer, primary_key=True)
    reader_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    is_booked = Column(Boolean, default=False)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow)
