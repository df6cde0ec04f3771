from sqlalchemy import Column, Date, DateTime, Index, Integer, Numeric, PrimaryKeyConstraint, String, Text

from booking_scheduler.models.base import Base


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String, primary_key=True)
    client_id = Column(String, index=True, nullable=False)
    provider_id = Column(String, nullable=False)
    service_id = Column(String, nullable=False)
    service_name = Column(String, nullable=False)
    service_category = Column(String, nullable=False, default="")
    service_price = Column(Numeric(10, 2), nullable=False)
    service_duration_min = Column(Integer, nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(String(5), nullable=False)  # HH:MM, provider local time
    status = Column(String, nullable=False)
    notes = Column(Text, nullable=False, default="")
    contact_phone = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    cancelled_by = Column(String, nullable=True)

    __table_args__ = (Index("ix_bookings_provider_date", "provider_id", "date"),)


class CalendarBucket(Base):
    """Version counter for one provider's day; bumped by every booking write."""

    __tablename__ = "calendar_buckets"

    provider_id = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (PrimaryKeyConstraint("provider_id", "date"),)
