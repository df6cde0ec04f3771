from sqlalchemy import JSON, Boolean, CheckConstraint, Column, Integer, Numeric, String, Text

from booking_scheduler.models.base import Base


class Service(Base):
    __tablename__ = "services"

    id = Column(String, primary_key=True)
    provider_id = Column(String, index=True, nullable=False)
    name = Column(String, nullable=False)
    category = Column(String, nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    price = Column(Numeric(10, 2), nullable=False)
    duration_min = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_services_price"),
        CheckConstraint("duration_min >= 5", name="ck_services_duration"),
    )


class ProviderPolicy(Base):
    __tablename__ = "provider_policies"

    provider_id = Column(String, primary_key=True)
    advance_booking_days = Column(Integer, nullable=False)
    slot_step_min = Column(Integer, nullable=False)
    tz_offset_min = Column(Integer, nullable=False, default=0)
    # {"0": ["09:00", "17:00"], ...}; weekdays absent from the map are closed
    weekly_hours = Column(JSON, nullable=False, default=dict)
