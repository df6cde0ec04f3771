from booking_scheduler.models.base import Base
from booking_scheduler.models.booking import Booking, CalendarBucket
from booking_scheduler.models.profile import ProviderPolicy, Service

__all__ = ["Base", "Booking", "CalendarBucket", "ProviderPolicy", "Service"]
