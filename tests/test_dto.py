from datetime import datetime, time, timezone
from decimal import Decimal

import pytest

from booking_scheduler.dto import BookingDTO, Role, ServiceDTO
from booking_scheduler.scheduling.state import BookingStatus

from conftest import MONDAY, NOW, make_booking, make_service


class TestServiceDTO:
    def test_rejects_short_duration(self):
        with pytest.raises(ValueError):
            make_service(duration=4)

    def test_rejects_negative_price(self):
        with pytest.raises(ValueError):
            make_service(price=Decimal("-1"))

    def test_snapshot_is_detached_copy(self):
        service = make_service()
        snap = service.snapshot()
        service.name = "Renamed"
        assert snap.name == "Haircut"
        assert snap.duration_minutes == 60


class TestBookingDTO:
    def test_interval_and_end_time(self):
        booking = make_booking(start=time(16, 30), duration=45)
        assert booking.end_time == time(17, 15)
        interval = booking.interval()
        assert interval.start == datetime(2025, 6, 2, 16, 30, tzinfo=timezone.utc)
        assert interval.duration_minutes == 45

    def test_interval_in_provider_offset(self):
        booking = make_booking(start=time(10, 0))
        assert booking.interval(180).start.astimezone(timezone.utc).hour == 7

    def test_document_shape(self):
        doc = make_booking(notes="short hair", contact_phone="+79991234567").to_document()
        assert doc["date"] == "2025-06-02"
        assert doc["startTime"] == "10:00"
        assert doc["servicePriceSnapshot"] == "25.00"
        assert doc["serviceDurationMinutes"] == 60
        assert doc["status"] == "pending"
        assert doc["contactPhone"] == "+79991234567"
        assert "cancelledAt" not in doc
        assert "cancelReason" not in doc

    def test_document_round_trip_of_cancelled_booking(self):
        booking = make_booking(
            status=BookingStatus.CANCELLED,
            cancelled_at=NOW,
            cancel_reason="ill",
            cancelled_by=Role.PROVIDER,
        )
        restored = BookingDTO.from_document(booking.to_document())
        assert restored == booking
        assert restored.day == MONDAY
