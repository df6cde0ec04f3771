from datetime import date, time

from pydantic import BaseModel, Field, field_validator

from booking_scheduler.utils.contacts import normalize_phone

MAX_NOTES_LEN = 1000


class BookingRequest(BaseModel):
    """Client input for a new booking; ``day``/``start_time`` are provider-local."""

    provider_id: str = Field(min_length=1)
    service_id: str = Field(min_length=1)
    client_id: str = Field(min_length=1)
    day: date
    start_time: time
    notes: str = Field("", max_length=MAX_NOTES_LEN)
    contact_phone: str | None = None

    @field_validator("start_time")
    @classmethod
    def validate_start_time(cls, v: time) -> time:
        return v.replace(second=0, microsecond=0, tzinfo=None)

    @field_validator("notes")
    @classmethod
    def validate_notes(cls, v: str) -> str:
        return v.strip()

    @field_validator("contact_phone")
    @classmethod
    def validate_phone(cls, v):
        if not v:
            return None
        phone = normalize_phone(v)
        if phone is None:
            raise ValueError("contact phone must have 7-15 digits, optionally with a leading '+'")
        return phone
