from datetime import date, datetime, time, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value) -> datetime | None:
    """Convert naive or aware datetimes (and ISO strings) to aware UTC-compatible datetimes.

    SQLite hands back naive values for timezone-aware columns; those are
    stored as UTC, so a missing tzinfo means UTC.
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    raise TypeError(f"Unsupported datetime type: {type(value)!r}")


def offset_tz(offset_min: int) -> timezone:
    if offset_min == 0:
        return timezone.utc
    return timezone(timedelta(minutes=offset_min))


def local_today(now: datetime, offset_min: int) -> date:
    return now.astimezone(offset_tz(offset_min)).date()


def combine(day: date, at: time, offset_min: int = 0) -> datetime:
    return datetime.combine(day, at.replace(tzinfo=None), offset_tz(offset_min))


def parse_hhmm(value: str) -> time:
    return datetime.strptime(value.strip(), "%H:%M").time()


def fmt_hhmm(value: time) -> str:
    return value.strftime("%H:%M")


def to_iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return ensure_aware(dt).astimezone(timezone.utc).isoformat()


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return ensure_aware(value)
