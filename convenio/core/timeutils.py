"""Time helpers. Timestamps are stored in UTC; business dates use the local zone."""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from convenio.core.config import settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive values read back from backends without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_tz() -> ZoneInfo:
    return ZoneInfo(settings.EXPIRY_SWEEP_TIMEZONE)


def local_today(now: datetime | None = None) -> date:
    """Current business date in the configured local timezone."""
    return (now or utc_now()).astimezone(local_tz()).date()


def local_day_bounds(day: date) -> tuple[datetime, datetime]:
    """UTC [start, end) covering a local calendar day."""
    tz = local_tz()
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def local_period_bounds(start: date, end: date) -> tuple[datetime, datetime]:
    """UTC [start, end) covering local days start..end inclusive."""
    return local_day_bounds(start)[0], local_day_bounds(end)[1]


def to_utc(value: datetime) -> datetime:
    """Client input to UTC. Naive values are local business time."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=local_tz())
    return value.astimezone(timezone.utc)
