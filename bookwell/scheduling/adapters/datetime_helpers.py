import datetime as dt
from zoneinfo import ZoneInfo

from loguru import logger


def resolve_timezone(name: str) -> dt.tzinfo:
    """Resolve a timezone name, falling back to UTC if invalid."""
    try:
        return ZoneInfo(name)
    except Exception:
        logger.warning("Invalid business timezone '{}'; defaulting to UTC", name)
        return dt.timezone.utc


def is_aware(value: dt.datetime) -> bool:
    return value.tzinfo is not None and value.tzinfo.utcoffset(value) is not None


def local_date(value: dt.datetime, tz: dt.tzinfo) -> dt.date:
    """Date portion of an aware timestamp as seen in ``tz``.

    ``2026-03-15T23:30:00+00:00`` in ``Europe/Istanbul`` is ``2026-03-16``.
    """
    return value.astimezone(tz).date()


def date_to_long(date: dt.date) -> str:
    """Convert ``date(2026, 3, 22)`` → ``Sunday, March 22, 2026`` for notification text."""
    return f"{date.strftime('%A')}, {date.strftime('%B')} {date.day}, {date.year}"
