"""Small shared helpers."""

from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Return a timezone-aware UTC datetime.

    SQLite hands back naive datetimes even for timezone=True columns, so
    anything read from the database goes through here before comparison.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_decimal(value):
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value):
    """Round half-up to whole cents."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def start_of_day(now):
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(now):
    return start_of_day(now).replace(day=1)
