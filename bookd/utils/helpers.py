"""
Helper utilities
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation

CENT = Decimal('0.01')
ZERO = Decimal('0.00')


def generate_uuid():
    """
    Generate a unique UUID

    Returns:
        str: UUID string
    """
    return str(uuid.uuid4())


def utcnow():
    return datetime.now(timezone.utc)


def as_utc(dt):
    """
    Attach UTC to naive datetimes read back from the database

    SQLite drops tzinfo on round-trip; every timestamp we store is UTC.
    """
    if dt is None or dt.tzinfo is not None:
        return dt
    return dt.replace(tzinfo=timezone.utc)


def month_period(dt):
    """Calendar month key (UTC) used to bucket monthly earning caps, e.g. '2026-10'."""
    return as_utc(dt).astimezone(timezone.utc).strftime('%Y-%m')


def month_start(dt):
    """First instant of the UTC calendar month containing dt."""
    dt = as_utc(dt).astimezone(timezone.utc)
    return dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def to_decimal(value):
    """
    Convert a number or numeric string to Decimal without float artefacts

    Raises:
        ValueError: if value is not numeric
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValueError('not a number: {!r}'.format(value))
    try:
        # str() first so 0.1 becomes Decimal('0.1'), not the binary expansion
        result = Decimal(str(value).strip())
    except (InvalidOperation, TypeError):
        raise ValueError('not a number: {!r}'.format(value))
    if not result.is_finite():
        raise ValueError('not a finite number: {!r}'.format(value))
    return result


def round_money(value):
    """Round to cents, half-up."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value):
    """Two-decimal string used on the wire (PayPal amounts, JSON responses)."""
    if value is None:
        return None
    return str(round_money(value))
