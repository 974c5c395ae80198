"""Utilities package"""
from .helpers import (
    CENT, ZERO, generate_uuid, utcnow, as_utc, month_period, month_start,
    to_decimal, round_money, money_str,
)
from .validators import parse_amount

__all__ = [
    'CENT',
    'ZERO',
    'generate_uuid',
    'utcnow',
    'as_utc',
    'month_period',
    'month_start',
    'to_decimal',
    'round_money',
    'money_str',
    'parse_amount',
]
