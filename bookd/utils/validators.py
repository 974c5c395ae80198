"""
Validation utilities
"""
from bookd.errors import InvalidAmount
from bookd.utils.helpers import round_money


def parse_amount(value, allow_zero=False):
    """
    Parse a request amount into cents-precision Decimal

    Args:
        value: number or numeric string from a JSON body
        allow_zero (bool): accept 0.00 (credit balances), reject it otherwise

    Returns:
        Decimal: amount rounded half-up to cents

    Raises:
        InvalidAmount: non-numeric, negative, or (unless allowed) zero
    """
    try:
        amount = round_money(value)
    except ValueError:
        raise InvalidAmount('Invalid amount: {!r}'.format(value))

    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmount('Amount must be greater than zero')
    return amount
