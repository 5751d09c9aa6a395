from decimal import Decimal, ROUND_HALF_UP

from config.constants import MINOR_UNIT

_QUANTUM = Decimal(MINOR_UNIT)


def to_decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    # str() keeps 0.1 as 0.1 instead of its binary expansion
    return Decimal(str(value))


def round_minor(value) -> Decimal:
    return to_decimal(value).quantize(_QUANTUM, rounding=ROUND_HALF_UP)


def to_amount(value) -> float:
    """Stored representation of a money value."""
    return float(round_minor(value))


def sum_amounts(values) -> Decimal:
    total = Decimal("0")
    for value in values:
        total += to_decimal(value)
    return total


def percentage_of(amount, percentage) -> Decimal:
    """Round-half-up to the minor unit, applied once to the whole amount."""
    return round_minor(to_decimal(amount) * to_decimal(percentage) / Decimal("100"))
