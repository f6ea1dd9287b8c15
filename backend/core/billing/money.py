"""
Money helpers.

One rounding rule is used everywhere: Decimal ROUND_HALF_UP to whole cents.
"""
from decimal import Context, Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

CENT = Decimal("1")
HUNDRED = Decimal("100")

# Numbers beyond this magnitude are treated as unreadable input.
MAX_MAGNITUDE = Decimal("1e15")
# Largest cost a single usage row may carry.
MAX_ROW_COST_DOLLARS = Decimal("1e12")

# Wide enough that quantizing any product of two bounded numbers cannot overflow.
_ROUNDING_CONTEXT = Context(prec=64)


def to_decimal(value) -> Optional[Decimal]:
    """
    Coerce a number-ish value (int, float, str, Decimal) to a finite Decimal.
    Returns None for None, garbage, NaN, infinities and anything larger
    than MAX_MAGNITUDE.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        number = value
    else:
        try:
            # str() first so floats keep their shortest repr (0.1, not 0.1000000000000000055)
            number = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None
    if not number.is_finite() or abs(number) > MAX_MAGNITUDE:
        return None
    return number


def round_cents(value: Decimal) -> int:
    """Round a cent amount to an integer number of cents."""
    return int(value.quantize(CENT, rounding=ROUND_HALF_UP, context=_ROUNDING_CONTEXT))


def dollars_to_cents(dollars: Decimal) -> int:
    return round_cents(dollars * HUNDRED)


def cents_to_currency(cents: int) -> str:
    """12345 -> '123.45'"""
    return str((Decimal(int(cents)) / HUNDRED).quantize(Decimal("0.01"), context=_ROUNDING_CONTEXT))


def coerce_cents(value, default: int = 0) -> int:
    """Read a cents column that may come back as int, float, str or None."""
    number = to_decimal(value)
    if number is None:
        return default
    return round_cents(number)
