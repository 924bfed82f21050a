"""
DECIMAL PRECISION HELPERS

This module provides:
1. Decimal conversion that avoids float artefacts
2. Two-decimal input validation for percentages and money
3. Half-up rounding at the storage boundary only
4. The financial-progress derivation (bill / cost * 100, whole percent)
"""

from decimal import Context, Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union
import logging
import math

from .errors import ValidationError, INVALID_VALUE

logger = logging.getLogger(__name__)

# Precision configuration
DECIMAL_PLACES = 2
QUANTIZE_PATTERN = Decimal('0.01')
WHOLE_PERCENT = Decimal('1')
HUNDRED = Decimal('100')

# Enough digits to quantize any float-sized amount to two places
QUANTIZE_CONTEXT = Context(prec=400)

Number = Union[float, int, str, Decimal]


def to_decimal(value: Number) -> Decimal:
    """
    Convert any numeric value to Decimal.
    Does NOT round - preserves full precision for intermediate calculations.
    """
    if isinstance(value, bool):
        raise ValidationError(INVALID_VALUE, f"Expected a number, got {value!r}")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        # Convert via string to avoid float precision issues
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation:
            raise ValidationError(INVALID_VALUE, f"Cannot convert {value!r} to a number")
    raise ValidationError(INVALID_VALUE, f"Cannot convert {type(value).__name__} to a number")


def round_financial(value: Number) -> Decimal:
    """Round to 2 decimal places, half up. Call ONLY at calculation boundaries."""
    return to_decimal(value).quantize(QUANTIZE_PATTERN, rounding=ROUND_HALF_UP, context=QUANTIZE_CONTEXT)


def to_float(value: Decimal) -> float:
    """Convert Decimal back to float for storage, rounding to 2 places first."""
    return float(round_financial(value))


def parse_two_decimal(value: Number, field_name: str, minimum: Number = None, maximum: Number = None) -> Decimal:
    """
    Parse a user-supplied amount or percentage.

    Rejects non-finite values, more than two decimal places and values
    outside [minimum, maximum] with ValidationError(INVALID_VALUE).
    """
    if value is None:
        raise ValidationError(INVALID_VALUE, f"'{field_name}' is required", {"field": field_name})

    decimal_value = to_decimal(value)
    if not decimal_value.is_finite() or not math.isfinite(float(decimal_value)):
        raise ValidationError(
            INVALID_VALUE,
            f"'{field_name}' must be a finite number",
            {"field": field_name, "provided_value": str(value)}
        )

    try:
        has_extra_places = decimal_value != round_financial(decimal_value)
    except InvalidOperation:
        raise ValidationError(
            INVALID_VALUE,
            f"'{field_name}' is out of the supported range",
            {"field": field_name, "provided_value": str(value)}
        )
    if has_extra_places:
        raise ValidationError(
            INVALID_VALUE,
            f"'{field_name}' can have at most {DECIMAL_PLACES} decimal places",
            {"field": field_name, "provided_value": str(value)}
        )

    if minimum is not None and decimal_value < to_decimal(minimum):
        raise ValidationError(
            INVALID_VALUE,
            f"'{field_name}' cannot be less than {minimum}",
            {"field": field_name, "provided_value": str(value), "minimum": minimum}
        )
    if maximum is not None and decimal_value > to_decimal(maximum):
        raise ValidationError(
            INVALID_VALUE,
            f"'{field_name}' cannot exceed {maximum}",
            {"field": field_name, "provided_value": str(value), "maximum": maximum}
        )

    return decimal_value


def safe_divide(numerator: Number, denominator: Number) -> Decimal:
    """Safe division with zero check"""
    denom = to_decimal(denominator)
    if denom == Decimal('0'):
        return Decimal('0')
    return to_decimal(numerator) / denom


def share_of(amount: Number, total: Number) -> Decimal:
    """amount as an unrounded percentage of total (0 when total is 0)."""
    return safe_divide(amount, total) * HUNDRED


def derive_financial_progress(bill_amount: Number, estimated_cost: Number) -> int:
    """
    LOCKED FORMULA:
    financial_progress = round_half_up(bill_amount / estimated_cost * 100)

    Returns 0 when the estimated cost is 0.
    """
    percent = share_of(bill_amount, estimated_cost)
    return int(percent.quantize(WHOLE_PERCENT, rounding=ROUND_HALF_UP))
