"""
Fixed-point money helpers.

All monetary values are Decimal quantized to cents with half-up rounding,
matching the DECIMAL(12,2) columns they are stored in. Floats are rejected
outright so binary rounding never leaks into totals.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from .errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value, *, field: str = "amount") -> Decimal:
    """Coerce int/str/Decimal to a cent-quantized Decimal."""
    if value is None:
        raise ValidationError(f"{field} is required", details={"field": field})
    if isinstance(value, bool) or isinstance(value, float):
        raise ValidationError(
            f"{field} must be a Decimal, int or numeric string",
            details={"field": field, "value": repr(value)},
        )
    try:
        amount = Decimal(str(value)) if not isinstance(value, Decimal) else value
    except InvalidOperation:
        raise ValidationError(f"{field} is not a valid amount", details={"field": field, "value": str(value)})
    if not amount.is_finite():
        raise ValidationError(f"{field} is not a valid amount", details={"field": field, "value": str(value)})
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def non_negative_money(value, *, field: str) -> Decimal:
    amount = to_money(value, field=field)
    if amount < ZERO:
        raise ValidationError(f"{field} must be >= 0", details={"field": field, "value": str(amount)})
    return amount


def line_total(unit_price: Decimal, quantity: int) -> Decimal:
    return (to_money(unit_price, field="unit_price") * quantity).quantize(CENT, rounding=ROUND_HALF_UP)


def money_str(value) -> str | None:
    """Serialize a stored amount for to_dict() payloads."""
    if value is None:
        return None
    return str(to_money(value))
