"""Price calculator — storefront retail price from the marketplace price.

    target = round(source_price × rate × margin, 2)

All arithmetic is Decimal; rounding (half-up) happens once, at the end, so
the same inputs always give the same cent.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .errors import ValidationError

MIN_MARGIN = Decimal("1.0")
MAX_MARGIN = Decimal("5.0")
CENT = Decimal("0.01")


def _to_decimal(value, field: str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number", details={field: value})
    try:
        # str() so floats like 0.00075 keep their printed value
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field} must be a number", details={field: str(value)}) from e


def validate_margin(margin) -> Decimal:
    """Return the margin as Decimal; out-of-range margins are rejected, never clamped."""
    m = _to_decimal(margin, "margin")
    if not m.is_finite() or m < MIN_MARGIN or m > MAX_MARGIN:
        raise ValidationError(
            f"Price margin must be between {MIN_MARGIN} and {MAX_MARGIN}",
            code="INVALID_MARGIN",
            details={"margin": str(m)},
        )
    return m


def calculate_target_price(source_price, rate, margin) -> Decimal:
    m = validate_margin(margin)
    price = _to_decimal(source_price, "source_price")
    r = _to_decimal(rate, "rate")
    if not price.is_finite() or price < 0:
        raise ValidationError("Source price must be non-negative", details={"source_price": str(price)})
    if not r.is_finite() or r <= 0:
        raise ValidationError("Exchange rate must be positive", details={"rate": str(r)})
    return (price * r * m).quantize(CENT, rounding=ROUND_HALF_UP)
