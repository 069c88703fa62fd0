"""
Decimal money helpers.

Every amount the engine reports is a Decimal quantized to cents and rendered
with exactly two decimals. Floats never enter a sum directly; they are
converted through str() so 0.1 stays 0.1.
"""

from decimal import Decimal, InvalidOperation, ROUND_DOWN, ROUND_HALF_EVEN, ROUND_HALF_UP

from .errors import CalculationError

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(value) -> Decimal:
    """Convert an int/float/str/Decimal to Decimal. Raises ValueError on junk."""
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, bool):
        raise ValueError("boolean is not a number")
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise ValueError(f"not a number: {value!r}")
    else:
        raise ValueError(f"unsupported numeric type: {type(value).__name__}")
    if not result.is_finite():
        raise ValueError(f"not a finite number: {value!r}")
    return result


def quantize_cents(amount: Decimal, rounding=ROUND_HALF_UP) -> Decimal:
    """Round to cents. Display rounding is half-up; schedules pass ROUND_HALF_EVEN."""
    return amount.quantize(CENT, rounding=rounding)


def fmt(amount: Decimal) -> str:
    """Fixed two-decimal string, e.g. Decimal('944') -> '944.00'."""
    return str(quantize_cents(amount))


def split_evenly(total: Decimal, count: int) -> list:
    """
    Split `total` into `count` cent amounts that sum to `total` exactly.

    Periods 1..count-1 take total/count rounded half-to-even; the last period
    takes the residual. If the rounded share would leave the last period
    short (below a cent when every period could get one, or below zero) the
    share is rounded down instead, e.g. 0.10 over 6 -> 0.01 x 5 + 0.05.

        split_evenly(Decimal("100.00"), 3) -> [33.33, 33.33, 33.34]
    """
    if count < 1:
        raise CalculationError(
            f"Cannot split an amount over {count} periods",
            code="ZERO_LENGTH_DURATION",
            context={"count": count},
        )
    total = quantize_cents(total, ROUND_HALF_EVEN)
    exact = total / count
    share = exact.quantize(CENT, rounding=ROUND_HALF_EVEN)
    floor = CENT if total >= CENT * count else ZERO
    if total - share * (count - 1) < floor:
        share = exact.quantize(CENT, rounding=ROUND_DOWN)
    last = total - share * (count - 1)
    return [share] * (count - 1) + [last]
