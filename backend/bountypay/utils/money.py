"""Integer minor-unit arithmetic. Nothing on the money path touches floats."""
from __future__ import annotations

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from bountypay.errors import ValidationError


def parse_amount(value, field: str = "amount") -> int:
    """Accept an int (or a string of digits) of minor units; reject floats and bools."""
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be an integer number of cents")
    if isinstance(value, int):
        amount = value
    elif isinstance(value, str) and value.strip().isdigit():
        amount = int(value.strip())
    else:
        raise ValidationError(f"{field} must be an integer number of cents")
    if amount <= 0:
        raise ValidationError(f"{field} must be positive")
    return amount


def parse_percent(value) -> Decimal:
    try:
        pct = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"Invalid percentage: {value!r}") from None
    if not pct.is_finite() or pct < 0 or pct >= 100:
        raise ValidationError(f"Percentage must be in [0, 100): {value!r}")
    return pct


def percent_of(amount: int, percent) -> int:
    """``amount * percent / 100`` rounded half-up to a whole minor unit."""
    pct = parse_percent(percent)
    exact = Decimal(int(amount)) * pct / Decimal(100)
    return int(exact.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def split_fee(amount: int, percent) -> tuple[int, int]:
    """Split a hold into (platform_fee, hunter_payout); the two always sum to ``amount``."""
    fee = percent_of(amount, percent)
    return fee, int(amount) - fee
