"""
Fixed-point USDC amount helpers.

USDC uses 6 fractional digits on both supported networks, so one display
unit is 1_000_000 base units.
"""
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Union

from facilitator.core.errors import ValidationError

USDC_DECIMALS = 6

AmountLike = Union[Decimal, int, float, str]


def parse_amount(amount: AmountLike, decimals: int = USDC_DECIMALS) -> int:
    """Convert a decimal display amount into integer base units (half-up)."""
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {amount!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")
    scaled = value.scaleb(decimals).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(scaled)


def format_amount(base_units: int, decimals: int = USDC_DECIMALS) -> str:
    """Render base units as a trimmed decimal string (5000000 -> "5")."""
    text = f"{Decimal(int(base_units)).scaleb(-decimals):.{decimals}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"
