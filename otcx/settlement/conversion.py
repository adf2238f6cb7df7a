"""
otcx/settlement/conversion.py

Conversion-ratio and deadline arithmetic.

Every result here must equal what the ledger computes, so all arithmetic
is integer fixed point and every division truncates toward zero. A
settlement amount that is one unit off the ledger's value fails proof
validation on the amount field.

Review gate:
    review_open(deadline) is True iff remaining(deadline) <= 0.

Sellers get the whole window to deliver. Proof review, and with it any
accept or reject, only opens once the project's settlement deadline has
passed.
"""

from decimal import Decimal, InvalidOperation
from typing import Optional

from otcx.core.models import AMOUNT_SCALE, RATIO_DECIMALS, RATIO_SCALE
from otcx.core.time import resolve_now

BPS_DENOMINATOR = 10_000

# Largest conversion ratio the ledger accepts: 10 settlement units per point.
MAX_CONVERSION_RATIO = 10 * RATIO_SCALE


# ─────────────────────────────────────────────────────────────
# Amounts
# ─────────────────────────────────────────────────────────────

def _truncating_div(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // denominator
    return -quotient if numerator < 0 else quotient


def to_settlement_amount(points_amount: int, conversion_ratio: int) -> int:
    """
    Convert a points amount (18 decimals) into settlement-asset units.

        points_amount * conversion_ratio // 10**18, truncated toward zero

    Example:
        >>> to_settlement_amount(100 * 10**18, 12 * 10**17)   # ratio 1.2
        120000000000000000000
    """
    return _truncating_div(points_amount * conversion_ratio, RATIO_SCALE)


def total_value(amount: int, unit_price: int) -> int:
    """Order value in stable units (6 decimals)."""
    return _truncating_div(amount * unit_price, AMOUNT_SCALE)


def fee(amount: int, bps: int) -> int:
    """Basis-point fee on `amount`, truncated."""
    if bps < 0 or bps > BPS_DENOMINATOR:
        raise ValueError(f"fee bps out of range: {bps}")
    return _truncating_div(amount * bps, BPS_DENOMINATOR)


# ─────────────────────────────────────────────────────────────
# Deadlines
# ─────────────────────────────────────────────────────────────

def remaining(deadline: int, now: Optional[int] = None) -> int:
    """Seconds until `deadline`. Negative once overdue."""
    return deadline - resolve_now(now)


def review_open(deadline: int, now: Optional[int] = None) -> bool:
    """True iff the settlement deadline has been reached."""
    return remaining(deadline, now) <= 0


def format_remaining(seconds: int) -> str:
    """Human countdown, e.g. '3h 12m remaining'. 'OVERDUE' once <= 0."""
    if seconds <= 0:
        return "OVERDUE"

    days, rest = divmod(seconds, 86_400)
    hours, rest = divmod(rest, 3_600)
    minutes, secs = divmod(rest, 60)

    if days:
        return f"{days}d {hours}h remaining"
    if hours:
        return f"{hours}h {minutes}m remaining"
    return f"{minutes}m {secs}s remaining"


# ─────────────────────────────────────────────────────────────
# Fixed-point text
# ─────────────────────────────────────────────────────────────

def parse_fixed(text: str, decimals: int) -> int:
    """
    Parse a decimal string into a fixed-point integer, exactly.

    Raises:
        ValueError: not a finite non-negative number, or more fractional
                    digits than `decimals`
    """
    try:
        value = Decimal(str(text).strip())
    except InvalidOperation as e:
        raise ValueError(f"not a decimal number: {text!r}") from e

    if not value.is_finite():
        raise ValueError(f"not a finite number: {text!r}")
    if value < 0:
        raise ValueError(f"negative value: {text!r}")

    scaled = value.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{text!r} has more than {decimals} fractional digits")
    return int(scaled)


def format_fixed(value: int, decimals: int) -> str:
    """Render a fixed-point integer as a plain decimal string, trailing zeros dropped."""
    text = format(Decimal(value).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def parse_ratio(text: str, is_points: bool = True) -> int:
    """
    Parse a conversion ratio for TGE activation.

    Points projects take any ratio in (0, 10]. Token projects settle in
    the traded token itself, so their ratio must be exactly 1.0.
    """
    ratio = parse_fixed(text, RATIO_DECIMALS)
    if ratio <= 0:
        raise ValueError("conversion ratio must be greater than zero")
    if ratio > MAX_CONVERSION_RATIO:
        raise ValueError("conversion ratio must not exceed 10")
    if not is_points and ratio != RATIO_SCALE:
        raise ValueError("token projects must use a conversion ratio of 1.0")
    return ratio
