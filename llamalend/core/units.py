"""Fixed-point amount conversion.

Token amounts cross the SDK boundary as human-readable ``Decimal`` values and
reach the contracts as integers scaled by ``10**decimals``. All arithmetic runs
in a local decimal context wide enough for uint256, so conversions are exact.
"""

from __future__ import annotations

from decimal import ROUND_DOWN, ROUND_HALF_UP, Context, Decimal, InvalidOperation, localcontext
from typing import Union

from llamalend.core.errors import InvalidAmount

Amount = Union[str, int, float, Decimal]

MAX_ALLOWANCE = 2**256 - 1
# Passed as the active band to repay() while the position is in soft liquidation
MAX_ACTIVE_BAND = 2**255 - 1
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# 1e78 > 2**256, plus room for 18+ fractional digits
PRECISION = 120


def decimal_context() -> Context:
    return Context(prec=PRECISION, rounding=ROUND_HALF_UP)


def to_decimal(value: Amount) -> Decimal:
    """Convert user input into a finite ``Decimal``.

    Floats go through ``str`` so ``0.1`` stays ``Decimal("0.1")``.
    """
    if isinstance(value, bool):
        raise InvalidAmount(value, "booleans are not amounts")
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, float):
            result = Decimal(repr(value))
        else:
            result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmount(value) from e
    if not result.is_finite():
        raise InvalidAmount(value)
    return result


def parse_units(value: Amount, decimals: int = 18) -> int:
    """Human amount -> integer base units, truncating digits beyond ``decimals``."""
    amount = to_decimal(value)
    with localcontext(decimal_context()):
        scaled = (amount * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def format_units(value: int, decimals: int = 18) -> Decimal:
    """Integer base units -> exact human ``Decimal`` with ``decimals`` places."""
    with localcontext(decimal_context()):
        return (Decimal(int(value)) / (Decimal(10) ** decimals)).quantize(
            Decimal(1).scaleb(-decimals)
        )


def round_to(value: Decimal, places: int) -> Decimal:
    """Round half-up to a fixed number of places."""
    with localcontext(decimal_context()):
        return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def from_decimal(value: Decimal, decimals: int = 18) -> int:
    """Round a human value to ``decimals`` places and scale to base units."""
    return parse_units(round_to(value, decimals), decimals)


def cut_zeros(value: Decimal) -> str:
    """Plain (non-exponent) string with trailing fractional zeros removed."""
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return "0" if text in ("", "-0") else text


def strip_zeros(value: Decimal) -> Decimal:
    """``cut_zeros`` as a ``Decimal``."""
    return Decimal(cut_zeros(value))


def mul_by_1_3(gas: int) -> int:
    """Gas limit with a 30% buffer over the estimate."""
    return int(gas) * 130 // 100
