"""Concentrated-liquidity tick and amount math.

All fixed-point values use the Q64.96 encoding of the underlying AMM. Amount
calculations are done with Python integers so they match the on-chain integer
formulas exactly (floor division on non-negative operands).
"""

from __future__ import annotations

import math
from decimal import Decimal

Q96 = 2**96
TICK_BASE = 1.0001

# Uniswap V3 tick bounds
MIN_TICK = -887272
MAX_TICK = 887272


def _is_finite_number(value: object) -> bool:
    if isinstance(value, bool) or value is None:
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, (float, Decimal)):
        return math.isfinite(value)
    return False


def tick_to_sqrt_price_x96(tick: int | float | None) -> int | None:
    """Convert a tick to its Q64.96 square-root price.

    Returns ``floor(sqrt(1.0001 ** tick) * 2 ** 96)`` or None when the tick is
    not a finite number or the result does not fit a float.
    """
    if not _is_finite_number(tick):
        return None
    try:
        ratio = TICK_BASE ** float(tick)  # type: ignore[arg-type]
    except OverflowError:
        return None
    if not math.isfinite(ratio) or ratio <= 0:
        return None
    scaled = math.sqrt(ratio) * Q96
    if not math.isfinite(scaled) or scaled <= 0:
        return None
    return int(math.floor(scaled))


def get_amounts_for_liquidity(
    sqrt_price_x96: int | None,
    sqrt_price_a_x96: int | None,
    sqrt_price_b_x96: int | None,
    liquidity: int | None,
) -> tuple[int, int] | None:
    """Split ``liquidity`` into (amount0, amount1) raw token units.

    Three branches, identical to the AMM periphery library:
    - price at or below the range: everything is token0
    - price inside the range: blended split
    - price at or above the range: everything is token1

    Returns None if any input is missing or liquidity is not positive.
    """
    if not sqrt_price_x96 or not sqrt_price_a_x96 or not sqrt_price_b_x96:
        return None
    if not liquidity or liquidity <= 0:
        return None

    sqrt_a, sqrt_b = sqrt_price_a_x96, sqrt_price_b_x96
    if sqrt_a > sqrt_b:
        sqrt_a, sqrt_b = sqrt_b, sqrt_a

    if sqrt_price_x96 <= sqrt_a:
        amount0 = (liquidity * (sqrt_b - sqrt_a) * Q96) // (sqrt_b * sqrt_a)
        return amount0, 0
    if sqrt_price_x96 < sqrt_b:
        amount0 = (liquidity * (sqrt_b - sqrt_price_x96) * Q96) // (sqrt_b * sqrt_price_x96)
        amount1 = (liquidity * (sqrt_price_x96 - sqrt_a)) // Q96
        return amount0, amount1
    amount1 = (liquidity * (sqrt_b - sqrt_a)) // Q96
    return 0, amount1


def is_in_range(sqrt_price_x96: int, sqrt_price_a_x96: int, sqrt_price_b_x96: int) -> bool:
    """True when the pool price sits strictly inside the position's bounds."""
    low, high = sorted((sqrt_price_a_x96, sqrt_price_b_x96))
    return low < sqrt_price_x96 < high


def tick_to_price_ratio(tick: int | float, decimals0: int, decimals1: int) -> float | None:
    """Human price of token0 denominated in token1 implied by ``tick``."""
    if not _is_finite_number(tick):
        return None
    try:
        ratio = TICK_BASE ** float(tick) * 10 ** (decimals0 - decimals1)
    except OverflowError:
        return None
    if not math.isfinite(ratio) or ratio <= 0:
        return None
    return ratio


def sqrt_price_to_price_ratio(sqrt_price_x96: int, decimals0: int, decimals1: int) -> float | None:
    """Human price of token0 denominated in token1 implied by a sqrt price."""
    if not sqrt_price_x96 or sqrt_price_x96 <= 0:
        return None
    try:
        ratio = (sqrt_price_x96 / Q96) ** 2 * 10 ** (decimals0 - decimals1)
    except OverflowError:
        return None
    if not math.isfinite(ratio) or ratio <= 0:
        return None
    return ratio


def format_units(value: int | None, decimals: int = 18) -> float:
    """Convert raw integer token units to a float amount."""
    if value is None:
        return 0.0
    base = 10**decimals
    whole, frac = divmod(value, base)
    return float(whole) + frac / base
