"""Liquidity positions - tick math, position models, chain reads and valuation."""

from season_points.lp.models import (
    AddressConfig,
    BoostPair,
    LpData,
    LpPosition,
    PositionSource,
    normalize_address,
)
from season_points.lp.tick_math import (
    format_units,
    get_amounts_for_liquidity,
    is_in_range,
    tick_to_sqrt_price_x96,
)

__all__ = [
    "AddressConfig",
    "BoostPair",
    "LpData",
    "LpPosition",
    "PositionSource",
    "format_units",
    "get_amounts_for_liquidity",
    "is_in_range",
    "normalize_address",
    "tick_to_sqrt_price_x96",
]
