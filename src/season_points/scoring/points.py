"""Per-wallet points computation.

Turns cumulative swap volume plus boosted-pair LP value into a points
breakdown. Everything here is pure so the recalc pass can re-derive a
wallet's record from scratch at any time.

Scoring Formula:
    effective = min(volume, cap) + max(0, volume - cap) * diminishing_factor

    base = effective                          # "volume" mode
    base = effective * fee_bps / 10_000       # "fees" mode

    bonus = 2 * lp_crx_eth + 3 * lp_crx_usdm  # zero when boost disabled
    total = base + bonus
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

# Default configuration
DEFAULT_VOLUME_CAP_USD = 100_000.0
DEFAULT_DIMINISHING_FACTOR = 0.25
DEFAULT_FEE_BPS = 30.0

# LP bonus weights per boosted pair
LP_WEIGHT_CRX_ETH = 2.0
LP_WEIGHT_CRX_USDM = 3.0

# LP age tiers: (minimum age in seconds, display multiplier)
MULTIPLIER_TIERS: tuple[tuple[int, float], ...] = (
    (0, 1.2),
    (24 * 60 * 60, 1.5),
    (72 * 60 * 60, 2.0),
    (7 * 24 * 60 * 60, 2.5),
    (30 * 24 * 60 * 60, 3.0),
)


class ScoringMode(str, Enum):
    """How effective volume maps to base points."""

    VOLUME = "volume"
    FEES = "fees"


def _finite(value: object, default: float = 0.0) -> float:
    try:
        num = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return num if math.isfinite(num) else default


@dataclass(frozen=True)
class ScoringPolicy:
    """Season-wide scoring knobs."""

    mode: ScoringMode = ScoringMode.VOLUME
    fee_bps: float = DEFAULT_FEE_BPS
    volume_cap_usd: float = DEFAULT_VOLUME_CAP_USD
    diminishing_factor: float = DEFAULT_DIMINISHING_FACTOR

    def __post_init__(self) -> None:
        if not isinstance(self.mode, ScoringMode):
            object.__setattr__(self, "mode", ScoringMode(str(self.mode).lower()))
        if self.fee_bps < 0:
            raise ValueError(f"fee_bps must be non-negative, got {self.fee_bps}")
        if self.volume_cap_usd < 0:
            raise ValueError(f"volume_cap_usd must be non-negative, got {self.volume_cap_usd}")
        if not 0 <= self.diminishing_factor <= 1:
            raise ValueError(
                f"diminishing_factor must be between 0 and 1, got {self.diminishing_factor}"
            )


@dataclass(frozen=True)
class PointsBreakdown:
    """Result of scoring one wallet."""

    raw_volume_usd: float
    effective_volume_usd: float
    scoring_mode: ScoringMode
    fee_bps: float
    volume_cap_usd: float
    diminishing_factor: float
    base_points: float
    bonus_points: float
    total_points: float
    lp_usd: float
    lp_usd_crx_eth: float
    lp_usd_crx_usdm: float
    lp_points: float
    multiplier: float

    def to_dict(self) -> dict[str, object]:
        return {
            "raw_volume_usd": self.raw_volume_usd,
            "effective_volume_usd": self.effective_volume_usd,
            "scoring_mode": self.scoring_mode.value,
            "fee_bps": self.fee_bps,
            "volume_cap_usd": self.volume_cap_usd,
            "diminishing_factor": self.diminishing_factor,
            "base_points": self.base_points,
            "bonus_points": self.bonus_points,
            "total_points": self.total_points,
            "lp_usd": self.lp_usd,
            "lp_usd_crx_eth": self.lp_usd_crx_eth,
            "lp_usd_crx_usdm": self.lp_usd_crx_usdm,
            "lp_points": self.lp_points,
            "multiplier": self.multiplier,
        }


def apply_volume_cap(volume_usd: float, cap_usd: float, factor: float) -> float:
    """Diminishing-returns cap: volume above ``cap_usd`` counts at ``factor``.

    A cap of zero disables the cap entirely.
    """
    volume = max(0.0, _finite(volume_usd))
    if cap_usd <= 0:
        return volume
    return min(volume, cap_usd) + max(0.0, volume - cap_usd) * factor


def compute_points(
    volume_usd: float,
    lp_usd_crx_eth: float = 0.0,
    lp_usd_crx_usdm: float = 0.0,
    *,
    boost_enabled: bool = True,
    policy: ScoringPolicy | None = None,
) -> PointsBreakdown:
    """Compute the points breakdown for one wallet.

    Args:
        volume_usd: Cumulative swap volume in USD.
        lp_usd_crx_eth: USD value of CRX/ETH liquidity.
        lp_usd_crx_usdm: USD value of CRX/USDM liquidity.
        boost_enabled: False before the season starts; zeroes the LP bonus.
        policy: Scoring knobs, defaults to :class:`ScoringPolicy`.

    Returns:
        PointsBreakdown with total = base + bonus.
    """
    policy = policy or ScoringPolicy()

    raw_volume = max(0.0, _finite(volume_usd))
    effective = apply_volume_cap(raw_volume, policy.volume_cap_usd, policy.diminishing_factor)

    if policy.mode == ScoringMode.FEES:
        base_points = effective * policy.fee_bps / 10_000
    else:
        base_points = effective

    crx_eth = max(0.0, _finite(lp_usd_crx_eth))
    crx_usdm = max(0.0, _finite(lp_usd_crx_usdm))
    lp_usd = crx_eth + crx_usdm

    if boost_enabled:
        lp_points = LP_WEIGHT_CRX_ETH * crx_eth + LP_WEIGHT_CRX_USDM * crx_usdm
    else:
        lp_points = 0.0

    total = base_points + lp_points
    multiplier = total / base_points if base_points > 0 else 1.0

    return PointsBreakdown(
        raw_volume_usd=raw_volume,
        effective_volume_usd=effective,
        scoring_mode=policy.mode,
        fee_bps=policy.fee_bps,
        volume_cap_usd=policy.volume_cap_usd,
        diminishing_factor=policy.diminishing_factor,
        base_points=base_points,
        bonus_points=lp_points,
        total_points=total,
        lp_usd=lp_usd,
        lp_usd_crx_eth=crx_eth,
        lp_usd_crx_usdm=crx_usdm,
        lp_points=lp_points,
        multiplier=multiplier,
    )


def get_tier_multiplier(age_seconds: float | None) -> float:
    """Display multiplier for an LP position of the given age."""
    if age_seconds is None or not math.isfinite(age_seconds):
        return 1.0
    multiplier = 1.0
    for min_seconds, tier_multiplier in MULTIPLIER_TIERS:
        if age_seconds >= min_seconds:
            multiplier = tier_multiplier
    return multiplier
