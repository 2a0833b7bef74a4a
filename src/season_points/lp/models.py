"""Data models for liquidity-position valuation.

Positions arrive either from the indexed LP-position feed (``FeedPosition``) or
from direct contract reads (``ChainPosition``). Both are normalized at the
boundary into the canonical ``LpPosition`` before any math runs on them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from season_points.lp.tick_math import tick_to_sqrt_price_x96

# Canonical mainnet addresses. Matched in addition to whatever the environment
# configures so a mistyped env value cannot silently drop boosted pairs.
CANONICAL_CRX_ADDRESS = "0xbd5e387fa453cebf03b1a6a9dfe2a828b93aa95b"
CANONICAL_WETH_ADDRESS = "0x4200000000000000000000000000000000000006"
CANONICAL_USDM_ADDRESS = "0xfafddbb3fc7688494971a79cc65dca3ef82079e7"

DEFAULT_DECIMALS = 18


def normalize_address(value: object) -> str:
    """Lower-cased, stripped address string ("" for empty input)."""
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value).strip().lower()


class BoostPair(str, Enum):
    """Liquidity pairs that earn LP bonus points."""

    CRX_ETH = "crx_eth"
    CRX_USDM = "crx_usdm"


class PositionSource(str, Enum):
    FEED = "feed"
    CHAIN = "chain"
    NONE = "none"
    STORED = "stored"


@dataclass(frozen=True)
class AddressConfig:
    """Platform token addresses used for pair classification and pricing."""

    crx: str = CANONICAL_CRX_ADDRESS
    weth: str = CANONICAL_WETH_ADDRESS
    usdm: str = CANONICAL_USDM_ADDRESS

    def __post_init__(self) -> None:
        object.__setattr__(self, "crx", normalize_address(self.crx))
        object.__setattr__(self, "weth", normalize_address(self.weth))
        object.__setattr__(self, "usdm", normalize_address(self.usdm))

    def _candidates(self, configured: str, canonical: str) -> set[str]:
        return {a for a in (configured, canonical) if a}

    def is_crx(self, address: object) -> bool:
        return normalize_address(address) in self._candidates(self.crx, CANONICAL_CRX_ADDRESS)

    def is_weth(self, address: object) -> bool:
        return normalize_address(address) in self._candidates(self.weth, CANONICAL_WETH_ADDRESS)

    def is_usdm(self, address: object) -> bool:
        return normalize_address(address) in self._candidates(self.usdm, CANONICAL_USDM_ADDRESS)

    def classify_pair(self, token0: object, token1: object) -> BoostPair | None:
        """Return the boosted-pair bucket for a token pair, if any."""
        a = normalize_address(token0)
        b = normalize_address(token1)
        if not a or not b:
            return None
        if self.is_crx(a):
            other = b
        elif self.is_crx(b):
            other = a
        else:
            return None
        if self.is_usdm(other):
            return BoostPair.CRX_USDM
        if self.is_weth(other):
            return BoostPair.CRX_ETH
        return None

    @property
    def tracked_tokens(self) -> list[str]:
        return [a for a in (self.crx, self.weth, self.usdm) if a]


def _to_int(value: Any, default: int | None = None) -> int | None:
    if value is None or value == "":
        return default
    try:
        return int(str(value), 0) if isinstance(value, str) and value.startswith("0x") else int(value)
    except (TypeError, ValueError):
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return default


@dataclass(frozen=True)
class LpPosition:
    """Canonical position shape consumed by the valuation math."""

    token0: str
    token1: str
    tick_lower: int
    tick_upper: int
    liquidity: int
    fee: int | None = None
    pool_tick: int | None = None
    pool_sqrt_price_x96: int | None = None
    decimals0: int = DEFAULT_DECIMALS
    decimals1: int = DEFAULT_DECIMALS
    created_at: int | None = None
    token_id: str | None = None
    source: PositionSource = PositionSource.FEED
    pool_state_estimated: bool = False

    @property
    def has_pool_price(self) -> bool:
        return self.pool_sqrt_price_x96 is not None or self.pool_tick is not None

    def current_sqrt_price_x96(self) -> int | None:
        if self.pool_sqrt_price_x96:
            return self.pool_sqrt_price_x96
        if self.pool_tick is not None:
            return tick_to_sqrt_price_x96(self.pool_tick)
        return None


@dataclass(frozen=True)
class FeedPosition:
    """Raw position row from the indexed LP-position feed."""

    raw: dict[str, Any]

    @staticmethod
    def _nested(raw: dict[str, Any], key: str, inner: str) -> Any:
        value = raw.get(key)
        if isinstance(value, dict):
            return value.get(inner)
        return value

    def to_lp_position(self) -> LpPosition:
        raw = self.raw
        pool = raw.get("pool") if isinstance(raw.get("pool"), dict) else {}
        token0 = raw.get("token0") if isinstance(raw.get("token0"), dict) else {}
        token1 = raw.get("token1") if isinstance(raw.get("token1"), dict) else {}
        tx = raw.get("transaction") if isinstance(raw.get("transaction"), dict) else {}

        created_at = _to_int(raw.get("createdAtTimestamp")) or _to_int(tx.get("timestamp"))
        return LpPosition(
            token0=normalize_address(self._nested(raw, "token0", "id")),
            token1=normalize_address(self._nested(raw, "token1", "id")),
            tick_lower=_to_int(self._nested(raw, "tickLower", "tickIdx"), 0) or 0,
            tick_upper=_to_int(self._nested(raw, "tickUpper", "tickIdx"), 0) or 0,
            liquidity=_to_int(raw.get("liquidity"), 0) or 0,
            fee=_to_int(pool.get("feeTier")),
            pool_tick=_to_int(pool.get("tick")),
            pool_sqrt_price_x96=_to_int(pool.get("sqrtPrice") or pool.get("sqrtPriceX96")) or None,
            decimals0=_to_int(token0.get("decimals"), DEFAULT_DECIMALS) or DEFAULT_DECIMALS,
            decimals1=_to_int(token1.get("decimals"), DEFAULT_DECIMALS) or DEFAULT_DECIMALS,
            created_at=created_at if created_at and created_at > 0 else None,
            token_id=str(raw.get("id")) if raw.get("id") is not None else None,
            source=PositionSource.FEED,
        )


@dataclass(frozen=True)
class ChainPosition:
    """Position tuple read from the position-manager contract."""

    token_id: int
    token0: str
    token1: str
    fee: int
    tick_lower: int
    tick_upper: int
    liquidity: int
    pool_tick: int | None = None
    pool_sqrt_price_x96: int | None = None
    decimals0: int = DEFAULT_DECIMALS
    decimals1: int = DEFAULT_DECIMALS
    staked: bool = False

    def to_lp_position(self) -> LpPosition:
        estimated = self.pool_tick is None and self.pool_sqrt_price_x96 is None
        pool_tick = self.pool_tick
        if estimated:
            # No pool state: assume the price sits at the middle of the range.
            pool_tick = (self.tick_lower + self.tick_upper) // 2
        return LpPosition(
            token0=normalize_address(self.token0),
            token1=normalize_address(self.token1),
            tick_lower=self.tick_lower,
            tick_upper=self.tick_upper,
            liquidity=self.liquidity,
            fee=self.fee,
            pool_tick=pool_tick,
            pool_sqrt_price_x96=self.pool_sqrt_price_x96,
            decimals0=self.decimals0,
            decimals1=self.decimals1,
            token_id=str(self.token_id),
            source=PositionSource.CHAIN,
            pool_state_estimated=estimated,
        )


@dataclass(frozen=True)
class OnchainPositions:
    positions: list[LpPosition] = field(default_factory=list)
    lp_age_seconds: int | None = None
    staked_token_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class LpData:
    """Per-wallet LP valuation result."""

    lp_usd: float = 0.0
    lp_usd_crx_eth: float = 0.0
    lp_usd_crx_usdm: float = 0.0
    has_boost_lp: bool = False
    lp_age_seconds: int | None = None
    base_multiplier: float = 1.0
    lp_in_range_pct: float = 0.0
    has_range_data: bool = False
    has_in_range: bool = False
    missing_price: bool = False
    position_count: int = 0
    source: PositionSource = PositionSource.NONE

    @classmethod
    def empty(cls) -> "LpData":
        return cls()

    @property
    def used_chain_fallback(self) -> bool:
        return self.source == PositionSource.CHAIN

    def to_dict(self) -> dict[str, object]:
        return {
            "lp_usd": self.lp_usd,
            "lp_usd_crx_eth": self.lp_usd_crx_eth,
            "lp_usd_crx_usdm": self.lp_usd_crx_usdm,
            "has_boost_lp": self.has_boost_lp,
            "lp_age_seconds": self.lp_age_seconds,
            "base_multiplier": self.base_multiplier,
            "lp_in_range_pct": self.lp_in_range_pct,
            "has_range_data": self.has_range_data,
            "has_in_range": self.has_in_range,
            "missing_price": self.missing_price,
            "position_count": self.position_count,
            "source": self.source.value,
        }
