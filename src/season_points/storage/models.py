"""Records persisted in the leaderboard store.

Redis hashes hold flat string values, so every record here knows how to
flatten itself (``to_mapping``) and how to parse a raw ``HGETALL`` result
(``from_mapping``), tolerating bytes keys/values and missing fields.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, fields
from typing import Any, Mapping

TRUTHY_FLAG_VALUES = frozenset({"1", "true", "yes", "on", "y"})

# Field names under which an external moderation tool may mark wash trading.
WASH_FLAG_FIELDS = (
    "wash_flag",
    "washFlag",
    "is_wash",
    "isWash",
    "wash",
    "washTrading",
    "wash_trading",
)


def decode_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode()
    return value


def decode_mapping(raw: Mapping[Any, Any] | None) -> dict[str, Any]:
    """Decode a raw Redis hash into a ``str -> str`` dict."""
    if not raw:
        return {}
    return {str(decode_value(k)): decode_value(v) for k, v in raw.items()}


def to_float(value: Any, default: float = 0.0) -> float:
    try:
        num = float(decode_value(value))
    except (TypeError, ValueError):
        return default
    return num if math.isfinite(num) else default


def to_optional_float(value: Any) -> float | None:
    value = decode_value(value)
    if value is None or value == "":
        return None
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) else None


def to_optional_int(value: Any) -> int | None:
    num = to_optional_float(value)
    return int(num) if num is not None else None


def to_flag(value: Any) -> bool:
    """Parse a boolean/numeric flag in any of the encodings seen in stored rows."""
    value = decode_value(value)
    if value is None or isinstance(value, bool):
        return bool(value)
    if isinstance(value, (int, float)):
        return math.isfinite(value) and value != 0
    text = str(value).strip().lower()
    if text in TRUTHY_FLAG_VALUES:
        return True
    try:
        num = float(text)
    except ValueError:
        return False
    return math.isfinite(num) and num != 0


def is_wash_flagged(attributes: Mapping[str, Any] | None) -> bool:
    """True when any recognized wash-trading marker is set on a wallet row."""
    if not attributes:
        return False
    return any(to_flag(attributes.get(name)) for name in WASH_FLAG_FIELDS)


def _encode(value: Any) -> str | int | float:
    if value is None:
        return ""
    if isinstance(value, bool):
        return 1 if value else 0
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


@dataclass
class WalletPointsRecord:
    """Per-wallet points record, fully overwritten on every pass."""

    address: str
    volume_usd: float = 0.0
    raw_volume_usd: float = 0.0
    effective_volume_usd: float = 0.0
    scoring_mode: str = ""
    scoring_fee_bps: float = 0.0
    volume_cap_usd: float = 0.0
    diminishing_factor: float = 0.0
    points: float = 0.0
    base_points: float = 0.0
    bonus_points: float = 0.0
    lp_usd: float = 0.0
    lp_usd_crx_eth: float = 0.0
    lp_usd_crx_usdm: float = 0.0
    lp_points: float = 0.0
    multiplier: float = 1.0
    base_multiplier: float = 1.0
    lp_in_range_pct: float = 0.0
    has_boost_lp: bool = False
    has_range_data: bool = False
    has_in_range: bool = False
    lp_age_seconds: int | None = None
    lp_source: str = ""
    missing_price: bool = False
    wash_flag: bool = False
    rank: int | None = None
    snapshot_24h_points: float | None = None
    snapshot_24h_rank: int | None = None
    snapshot_24h_at: int | None = None
    updated_at: int | None = None

    def to_mapping(self) -> dict[str, str | int | float]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_mapping(cls, address: str, raw: Mapping[Any, Any] | None) -> WalletPointsRecord:
        row = decode_mapping(raw)
        return cls(
            address=str(row.get("address") or address).lower(),
            volume_usd=to_float(row.get("volume_usd")),
            raw_volume_usd=to_float(row.get("raw_volume_usd")),
            effective_volume_usd=to_float(row.get("effective_volume_usd")),
            scoring_mode=str(row.get("scoring_mode") or ""),
            scoring_fee_bps=to_float(row.get("scoring_fee_bps")),
            volume_cap_usd=to_float(row.get("volume_cap_usd")),
            diminishing_factor=to_float(row.get("diminishing_factor")),
            points=to_float(row.get("points")),
            base_points=to_float(row.get("base_points")),
            bonus_points=to_float(row.get("bonus_points")),
            lp_usd=to_float(row.get("lp_usd")),
            lp_usd_crx_eth=to_float(row.get("lp_usd_crx_eth")),
            lp_usd_crx_usdm=to_float(row.get("lp_usd_crx_usdm")),
            lp_points=to_float(row.get("lp_points")),
            multiplier=to_float(row.get("multiplier"), 1.0),
            base_multiplier=to_float(row.get("base_multiplier"), 1.0),
            lp_in_range_pct=to_float(row.get("lp_in_range_pct")),
            has_boost_lp=to_flag(row.get("has_boost_lp")),
            has_range_data=to_flag(row.get("has_range_data")),
            has_in_range=to_flag(row.get("has_in_range")),
            lp_age_seconds=to_optional_int(row.get("lp_age_seconds")),
            lp_source=str(row.get("lp_source") or ""),
            missing_price=to_flag(row.get("missing_price")),
            wash_flag=is_wash_flagged(row),
            rank=to_optional_int(row.get("rank")),
            snapshot_24h_points=to_optional_float(row.get("snapshot_24h_points")),
            snapshot_24h_rank=to_optional_int(row.get("snapshot_24h_rank")),
            snapshot_24h_at=to_optional_int(row.get("snapshot_24h_at")),
            updated_at=to_optional_int(row.get("updated_at")),
        )


@dataclass(frozen=True)
class LeaderboardEntry:
    """One row of the ranked set. Rank is 1-based."""

    address: str
    points: float
    rank: int


@dataclass
class PointsSummary:
    """Season-level aggregate, safe to rebuild from the leaderboard at any time."""

    season_id: str
    wallet_count: int = 0
    total_points: float = 0.0
    season_reward_crx: float = 0.0
    immediate_pct: float = 1.0
    stream_days: int = 0
    claim_opens_at: int | None = None
    claim_open: bool = False
    scoring_mode: str = ""
    scoring_fee_bps: float = 0.0
    volume_cap_usd: float = 0.0
    diminishing_factor: float = 0.0
    updated_at: int | None = None

    def to_mapping(self) -> dict[str, str | int | float]:
        return {f.name: _encode(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_mapping(cls, raw: Mapping[Any, Any] | None) -> PointsSummary | None:
        row = decode_mapping(raw)
        if not row:
            return None
        return cls(
            season_id=str(row.get("season_id") or ""),
            wallet_count=int(to_float(row.get("wallet_count"))),
            total_points=to_float(row.get("total_points")),
            season_reward_crx=to_float(row.get("season_reward_crx")),
            immediate_pct=to_float(row.get("immediate_pct"), 1.0),
            stream_days=int(to_float(row.get("stream_days"))),
            claim_opens_at=to_optional_int(row.get("claim_opens_at")),
            claim_open=to_flag(row.get("claim_open")),
            scoring_mode=str(row.get("scoring_mode") or ""),
            scoring_fee_bps=to_float(row.get("scoring_fee_bps")),
            volume_cap_usd=to_float(row.get("volume_cap_usd")),
            diminishing_factor=to_float(row.get("diminishing_factor")),
            updated_at=to_optional_int(row.get("updated_at")),
        )
