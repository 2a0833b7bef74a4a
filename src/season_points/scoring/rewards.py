"""Season reward distribution.

Turns the ranked leaderboard into per-wallet CRX payouts:

1. The season pool is split into a top-100 pool (``top100_pool_pct``) and a
   base "others" pool (the remainder).
2. Each rank tier's share of the top-100 pool is divided evenly across its
   rank slots. A slot is paid only to an eligible wallet (minimum volume, not
   wash-flagged, finalization window elapsed when required).
3. Unpaid slot amounts become the unassigned pool, which joins the others pool
   and is split pro-rata by points among every positive-points wallet that did
   not receive a top-100 slot.
4. If nobody is left to receive the others pool, or ``top100_only`` is set, the
   remainder is recycled to the paid top-100 wallets in proportion to their
   tier awards.

Amounts are rounded to 6 decimals at each step; rounding dust goes to the best
ranked recipient so the table always sums to the season reward exactly.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from season_points.storage.models import (
    LeaderboardEntry,
    PointsSummary,
    decode_mapping,
    is_wash_flagged,
    to_float,
)

if TYPE_CHECKING:
    from season_points.config import Settings
    from season_points.scoring.points import ScoringPolicy

logger = logging.getLogger(__name__)

TOP100_RANK_LIMIT = 100
HOUR_MS = 60 * 60 * 1000

DEFAULT_TOTAL_SUPPLY_CRX = 1_000_000.0
DEFAULT_LEADERBOARD_REWARDS_PCT = 0.4
DEFAULT_SEASON_ALLOCATIONS_CRX: tuple[float, ...] = (
    120_000.0,
    90_000.0,
    70_000.0,
    50_000.0,
    40_000.0,
    30_000.0,
)
DEFAULT_TOP100_POOL_PCT = 0.5
DEFAULT_FINALIZATION_WINDOW_HOURS = 48.0
DEFAULT_CLAIM_SIGNATURE_TTL_MS = 10 * 60 * 1000


class RewardsConfigError(ValueError):
    """Raised for a malformed reward tier table or policy value."""


def round6(value: Any) -> float:
    """Round to 6 decimals; non-finite input becomes 0."""
    try:
        num = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(num):
        return 0.0
    return round(num * 1e6) / 1e6


@dataclass(frozen=True)
class RewardTier:
    """Contiguous rank range paid ``pct`` of the top-100 pool, split evenly."""

    start_rank: int
    end_rank: int
    pct: float

    def __post_init__(self) -> None:
        if self.start_rank < 1 or self.end_rank > TOP100_RANK_LIMIT:
            raise RewardsConfigError(
                f"Tier ranks must lie within 1-{TOP100_RANK_LIMIT}: {self.start_rank}-{self.end_rank}"
            )
        if self.end_rank < self.start_rank:
            raise RewardsConfigError(f"Tier end before start: {self.start_rank}-{self.end_rank}")
        if not 0 <= self.pct <= 1:
            raise RewardsConfigError(f"Tier pct must be between 0 and 1, got {self.pct}")

    @property
    def slots(self) -> int:
        return self.end_rank - self.start_rank + 1

    def ranks(self) -> range:
        return range(self.start_rank, self.end_rank + 1)


DEFAULT_TOP100_TIERS: tuple[RewardTier, ...] = (
    RewardTier(1, 1, 0.15),
    RewardTier(2, 2, 0.10),
    RewardTier(3, 3, 0.07),
    RewardTier(4, 10, 0.18),
    RewardTier(11, 25, 0.20),
    RewardTier(26, 50, 0.15),
    RewardTier(51, 100, 0.15),
)

_TIER_ITEM = re.compile(r"^\s*(\d+)\s*(?:-\s*(\d+))?\s*[:=]\s*([0-9.]+)\s*(%?)\s*$")


def parse_tier_table(raw: str | None) -> tuple[RewardTier, ...]:
    """Parse a tier table such as ``"1:15,2:10,3:7,4-10:18"``.

    Values above 1 (or suffixed with ``%``) are read as percentages. Tiers must
    not overlap and must sum to at most 100%. An empty string yields the
    default table.
    """
    text = (raw or "").strip()
    if not text:
        return DEFAULT_TOP100_TIERS

    tiers: list[RewardTier] = []
    for item in text.split(","):
        if not item.strip():
            continue
        match = _TIER_ITEM.match(item)
        if not match:
            raise RewardsConfigError(f"Malformed tier entry: {item!r}")
        start = int(match.group(1))
        end = int(match.group(2) or start)
        pct = float(match.group(3))
        if match.group(4) or pct > 1:
            pct /= 100
        tiers.append(RewardTier(start, end, pct))

    tiers.sort(key=lambda t: t.start_rank)
    for prev, cur in zip(tiers, tiers[1:]):
        if cur.start_rank <= prev.end_rank:
            raise RewardsConfigError(
                f"Overlapping tiers: {prev.start_rank}-{prev.end_rank} and {cur.start_rank}-{cur.end_rank}"
            )
    total = sum(t.pct for t in tiers)
    if total > 1 + 1e-9:
        raise RewardsConfigError(f"Tier percentages sum to {total:.4f}, above 100%")
    return tuple(tiers)


def parse_season_index(season_id: str | None) -> int | None:
    """First positive integer embedded in a season id ("season-3" -> 3)."""
    match = re.search(r"(\d+)", str(season_id or ""))
    if not match:
        return None
    idx = int(match.group(1))
    return idx if idx > 0 else None


def resolve_season_allocation(
    season_id: str | None,
    allocations: Sequence[float] | None = None,
    explicit_reward: float | None = None,
    season_index: int | None = None,
) -> float:
    """Reward pool for a season: explicit override, else the allocation list entry.

    Seasons past the end of the list reuse its last entry.
    """
    if explicit_reward is not None and math.isfinite(explicit_reward) and explicit_reward >= 0:
        return round6(explicit_reward)
    items = list(allocations) if allocations else list(DEFAULT_SEASON_ALLOCATIONS_CRX)
    index = season_index if season_index and season_index > 0 else parse_season_index(season_id)
    position = max(0, (index or 1) - 1)
    if position < len(items):
        return round6(items[position])
    return round6(items[-1]) if items else 0.0


@dataclass(frozen=True)
class RewardsConfig:
    """Reward policy, constant for a season."""

    season_id: str = ""
    season_reward_crx: float = 0.0
    top100_pool_pct: float = DEFAULT_TOP100_POOL_PCT
    top100_min_volume_usd: float | None = None
    top100_require_finalization: bool = True
    top100_tiers: tuple[RewardTier, ...] = DEFAULT_TOP100_TIERS
    top100_only: bool = False
    season_end_ms: int | None = None
    finalization_window_hours: float = DEFAULT_FINALIZATION_WINDOW_HOURS
    claim_opens_at_ms: int | None = None
    total_supply_crx: float = DEFAULT_TOTAL_SUPPLY_CRX
    leaderboard_rewards_pct: float = DEFAULT_LEADERBOARD_REWARDS_PCT
    season_allocations_crx: tuple[float, ...] = DEFAULT_SEASON_ALLOCATIONS_CRX
    claim_signature_ttl_ms: int = DEFAULT_CLAIM_SIGNATURE_TTL_MS

    def __post_init__(self) -> None:
        if not 0 <= self.top100_pool_pct <= 1:
            raise RewardsConfigError(
                f"top100_pool_pct must be between 0 and 1, got {self.top100_pool_pct}"
            )
        if self.top100_min_volume_usd is not None and self.top100_min_volume_usd < 0:
            raise RewardsConfigError("top100_min_volume_usd must be non-negative")

    @property
    def leaderboard_rewards_total_crx(self) -> float:
        return round6(self.total_supply_crx * self.leaderboard_rewards_pct)

    @property
    def finalization_ends_at_ms(self) -> int | None:
        if self.season_end_ms is None:
            return None
        return int(self.season_end_ms + self.finalization_window_hours * HOUR_MS)

    def is_finalized(self, now_ms: int) -> bool:
        """True when top-100 payouts may be confirmed at ``now_ms``.

        With finalization required and no known season end, the season is
        never considered final.
        """
        if not self.top100_require_finalization:
            return True
        ends_at = self.finalization_ends_at_ms
        return ends_at is not None and now_ms >= ends_at

    def is_claim_open(self, now_ms: int) -> bool:
        return self.claim_opens_at_ms is not None and now_ms >= self.claim_opens_at_ms


def get_leaderboard_rewards_config(
    settings: Settings, season_id: str | None = None
) -> RewardsConfig:
    """Build the season's reward policy from settings.

    The claim window opens ``finalization_window_hours`` after season end
    unless an explicit opening time is configured.
    """
    rewards = settings.rewards
    season = settings.season
    target_season = season_id or season.season_id
    window_hours = min(168.0, max(0.0, rewards.finalization_window_hours))

    claim_opens_at = rewards.claim_opens_at_ms
    if claim_opens_at is None and season.end_ms is not None:
        claim_opens_at = int(season.end_ms + window_hours * HOUR_MS)

    allocations = tuple(rewards.season_allocations_crx) or DEFAULT_SEASON_ALLOCATIONS_CRX
    season_reward = resolve_season_allocation(
        target_season,
        allocations,
        explicit_reward=rewards.season_reward_crx,
        season_index=rewards.season_index,
    )

    return RewardsConfig(
        season_id=target_season,
        season_reward_crx=season_reward,
        top100_pool_pct=rewards.top100_pool_pct,
        top100_min_volume_usd=rewards.top100_min_volume_usd,
        top100_require_finalization=rewards.top100_require_finalization,
        top100_tiers=parse_tier_table(rewards.top100_tiers),
        top100_only=rewards.top100_only,
        season_end_ms=season.end_ms,
        finalization_window_hours=window_hours,
        claim_opens_at_ms=claim_opens_at,
        total_supply_crx=rewards.total_supply_crx,
        leaderboard_rewards_pct=rewards.leaderboard_rewards_pct,
        season_allocations_crx=allocations,
        claim_signature_ttl_ms=rewards.claim_signature_ttl_ms,
    )


@dataclass
class RewardsTable:
    """Result of one distribution run."""

    rewards_by_address: dict[str, float] = field(default_factory=dict)
    season_reward_crx: float = 0.0
    top100_pool_crx: float = 0.0
    base_others_pool_crx: float = 0.0
    top100_assigned_crx: float = 0.0
    top100_unassigned_crx: float = 0.0
    effective_others_pool_crx: float = 0.0
    recycled_to_top100_crx: float = 0.0
    undistributed_crx: float = 0.0
    top100_eligible_count: int = 0
    others_recipient_count: int = 0
    finalized: bool = False

    def reward_for(self, address: str) -> float:
        return self.rewards_by_address.get(address.lower(), 0.0)

    @property
    def total_distributed_crx(self) -> float:
        return round6(sum(self.rewards_by_address.values()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "season_reward_crx": self.season_reward_crx,
            "top100_pool_crx": self.top100_pool_crx,
            "base_others_pool_crx": self.base_others_pool_crx,
            "top100_assigned_crx": self.top100_assigned_crx,
            "top100_unassigned_crx": self.top100_unassigned_crx,
            "effective_others_pool_crx": self.effective_others_pool_crx,
            "recycled_to_top100_crx": self.recycled_to_top100_crx,
            "undistributed_crx": self.undistributed_crx,
            "top100_eligible_count": self.top100_eligible_count,
            "others_recipient_count": self.others_recipient_count,
            "finalized": self.finalized,
            "recipients": len(self.rewards_by_address),
        }


def _wallet_volume(attributes: Mapping[str, Any]) -> float:
    for name in ("volume_usd", "volumeUsd"):
        if name in attributes:
            return max(0.0, to_float(attributes.get(name)))
    return 0.0


def is_top100_eligible(
    attributes: Mapping[str, Any] | None,
    config: RewardsConfig,
    finalized: bool,
) -> bool:
    """Whether a wallet may receive a top-100 tier slot.

    Minimum volume: ``None`` requires some swap volume, ``0`` admits every
    wallet, a positive value requires at least that much.
    """
    if not finalized:
        return False
    row = decode_mapping(attributes) if attributes else {}
    if is_wash_flagged(row):
        return False
    volume = _wallet_volume(row)
    minimum = config.top100_min_volume_usd
    if minimum is None:
        return volume > 0
    if minimum == 0:
        return True
    return volume >= minimum


def _distribute_pro_rata(
    pool: float, weights: Sequence[tuple[str, float]]
) -> dict[str, float]:
    total = sum(w for _, w in weights)
    if pool <= 0 or total <= 0:
        return {}
    return {address: round6(pool * weight / total) for address, weight in weights if weight > 0}


def compute_rewards_table(
    ranked_entries: Sequence[LeaderboardEntry],
    wallet_attributes: Mapping[str, Mapping[str, Any]],
    season_reward_crx: float,
    config: RewardsConfig,
    now_ms: int,
) -> RewardsTable:
    """Compute per-wallet rewards for the current leaderboard snapshot.

    Args:
        ranked_entries: Leaderboard rows; rank is the 1-based store position.
        wallet_attributes: Stored wallet rows keyed by lower-cased address.
        season_reward_crx: Total CRX to distribute.
        config: Reward policy.
        now_ms: Evaluation time for the finalization gate.

    Returns:
        RewardsTable whose rewards sum to ``season_reward_crx`` (to 6 decimals)
        whenever at least one wallet can receive a reward.
    """
    season_reward = round6(max(0.0, season_reward_crx))
    if config.top100_only:
        top_pool = season_reward
        base_others = 0.0
    else:
        top_pool = round6(season_reward * config.top100_pool_pct)
        base_others = round6(season_reward - top_pool)

    finalized = config.is_finalized(now_ms)

    entries: list[LeaderboardEntry] = []
    seen: set[str] = set()
    for entry in sorted(ranked_entries, key=lambda e: e.rank):
        address = entry.address.lower()
        if not address or address in seen:
            continue
        seen.add(address)
        entries.append(LeaderboardEntry(address=address, points=entry.points, rank=entry.rank))

    by_rank = {e.rank: e for e in entries if 1 <= e.rank <= TOP100_RANK_LIMIT}

    top_awards: dict[str, float] = {}
    unassigned = 0.0
    tier_total = 0.0
    for tier in config.top100_tiers:
        tier_amount = round6(top_pool * tier.pct)
        tier_total = round6(tier_total + tier_amount)
        per_slot = round6(tier_amount / tier.slots)
        for rank in tier.ranks():
            entry = by_rank.get(rank)
            if (
                entry is not None
                and entry.points > 0
                and is_top100_eligible(wallet_attributes.get(entry.address), config, finalized)
            ):
                top_awards[entry.address] = round6(top_awards.get(entry.address, 0.0) + per_slot)
            else:
                unassigned = round6(unassigned + per_slot)
    # Pool share not covered by any tier is unassigned too.
    unassigned = round6(unassigned + max(0.0, top_pool - tier_total))

    top_assigned = round6(sum(top_awards.values()))
    effective_others = round6(base_others + unassigned)

    others = [(e.address, e.points) for e in entries if e.points > 0 and e.address not in top_awards]
    others_awards: dict[str, float] = {}
    recycled = 0.0
    if config.top100_only or not others:
        if top_awards and effective_others > 0:
            recycled = effective_others
            bonus = _distribute_pro_rata(recycled, list(top_awards.items()))
            for address, amount in bonus.items():
                top_awards[address] = round6(top_awards[address] + amount)
        reported_unassigned = 0.0 if recycled else unassigned
        reported_others = 0.0 if recycled or config.top100_only else effective_others
    else:
        others_awards = _distribute_pro_rata(effective_others, others)
        reported_unassigned = unassigned
        reported_others = effective_others

    rewards: dict[str, float] = {}
    for address, amount in list(top_awards.items()) + list(others_awards.items()):
        if amount > 0:
            rewards[address] = round6(rewards.get(address, 0.0) + amount)

    distributed = round6(sum(rewards.values()))
    undistributed = 0.0
    if rewards:
        dust = round6(season_reward - distributed)
        if dust:
            rank_of = {e.address: e.rank for e in entries}
            best = min(rewards, key=lambda a: rank_of[a])
            rewards[best] = round6(rewards[best] + dust)
    else:
        undistributed = season_reward
        if season_reward > 0 and entries:
            logger.warning(
                "No eligible reward recipients among %d entries; %.6f CRX undistributed",
                len(entries),
                season_reward,
            )

    return RewardsTable(
        rewards_by_address=rewards,
        season_reward_crx=season_reward,
        top100_pool_crx=top_pool,
        base_others_pool_crx=base_others,
        top100_assigned_crx=top_assigned,
        top100_unassigned_crx=reported_unassigned,
        effective_others_pool_crx=reported_others,
        recycled_to_top100_crx=round6(recycled),
        undistributed_crx=undistributed,
        top100_eligible_count=len(top_awards),
        others_recipient_count=len(others_awards),
        finalized=finalized,
    )


def build_points_summary(
    season_id: str,
    wallet_count: int,
    total_points: float,
    policy: ScoringPolicy | None,
    config: RewardsConfig,
    now_ms: int,
) -> PointsSummary:
    """Season summary row echoing the scoring policy and claim window."""
    return PointsSummary(
        season_id=season_id or config.season_id,
        wallet_count=max(0, int(wallet_count)),
        total_points=round6(total_points),
        season_reward_crx=round6(config.season_reward_crx),
        immediate_pct=1.0,
        stream_days=0,
        claim_opens_at=config.claim_opens_at_ms,
        claim_open=config.is_claim_open(now_ms),
        scoring_mode=policy.mode.value if policy else "",
        scoring_fee_bps=max(0.0, policy.fee_bps) if policy else 0.0,
        volume_cap_usd=max(0.0, round6(policy.volume_cap_usd)) if policy else 0.0,
        diminishing_factor=max(0.0, round6(policy.diminishing_factor)) if policy else 0.0,
        updated_at=now_ms,
    )
