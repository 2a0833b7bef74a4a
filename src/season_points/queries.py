"""Read paths over the leaderboard store.

PointsQueryService answers leaderboard, wallet, summary and claim questions
for one season. Leaderboard and wallet reads optionally ask the self-heal
watchdog to kick a re-ingestion when the stored snapshot looks stale.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

from redis.asyncio import Redis

from season_points.config import Settings, get_settings
from season_points.lp.models import normalize_address
from season_points.scoring.claims import (
    ClaimMessage,
    ClaimPayout,
    ClaimRequestExpiredError,
    ClaimState,
    RewardSnapshot,
    apply_payout,
    build_claim_message,
    compute_claim_payout,
    get_claim_state,
    is_claim_request_fresh,
    resolve_payable_reward,
)
from season_points.scoring.rewards import (
    RewardsConfig,
    RewardsTable,
    build_points_summary,
    compute_rewards_table,
    get_leaderboard_rewards_config,
)
from season_points.self_heal import SelfHealResult, SelfHealTrigger
from season_points.storage.leaderboard import LeaderboardStore, RedisLeaderboardStore
from season_points.storage.models import LeaderboardEntry, PointsSummary, WalletPointsRecord

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000


def _now_ms() -> int:
    return int(time.time() * 1000)


async def rebuild_points_summary(
    store: LeaderboardStore, settings: Settings, *, now_ms: int | None = None
) -> PointsSummary:
    """Recount the season summary from the full leaderboard and cache it."""
    now = now_ms if now_ms is not None else _now_ms()
    season_id = store.keys.season_id
    entries = await store.all_entries()
    positive = [e for e in entries if e.points > 0]
    summary = build_points_summary(
        season_id,
        len(positive),
        sum(e.points for e in positive),
        settings.scoring.to_policy(),
        get_leaderboard_rewards_config(settings, season_id),
        now,
    )
    await store.set_summary(summary)
    logger.debug(
        "Rebuilt summary for %s: %d wallets, %.2f points",
        season_id,
        summary.wallet_count,
        summary.total_points,
    )
    return summary


@dataclass
class LeaderboardPage:
    """One page of the ranked leaderboard."""

    season_id: str
    entries: list[LeaderboardEntry] = field(default_factory=list)
    offset: int = 0
    limit: int = DEFAULT_PAGE_SIZE
    total: int = 0
    updated_at: int | None = None
    self_heal: SelfHealResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "season_id": self.season_id,
            "entries": [
                {"address": e.address, "points": e.points, "rank": e.rank} for e in self.entries
            ],
            "offset": self.offset,
            "limit": self.limit,
            "total": self.total,
            "updated_at": self.updated_at,
            "self_heal": self.self_heal.to_dict() if self.self_heal else None,
        }


@dataclass
class WalletView:
    """A wallet's stored record with its live rank."""

    address: str
    record: WalletPointsRecord | None
    rank: int | None
    updated_at: int | None = None
    self_heal: SelfHealResult | None = None

    @property
    def found(self) -> bool:
        return self.record is not None


class PointsQueryService:
    """Season read API.

    Example:
        ```python
        store = RedisLeaderboardStore(redis, settings.season.season_id)
        queries = PointsQueryService(store, settings)
        page = await queries.get_leaderboard(limit=50)
        state = await queries.get_claim_state("0xabc...")
        ```
    """

    def __init__(
        self,
        store: LeaderboardStore,
        settings: Settings | None = None,
        *,
        self_heal: SelfHealTrigger | None = None,
    ) -> None:
        self._store = store
        self._settings = settings or get_settings()
        self._self_heal = self_heal

    @classmethod
    def from_redis(cls, redis: Redis, settings: Settings | None = None) -> PointsQueryService:
        """Query service for the configured season, with the self-heal watchdog wired in."""
        settings = settings or get_settings()
        heal = settings.self_heal
        trigger = SelfHealTrigger(
            redis,
            base_url=heal.api_base_url,
            token=heal.token_value,
            stale_ms=heal.stale_ms,
            cooldown_ms=heal.cooldown_ms,
            timeout_ms=heal.timeout_ms,
        )
        store = RedisLeaderboardStore(redis, settings.season.season_id)
        return cls(store, settings, self_heal=trigger)

    @property
    def season_id(self) -> str:
        return self._store.keys.season_id

    def rewards_config(self) -> RewardsConfig:
        return get_leaderboard_rewards_config(self._settings, self.season_id)

    async def _check_staleness(self, updated_at: int | None, reason: str) -> SelfHealResult | None:
        if self._self_heal is None:
            return None
        return await self._self_heal.maybe_trigger_self_heal(
            self.season_id, updated_at, reason=reason
        )

    async def get_leaderboard(
        self, limit: int = DEFAULT_PAGE_SIZE, offset: int = 0
    ) -> LeaderboardPage:
        limit = min(MAX_PAGE_SIZE, max(1, int(limit)))
        offset = max(0, int(offset))
        entries = await self._store.top_entries(limit, offset)
        updated_at = await self._store.get_updated_at()
        return LeaderboardPage(
            season_id=self.season_id,
            entries=entries,
            offset=offset,
            limit=limit,
            total=await self._store.wallet_count(),
            updated_at=updated_at,
            self_heal=await self._check_staleness(updated_at, "leaderboard"),
        )

    async def get_user(self, address: str) -> WalletView:
        """Stored record and live rank for ``address``.

        Raises:
            ValueError: If the address is empty.
        """
        wallet = normalize_address(address)
        if not wallet:
            raise ValueError("address is required")
        record = await self._store.read_record(wallet)
        rank = await self._store.get_rank(wallet) if record is not None else None
        updated_at = await self._store.get_updated_at()
        return WalletView(
            address=wallet,
            record=record,
            rank=rank,
            updated_at=updated_at,
            self_heal=await self._check_staleness(updated_at, "user"),
        )

    async def get_summary(self) -> PointsSummary:
        """Cached season summary, rebuilt from the leaderboard when missing."""
        summary = await self._store.get_summary()
        if summary is not None:
            return summary
        logger.info("Summary for %s missing, rebuilding", self.season_id)
        return await rebuild_points_summary(self._store, self._settings)

    async def preview_rewards(self, now_ms: int | None = None) -> RewardsTable:
        """Distribute the season reward over the current leaderboard."""
        now = now_ms if now_ms is not None else _now_ms()
        config = self.rewards_config()
        entries = await self._store.all_entries()
        records = await self._store.read_records([e.address for e in entries])
        attributes = {r.address: r.to_mapping() for r in records}
        return compute_rewards_table(entries, attributes, config.season_reward_crx, config, now)

    async def _payable_reward(
        self, wallet: str, now_ms: int
    ) -> tuple[float, RewardSnapshot | None]:
        snapshot = await self._store.get_reward_snapshot(wallet)
        if snapshot is not None and snapshot.is_pinned:
            return resolve_payable_reward(0.0, snapshot), snapshot
        table = await self.preview_rewards(now_ms)
        return resolve_payable_reward(table.reward_for(wallet), snapshot), snapshot

    async def get_claim_state(self, address: str, now_ms: int | None = None) -> ClaimState:
        """Claim state for a wallet.

        A wallet that has claimed before is held to its ledger snapshot; any
        other wallet is quoted from the live leaderboard.
        """
        wallet = normalize_address(address)
        if not wallet:
            raise ValueError("address is required")
        now = now_ms if now_ms is not None else _now_ms()
        total, snapshot = await self._payable_reward(wallet, now)
        return get_claim_state(total, snapshot, self.rewards_config(), now)

    def claim_message(self, address: str, now_ms: int | None = None) -> ClaimMessage:
        """Message a wallet signs to claim, issued now.

        Raises:
            ValueError: If the address is empty.
        """
        wallet = normalize_address(address)
        if not wallet:
            raise ValueError("address is required")
        issued_at = now_ms if now_ms is not None else _now_ms()
        return ClaimMessage(
            message=build_claim_message(wallet, self.season_id, issued_at),
            issued_at=issued_at,
            expires_at=issued_at + self.rewards_config().claim_signature_ttl_ms,
        )

    async def record_claim(
        self, address: str, now_ms: int | None = None, *, issued_at: int | None = None
    ) -> ClaimPayout:
        """Book a claim in the ledger and return what it paid.

        Nothing claimable returns a zero payout and leaves the ledger alone.
        When ``issued_at`` is given it must lie within the claim signature
        window of now.

        Raises:
            ValueError: If the address is empty.
            ClaimRequestExpiredError: ``issued_at`` is outside the window.
        """
        wallet = normalize_address(address)
        if not wallet:
            raise ValueError("address is required")
        now = now_ms if now_ms is not None else _now_ms()
        ttl_ms = self.rewards_config().claim_signature_ttl_ms
        if issued_at is not None and not is_claim_request_fresh(issued_at, now, ttl_ms):
            raise ClaimRequestExpiredError(
                f"claim request issued at {issued_at} is outside the {ttl_ms}ms window"
            )
        total, snapshot = await self._payable_reward(wallet, now)
        payout = compute_claim_payout(total, snapshot, self.rewards_config(), now)
        if payout.is_noop:
            logger.debug("Nothing claimable for %s (%s)", wallet, payout.state.status.value)
            return payout

        await self._store.set_reward_snapshot(
            apply_payout(
                snapshot,
                payout,
                address=wallet,
                season_id=self.season_id,
                total_reward_crx=total,
                now_ms=now,
            )
        )
        logger.info(
            "Recorded claim of %.6f CRX for %s in %s", payout.claim_total_crx, wallet, self.season_id
        )
        return payout
