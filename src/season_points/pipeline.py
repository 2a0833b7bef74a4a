"""Ingestion and recalc orchestration for the season points engine.

This module provides the IngestionPipeline class that wires together the
swap feed, LP valuation, scoring and the leaderboard store, plus the
scheduled jobs cycle that chains ingestion and recalc sweeps.

Pipeline flow:
    Swap feeds (v2, v3) → volume deltas → LP valuation (bounded pool)
    → ScoringEngine → LeaderboardStore (records, cursors, updatedAt) → ranks
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from redis.asyncio import Redis

from season_points.config import SeasonSettings, Settings, get_settings
from season_points.feeds.graph_client import FeedError, GraphClient
from season_points.feeds.positions import PositionFeed
from season_points.feeds.prices import PriceOracle, PriceOracleError
from season_points.feeds.swaps import SourceIngestResult, SwapSource, ingest_source
from season_points.lp.chain import ChainReader, Web3ClientRegistry
from season_points.lp.models import AddressConfig, LpData, PositionSource, normalize_address
from season_points.lp.valuation import LpValuator
from season_points.queries import rebuild_points_summary
from season_points.scoring.points import compute_points
from season_points.self_heal import acquire_lock, release_lock
from season_points.storage.leaderboard import RedisLeaderboardStore
from season_points.storage.models import WalletPointsRecord, decode_value, to_optional_int

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DAY_MS = 24 * 60 * 60 * 1000
DEFAULT_CONCURRENCY = 4
DEFAULT_PRIORITY_RANK_LIMIT = 100
MAX_PRIORITY_RANK_LIMIT = 5000
DEFAULT_RECALC_LIMIT = 250
MAX_RECALC_LIMIT = 1000
DEFAULT_LP_FALLBACK_WARN_RATIO = 0.35
DEFAULT_LP_FALLBACK_WARN_MIN_PROCESSED = 10
DEFAULT_LP_BASE_TIMEOUT_SECONDS = 10.0
DEFAULT_LP_PRIORITY_TIMEOUT_SECONDS = 20.0
MIN_LP_TIMEOUT_SECONDS = 1.0
MAX_LP_TIMEOUT_SECONDS = 60.0

JOBS_LOCK_TTL_SECONDS = 8 * 60
JOBS_LOCK_RETRIES = 2
JOBS_LOCK_RETRY_DELAY = 0.25
LP_FALLBACK_ALERT_TTL_SECONDS = 24 * 60 * 60


def _now_ms() -> int:
    return int(time.time() * 1000)


async def run_with_concurrency(
    items: Sequence[T],
    limit: int,
    fn: Callable[[T, int], Awaitable[R]],
) -> list[R]:
    """Run ``fn(item, index)`` over ``items`` with at most ``limit`` in flight.

    Workers pull the next index from a shared counter. Results keep the input
    order, not completion order.
    """
    results: list[Any] = [None] * len(items)
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < len(items):
            index = next_index
            next_index += 1
            results[index] = await fn(items[index], index)

    workers = max(1, min(int(limit or 1), len(items)))
    if items:
        await asyncio.gather(*(worker() for _ in range(workers)))
    return results


@dataclass(frozen=True)
class LpRecalcPolicy:
    """How much LP work a recalc should spend on one wallet."""

    rank: int | None
    lp_candidate: bool
    is_priority_rank: bool
    should_refresh_lp: bool
    allow_onchain: bool


def resolve_lp_recalc_policy(
    record: WalletPointsRecord,
    *,
    fast_mode: bool,
    priority_rank_limit: int = DEFAULT_PRIORITY_RANK_LIMIT,
) -> LpRecalcPolicy:
    """Decide LP refresh and on-chain fallback for a stored wallet.

    Fast mode refreshes only likely LP wallets and priority ranks. On-chain
    reads are reserved for the same two groups in every mode.
    """
    rank = record.rank if record.rank and record.rank > 0 else None
    lp_candidate = (
        record.has_boost_lp
        or record.lp_usd > 0
        or record.lp_usd_crx_eth > 0
        or record.lp_usd_crx_usdm > 0
    )
    limit = min(MAX_PRIORITY_RANK_LIMIT, max(1, int(priority_rank_limit)))
    is_priority = rank is not None and rank <= limit
    return LpRecalcPolicy(
        rank=rank,
        lp_candidate=lp_candidate,
        is_priority_rank=is_priority,
        should_refresh_lp=not fast_mode or lp_candidate or is_priority,
        allow_onchain=lp_candidate or is_priority,
    )


@dataclass(frozen=True)
class LpFallbackSummary:
    """Share of valuations that had to fall back to chain reads."""

    processed: int
    fallback_count: int
    fallback_rate: float
    warning: bool
    warn_ratio: float
    min_processed: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "fallback_count": self.fallback_count,
            "fallback_rate": self.fallback_rate,
            "warning": self.warning,
            "warn_ratio": self.warn_ratio,
            "min_processed": self.min_processed,
        }


def summarize_lp_fallback(
    processed: int,
    fallback_count: int,
    *,
    warn_ratio: float = DEFAULT_LP_FALLBACK_WARN_RATIO,
    min_processed: int = DEFAULT_LP_FALLBACK_WARN_MIN_PROCESSED,
) -> LpFallbackSummary:
    """Flag a pass where the feed looked stale for too many wallets."""
    processed = max(0, int(processed))
    fallback = max(0, int(fallback_count))
    warn_ratio = min(1.0, max(0.0, float(warn_ratio)))
    min_processed = max(1, int(min_processed))

    bounded = min(fallback, processed or fallback)
    if processed > 0:
        rate = bounded / processed
    else:
        rate = 1.0 if bounded > 0 else 0.0
    return LpFallbackSummary(
        processed=processed,
        fallback_count=bounded,
        fallback_rate=rate,
        warning=processed >= min_processed and rate >= warn_ratio,
        warn_ratio=warn_ratio,
        min_processed=min_processed,
    )


def roll_snapshot_24h(
    existing: WalletPointsRecord, now_ms: int
) -> tuple[float | None, int | None, int | None]:
    """24h momentum snapshot (points, rank, at) for the record being written.

    The snapshot captures the wallet's previous points and rank once a day.
    A brand new wallet starts from zero.
    """
    at = existing.snapshot_24h_at
    if at is not None and now_ms - at < DAY_MS:
        return existing.snapshot_24h_points, existing.snapshot_24h_rank, at
    if existing.updated_at is None:
        return 0.0, None, now_ms
    return existing.points, existing.rank, now_ms


def stored_lp_data(record: WalletPointsRecord) -> LpData:
    """LP values as last persisted, for wallets that are not re-valued."""
    return LpData(
        lp_usd=record.lp_usd,
        lp_usd_crx_eth=record.lp_usd_crx_eth,
        lp_usd_crx_usdm=record.lp_usd_crx_usdm,
        has_boost_lp=record.has_boost_lp,
        lp_age_seconds=record.lp_age_seconds,
        base_multiplier=record.base_multiplier,
        lp_in_range_pct=record.lp_in_range_pct,
        has_range_data=record.has_range_data,
        has_in_range=record.has_in_range,
        missing_price=record.missing_price,
        source=PositionSource.STORED,
    )


def normalize_cursor(value: object) -> int:
    """Stored recalc cursor as a non-negative wallet index.

    Anything above 1e12 is a millisecond value written by mistake and is
    scaled down by 1000.
    """
    try:
        num = float(decode_value(value))
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(num) or num < 0:
        return 0
    if num > 1e12:
        num //= 1000
    return int(num)


def should_run_periodic_task(
    *,
    enabled: bool,
    now_ms: int,
    last_run_at_ms: int | None,
    interval_ms: int,
) -> bool:
    """True when a periodic task is due.

    A zero interval means every run. A missing or future last-run time makes
    the task due immediately.
    """
    if not enabled:
        return False
    interval = min(DAY_MS, max(0, int(interval_ms or 0)))
    if interval <= 0:
        return True
    now = max(0, int(now_ms or 0))
    last = max(0, int(last_run_at_ms or 0))
    if not last or last > now:
        return True
    return now - last >= interval


def get_lp_priority_timeout_seconds(
    base_seconds: float | None,
    max_seconds: float = MAX_LP_TIMEOUT_SECONDS,
    override_seconds: float | None = None,
) -> float:
    """LP timeout for priority-rank wallets: at least 20s, never above ``max_seconds``."""
    if override_seconds is not None:
        return min(max_seconds, max(MIN_LP_TIMEOUT_SECONDS, override_seconds))
    base = DEFAULT_LP_BASE_TIMEOUT_SECONDS if base_seconds is None else base_seconds
    base = min(max_seconds, max(MIN_LP_TIMEOUT_SECONDS, base))
    return min(max_seconds, max(base, DEFAULT_LP_PRIORITY_TIMEOUT_SECONDS))


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    ingestion_passes: int = 0
    recalc_passes: int = 0
    jobs_runs: int = 0
    wallets_scored: int = 0
    lp_timeouts: int = 0
    lp_errors: int = 0
    errors: int = 0
    last_error: str | None = None


@dataclass
class IngestionSummary:
    """Result of one ingestion pass."""

    season_id: str
    ingested_wallets: int = 0
    updated_at: int | None = None
    sources: dict[str, SourceIngestResult] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    skipped: str | None = None
    lp_fallback: LpFallbackSummary | None = None

    @property
    def cursor_updates(self) -> int:
        return sum(1 for result in self.sources.values() if result.cursor_advanced)

    def to_dict(self) -> dict[str, Any]:
        return {
            "season_id": self.season_id,
            "ingested_wallets": self.ingested_wallets,
            "cursor_updates": self.cursor_updates,
            "updated_at": self.updated_at,
            "sources": {
                name: {
                    "rows": result.rows,
                    "pages": result.pages,
                    "cursor": result.next_cursor,
                    "advanced": result.cursor_advanced,
                }
                for name, result in self.sources.items()
            },
            "errors": dict(self.errors),
            "skipped": self.skipped,
            "lp_fallback": self.lp_fallback.to_dict() if self.lp_fallback else None,
        }


@dataclass
class RecalcResult:
    """Result of one recalc batch."""

    season_id: str
    processed: int = 0
    total_wallets: int = 0
    cursor: int = 0
    next_cursor: int | None = None
    updated_at: int | None = None
    lp_refreshed: int = 0
    lp_fallback: LpFallbackSummary | None = None

    @property
    def done(self) -> bool:
        return self.next_cursor is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "season_id": self.season_id,
            "processed": self.processed,
            "total_wallets": self.total_wallets,
            "cursor": self.cursor,
            "next_cursor": self.next_cursor,
            "done": self.done,
            "updated_at": self.updated_at,
            "lp_refreshed": self.lp_refreshed,
            "lp_fallback": self.lp_fallback.to_dict() if self.lp_fallback else None,
        }


@dataclass
class RecalcSweep:
    """Progress of one recalc sweep (fast or deep) inside a jobs run."""

    mode: str
    rounds: int = 0
    cursor_start: int = 0
    cursor_next: int = 0
    done: bool = False
    stopped_reason: str = "max_rounds"

    @property
    def ran(self) -> bool:
        return self.rounds > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "ran": self.ran,
            "rounds": self.rounds,
            "cursor_start": self.cursor_start,
            "cursor_next": self.cursor_next,
            "done": self.done,
            "stopped_reason": self.stopped_reason,
        }


@dataclass
class JobsResult:
    """Result of one scheduled jobs run."""

    season_id: str
    skipped: str | None = None
    ingest_rounds: int = 0
    ingest_stopped_reason: str = "complete"
    deep: RecalcSweep = field(default_factory=lambda: RecalcSweep(mode="deep"))
    fast: RecalcSweep = field(default_factory=lambda: RecalcSweep(mode="fast"))
    alerts: list[dict[str, Any]] = field(default_factory=list)
    executed_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "season_id": self.season_id,
            "skipped": self.skipped,
            "ingest_rounds": self.ingest_rounds,
            "ingest_stopped_reason": self.ingest_stopped_reason,
            "deep_recalc": self.deep.to_dict(),
            "recalc": self.fast.to_dict(),
            "alerts": list(self.alerts),
            "executed_at": self.executed_at,
        }


class IngestionPipeline:
    """Orchestrates ingestion and recalc passes for a season.

    Components not passed in are built from settings in ``start()`` and
    closed again in ``stop()``.

    Example:
        ```python
        from season_points.config import get_settings
        from season_points.pipeline import IngestionPipeline

        async with IngestionPipeline(get_settings()) as pipeline:
            summary = await pipeline.run_ingestion_pass()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        redis: Redis | None = None,
        graph_client: GraphClient | None = None,
        valuator: LpValuator | None = None,
        price_oracle: PriceOracle | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._addresses: AddressConfig = self._settings.tokens.to_address_config()

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        self._redis = redis
        self._graph_client = graph_client
        self._valuator = valuator
        self._price_oracle = price_oracle
        self._chain_registry: Web3ClientRegistry | None = None
        self._owns_redis = redis is None
        self._owns_graph_client = graph_client is None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Pipeline statistics."""
        return self._stats

    async def start(self) -> None:
        """Build missing components.

        Raises:
            RuntimeError: If the pipeline is already started.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")
        self._state = PipelineState.STARTING
        try:
            self._initialize_components()
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise
        self._state = PipelineState.RUNNING
        logger.debug("Pipeline started")

    async def stop(self) -> None:
        """Close owned components."""
        if self._state == PipelineState.STOPPED:
            return
        self._state = PipelineState.STOPPING
        await self._cleanup()
        self._state = PipelineState.STOPPED
        logger.debug("Pipeline stopped")

    def _initialize_components(self) -> None:
        settings = self._settings
        if self._redis is None:
            logger.debug("Initializing Redis connection...")
            self._redis = Redis.from_url(settings.redis.url)
        if self._graph_client is None:
            self._graph_client = GraphClient(
                timeout_seconds=settings.feeds.timeout_seconds,
                max_retries=settings.feeds.max_retries,
            )
        if self._valuator is None:
            self._chain_registry = Web3ClientRegistry()
            chain_reader = ChainReader(
                self._chain_registry,
                rpc_url=settings.chain.rpc_url,
                position_manager=settings.chain.position_manager_address,
                factory=settings.chain.factory_address,
                staker=settings.chain.staker_address,
                staker_deploy_block=settings.chain.staker_deploy_block,
                addresses=self._addresses,
                call_timeout_seconds=settings.chain.call_timeout_seconds,
            )
            self._valuator = LpValuator(PositionFeed(self._graph_client), chain_reader)
        if self._price_oracle is None:
            self._price_oracle = PriceOracle(self._graph_client, stable_token=self._addresses.usdm)

    async def _cleanup(self) -> None:
        if self._chain_registry is not None:
            await self._chain_registry.aclose()
            self._chain_registry = None
        if self._owns_graph_client and self._graph_client is not None:
            await self._graph_client.aclose()
            self._graph_client = None
        if self._owns_redis and self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        logger.debug("Resources cleaned up")

    def _require_running(self) -> Redis:
        if self._state != PipelineState.RUNNING or self._redis is None:
            raise RuntimeError(f"Pipeline is not running (state {self._state})")
        return self._redis

    async def _fetch_prices(self) -> dict[str, float]:
        """CRX and WETH prices from the feed; USDM pinned to 1, WETH 0 if unknown."""
        assert self._price_oracle is not None
        feeds = self._settings.feeds
        prices: dict[str, float] = {}
        if feeds.price_urls:
            try:
                prices = await self._price_oracle.fetch_token_prices(
                    feeds.price_urls,
                    feeds.api_key("v3"),
                    [self._addresses.crx, self._addresses.weth],
                )
            except PriceOracleError as e:
                logger.warning("Token prices unavailable, LP valued without them: %s", e)
        prices = dict(prices)
        if self._addresses.usdm:
            prices[self._addresses.usdm] = 1.0
        if self._addresses.weth and self._addresses.weth not in prices:
            prices[self._addresses.weth] = 0.0
        return prices

    async def _value_lp(
        self,
        wallet: str,
        existing: WalletPointsRecord,
        prices: dict[str, float],
        season: SeasonSettings,
        *,
        allow_onchain: bool,
        timeout: float | None = None,
    ) -> LpData:
        assert self._valuator is not None
        feeds = self._settings.feeds
        coro = self._valuator.compute_lp_data(
            feeds.v3_url,
            feeds.api_key("v3"),
            wallet,
            self._addresses,
            prices,
            season.start_block,
            allow_onchain=allow_onchain,
        )
        if timeout is None:
            timeout = self._settings.ingestion.lp_timeout_seconds
        try:
            if timeout is None:
                return await coro
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            self._stats.lp_timeouts += 1
            logger.warning(
                "LP valuation for %s timed out after %.1fs, keeping stored LP values",
                wallet,
                timeout,
            )
            return stored_lp_data(existing)
        except Exception as e:
            self._stats.lp_errors += 1
            logger.warning("LP valuation for %s failed, keeping stored LP values: %s", wallet, e)
            return stored_lp_data(existing)

    def _build_record(
        self,
        wallet: str,
        existing: WalletPointsRecord,
        volume_usd: float,
        lp: LpData,
        *,
        boost_enabled: bool,
        now_ms: int,
    ) -> WalletPointsRecord:
        breakdown = compute_points(
            volume_usd,
            lp.lp_usd_crx_eth,
            lp.lp_usd_crx_usdm,
            boost_enabled=boost_enabled,
            policy=self._settings.scoring.to_policy(),
        )
        snapshot_points, snapshot_rank, snapshot_at = roll_snapshot_24h(existing, now_ms)
        return WalletPointsRecord(
            address=wallet,
            volume_usd=volume_usd,
            raw_volume_usd=breakdown.raw_volume_usd,
            effective_volume_usd=breakdown.effective_volume_usd,
            scoring_mode=breakdown.scoring_mode.value,
            scoring_fee_bps=breakdown.fee_bps,
            volume_cap_usd=breakdown.volume_cap_usd,
            diminishing_factor=breakdown.diminishing_factor,
            points=breakdown.total_points,
            base_points=breakdown.base_points,
            bonus_points=breakdown.bonus_points,
            lp_usd=lp.lp_usd,
            lp_usd_crx_eth=breakdown.lp_usd_crx_eth,
            lp_usd_crx_usdm=breakdown.lp_usd_crx_usdm,
            lp_points=breakdown.lp_points,
            multiplier=breakdown.multiplier,
            base_multiplier=lp.base_multiplier if lp.has_boost_lp else 1.0,
            lp_in_range_pct=lp.lp_in_range_pct,
            has_boost_lp=lp.has_boost_lp,
            has_range_data=lp.has_range_data,
            has_in_range=lp.has_in_range,
            lp_age_seconds=lp.lp_age_seconds,
            lp_source=lp.source.value,
            missing_price=lp.missing_price,
            wash_flag=existing.wash_flag,
            rank=existing.rank,
            snapshot_24h_points=snapshot_points,
            snapshot_24h_rank=snapshot_rank,
            snapshot_24h_at=snapshot_at,
            updated_at=now_ms,
        )

    async def run_ingestion_pass(self, season: SeasonSettings | None = None) -> IngestionSummary:
        """Ingest new swaps, re-score touched wallets and persist them.

        Each source resumes from its stored cursor (never before the season
        start). A source that fails keeps its old cursor and contributes no
        volume. Wallet volume is the stored cumulative volume plus this pass's
        delta; the record is then fully recomputed from that total.

        Raises:
            ConfigurationError: Required settings are missing.
            RuntimeError: The pipeline is not started.
        """
        redis = self._require_running()
        self._settings.validate_requirements(command="ingest")
        season = season or self._settings.season
        store = RedisLeaderboardStore(redis, season.season_id)
        summary = IngestionSummary(season_id=season.season_id)

        token = await acquire_lock(
            redis,
            store.keys.ingest_lock,
            ttl_seconds=self._settings.ingestion.lock_ttl_seconds,
            retries=0,
        )
        if token is None:
            logger.info("Ingestion for %s already running, skipping", season.season_id)
            summary.skipped = "locked"
            return summary

        try:
            await self._ingest(store, season, summary)
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            raise
        finally:
            await release_lock(redis, store.keys.ingest_lock, token)

        self._stats.ingestion_passes += 1
        return summary

    async def _ingest(
        self, store: RedisLeaderboardStore, season: SeasonSettings, summary: IngestionSummary
    ) -> None:
        assert self._graph_client is not None
        settings = self._settings
        now_ms = _now_ms()
        start_sec = season.start_sec
        end_sec = (season.end_ms or now_ms) // 1000

        aggregated: dict[str, float] = {}
        cursors: dict[str, int] = {}
        for source in (SwapSource.V2, SwapSource.V3):
            url = settings.feeds.v2_url if source == SwapSource.V2 else settings.feeds.v3_url
            if not url:
                continue
            stored = await store.get_cursor(source.value)
            cursor = stored if stored is not None and stored > start_sec else start_sec
            try:
                result = await ingest_source(
                    self._graph_client,
                    source,
                    url,
                    settings.feeds.api_key(source.value),
                    cursor,
                    end_sec,
                    start_block=season.start_block,
                    page_limit=settings.ingestion.page_limit,
                    max_pages=settings.ingestion.max_pages,
                )
            except FeedError as e:
                logger.warning("Swap source %s failed, cursor stays at %d: %s", source.value, cursor, e)
                summary.errors[source.value] = str(e)
                continue
            summary.sources[source.value] = result
            if result.cursor_advanced:
                cursors[source.value] = result.next_cursor
            for wallet, amount in result.wallet_volume_deltas.items():
                aggregated[wallet] = aggregated.get(wallet, 0.0) + amount

        wallets = sorted(aggregated)
        if not wallets:
            if cursors:
                await store.write_records([], cursors=cursors, updated_at=now_ms)
                summary.updated_at = now_ms
            logger.info("Ingestion for %s: no new volume", season.season_id)
            return

        existing = await store.read_records(wallets)
        prices = await self._fetch_prices()
        boost_enabled = now_ms >= season.start_ms

        async def score(wallet: str, index: int) -> tuple[WalletPointsRecord, bool]:
            row = existing[index]
            volume = row.volume_usd + aggregated[wallet]
            lp = await self._value_lp(wallet, row, prices, season, allow_onchain=True)
            record = self._build_record(
                wallet, row, volume, lp, boost_enabled=boost_enabled, now_ms=now_ms
            )
            return record, lp.used_chain_fallback

        scored = await run_with_concurrency(wallets, settings.ingestion.concurrency, score)
        records = [record for record, _ in scored]

        await store.write_records(records, cursors=cursors, updated_at=now_ms)
        await store.refresh_ranks(wallets)
        await rebuild_points_summary(store, settings, now_ms=now_ms)

        summary.ingested_wallets = len(records)
        summary.updated_at = now_ms
        summary.lp_fallback = self._lp_fallback_summary(len(records), sum(1 for _, f in scored if f))
        self._stats.wallets_scored += len(records)
        logger.info(
            "Ingestion for %s: %d wallets, cursors %s",
            season.season_id,
            len(records),
            cursors or "unchanged",
        )

    def _lp_fallback_summary(self, processed: int, fallback_count: int) -> LpFallbackSummary:
        ingestion = self._settings.ingestion
        result = summarize_lp_fallback(
            processed,
            fallback_count,
            warn_ratio=ingestion.lp_fallback_warn_ratio,
            min_processed=ingestion.lp_fallback_warn_min_processed,
        )
        if result.warning:
            logger.warning(
                "LP chain fallback used for %d/%d wallets (%.0f%%); the position feed may be stale",
                result.fallback_count,
                result.processed,
                result.fallback_rate * 100,
            )
        return result

    def _recalc_lp_timeouts(
        self, override_seconds: float | None
    ) -> tuple[float | None, float | None]:
        ingestion = self._settings.ingestion
        base = override_seconds if override_seconds is not None else ingestion.lp_timeout_seconds
        priority_override = (
            ingestion.lp_priority_timeout_ms / 1000
            if ingestion.lp_priority_timeout_ms is not None
            else None
        )
        if base is None and priority_override is None:
            return None, None
        return base, get_lp_priority_timeout_seconds(base, override_seconds=priority_override)

    async def run_recalc_pass(
        self,
        season: SeasonSettings | None = None,
        cursor: int = 0,
        limit: int | None = None,
        *,
        fast_mode: bool = False,
        lp_timeout_seconds: float | None = None,
    ) -> RecalcResult:
        """Recompute one batch of existing wallets from their stored volume.

        Wallets are processed in address order, ``limit`` at a time, starting
        at ``cursor``. The summary is rebuilt when the last batch completes.
        ``lp_timeout_seconds`` overrides the configured per-wallet LP timeout;
        priority-rank wallets get the longer priority timeout on top of it.

        Raises:
            ConfigurationError: Required settings are missing.
            RuntimeError: The pipeline is not started.
        """
        redis = self._require_running()
        self._settings.validate_requirements(command="recalc")
        settings = self._settings
        season = season or settings.season
        store = RedisLeaderboardStore(redis, season.season_id)

        batch_limit = min(MAX_RECALC_LIMIT, max(1, int(limit or settings.ingestion.recalc_limit)))
        members = sorted({normalize_address(m) for m in await store.all_members() if m})
        start = max(0, int(cursor))
        batch = members[start : start + batch_limit]
        result = RecalcResult(season_id=season.season_id, total_wallets=len(members), cursor=start)
        now_ms = _now_ms()

        if batch:
            existing = await store.read_records(batch)
            prices = await self._fetch_prices()
            boost_enabled = now_ms >= season.start_ms
            priority_limit = settings.ingestion.priority_rank_limit
            base_timeout, priority_timeout = self._recalc_lp_timeouts(lp_timeout_seconds)

            async def rescore(wallet: str, index: int) -> tuple[WalletPointsRecord, bool, bool]:
                row = existing[index]
                policy = resolve_lp_recalc_policy(
                    row, fast_mode=fast_mode, priority_rank_limit=priority_limit
                )
                if policy.should_refresh_lp:
                    lp = await self._value_lp(
                        wallet,
                        row,
                        prices,
                        season,
                        allow_onchain=policy.allow_onchain,
                        timeout=priority_timeout if policy.is_priority_rank else base_timeout,
                    )
                else:
                    lp = stored_lp_data(row)
                record = self._build_record(
                    wallet, row, row.volume_usd, lp, boost_enabled=boost_enabled, now_ms=now_ms
                )
                return record, policy.should_refresh_lp, lp.used_chain_fallback

            scored = await run_with_concurrency(batch, settings.ingestion.concurrency, rescore)
            records = [record for record, _, _ in scored]
            await store.write_records(records, updated_at=now_ms)
            await store.refresh_ranks(batch)

            result.processed = len(records)
            result.updated_at = now_ms
            result.lp_refreshed = sum(1 for _, refreshed, _ in scored if refreshed)
            result.lp_fallback = self._lp_fallback_summary(
                result.lp_refreshed, sum(1 for _, _, f in scored if f)
            )
            self._stats.wallets_scored += len(records)

        end = start + len(batch)
        result.next_cursor = end if end < len(members) else None
        if result.done:
            await rebuild_points_summary(store, settings, now_ms=now_ms)

        self._stats.recalc_passes += 1
        logger.info(
            "Recalc for %s: %d/%d wallets from cursor %d (fast=%s, next=%s)",
            season.season_id,
            result.processed,
            result.total_wallets,
            start,
            fast_mode,
            result.next_cursor,
        )
        return result

    async def run_jobs(self, season: SeasonSettings | None = None) -> JobsResult:
        """Run one scheduled jobs cycle under the season's jobs lock.

        The cycle ingests in rounds until the sources go idle, then runs the
        deep recalc sweep when its interval has elapsed, then the fast recalc
        sweep. Each sweep resumes from its stored cursor and stores the next
        one after every round. Every phase stops early once the runtime budget
        is spent. The last LP fallback alert of the run is kept for a day.

        Raises:
            ConfigurationError: Required settings are missing.
            RuntimeError: The pipeline is not started.
        """
        redis = self._require_running()
        self._settings.validate_requirements(command="jobs")
        season = season or self._settings.season
        store = RedisLeaderboardStore(redis, season.season_id)
        result = JobsResult(season_id=season.season_id)

        token = await acquire_lock(
            redis,
            store.keys.jobs_lock,
            ttl_seconds=JOBS_LOCK_TTL_SECONDS,
            retries=JOBS_LOCK_RETRIES,
            retry_delay=JOBS_LOCK_RETRY_DELAY,
        )
        if token is None:
            logger.info("Points jobs for %s already in progress, skipping", season.season_id)
            result.skipped = "already_in_progress"
            return result

        started_ms = _now_ms()
        max_runtime_ms = self._settings.jobs.max_runtime_ms

        def runtime_exceeded() -> bool:
            return _now_ms() - started_ms >= max_runtime_ms

        try:
            await self._run_jobs(store, season, result, runtime_exceeded)
        finally:
            await release_lock(redis, store.keys.jobs_lock, token)

        result.executed_at = _now_ms()
        self._stats.jobs_runs += 1
        logger.info(
            "Points jobs for %s: ingest %d rounds (%s), deep %s, fast %s",
            season.season_id,
            result.ingest_rounds,
            result.ingest_stopped_reason,
            result.deep.stopped_reason,
            result.fast.stopped_reason,
        )
        return result

    async def _run_jobs(
        self,
        store: RedisLeaderboardStore,
        season: SeasonSettings,
        result: JobsResult,
        runtime_exceeded: Callable[[], bool],
    ) -> None:
        jobs = self._settings.jobs
        keys = store.keys

        for round_no in range(1, jobs.max_ingest_rounds + 1):
            if runtime_exceeded():
                result.ingest_stopped_reason = "runtime_budget"
                break
            summary = await self.run_ingestion_pass(season)
            result.ingest_rounds = round_no
            if summary.ingested_wallets <= 0 and summary.cursor_updates <= 0:
                result.ingest_stopped_reason = "source_idle"
                break

        last_deep_run = await store.get_value(keys.jobs_deep_recalc_last_run_at)
        deep_due = should_run_periodic_task(
            enabled=jobs.deep_recalc_enabled,
            now_ms=_now_ms(),
            last_run_at_ms=to_optional_int(last_deep_run),
            interval_ms=jobs.deep_recalc_interval_ms,
        )
        if deep_due:
            await self._recalc_sweep(
                store,
                season,
                result.deep,
                result.alerts,
                runtime_exceeded,
                cursor_key=keys.jobs_deep_recalc_cursor,
                rounds=jobs.deep_recalc_rounds,
                limit=jobs.deep_recalc_limit,
                fast_mode=False,
                lp_timeout_seconds=jobs.deep_lp_timeout_ms / 1000,
            )
            if result.deep.ran:
                await store.set_value(keys.jobs_deep_recalc_last_run_at, _now_ms())
        else:
            result.deep.stopped_reason = (
                "interval_not_elapsed" if jobs.deep_recalc_enabled else "disabled"
            )

        await self._recalc_sweep(
            store,
            season,
            result.fast,
            result.alerts,
            runtime_exceeded,
            cursor_key=keys.jobs_recalc_cursor,
            rounds=jobs.max_recalc_rounds,
            limit=jobs.recalc_limit,
            fast_mode=True,
            lp_timeout_seconds=jobs.fast_lp_timeout_ms / 1000,
        )

        if result.alerts:
            await store.set_value(
                keys.jobs_lp_fallback_alert,
                json.dumps(result.alerts[-1]),
                ttl_seconds=LP_FALLBACK_ALERT_TTL_SECONDS,
            )

    async def _recalc_sweep(
        self,
        store: RedisLeaderboardStore,
        season: SeasonSettings,
        sweep: RecalcSweep,
        alerts: list[dict[str, Any]],
        runtime_exceeded: Callable[[], bool],
        *,
        cursor_key: str,
        rounds: int,
        limit: int,
        fast_mode: bool,
        lp_timeout_seconds: float,
    ) -> None:
        cursor = normalize_cursor(await store.get_value(cursor_key))
        sweep.cursor_start = cursor
        sweep.stopped_reason = "max_rounds"

        for round_no in range(1, rounds + 1):
            if runtime_exceeded():
                sweep.stopped_reason = "runtime_budget"
                break
            batch = await self.run_recalc_pass(
                season,
                cursor,
                limit,
                fast_mode=fast_mode,
                lp_timeout_seconds=lp_timeout_seconds,
            )
            sweep.rounds = round_no
            alert = self._lp_fallback_alert(batch, sweep.mode, round_no)
            if alert is not None:
                alerts.append(alert)

            if batch.done:
                cursor = 0
                sweep.done = True
                sweep.stopped_reason = "sweep_complete"
                await store.set_value(cursor_key, cursor)
                break
            next_cursor = normalize_cursor(batch.next_cursor)
            if next_cursor <= cursor:
                logger.warning(
                    "%s recalc cursor stalled at %d, restarting the sweep", sweep.mode, cursor
                )
                cursor = 0
                sweep.stopped_reason = "cursor_stall"
                await store.set_value(cursor_key, cursor)
                break
            cursor = next_cursor
            await store.set_value(cursor_key, cursor)
            if batch.processed <= 0:
                sweep.stopped_reason = "no_progress"
                break

        sweep.cursor_next = cursor

    @staticmethod
    def _lp_fallback_alert(batch: RecalcResult, mode: str, round_no: int) -> dict[str, Any] | None:
        summary = batch.lp_fallback
        if summary is None or not summary.warning:
            return None
        return {
            "kind": "lp_fallback_ratio",
            "mode": mode,
            "round": round_no,
            "cursor_start": batch.cursor,
            "processed": summary.processed,
            "fallback_count": summary.fallback_count,
            "fallback_rate": round(summary.fallback_rate, 6),
            "threshold_ratio": summary.warn_ratio,
            "min_processed": summary.min_processed,
            "emitted_at": _now_ms(),
        }

    async def __aenter__(self) -> IngestionPipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
