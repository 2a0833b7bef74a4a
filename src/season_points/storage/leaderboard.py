"""Redis-backed leaderboard store.

Key layout per season, all under ``points:{season_id}:``:

    leaderboard         ZSET   wallet -> points
    user:{address}      HASH   WalletPointsRecord
    cursor:{source}     STRING last processed swap timestamp (seconds)
    updatedAt           STRING last successful write (ms)
    rewards:{address}   HASH   RewardSnapshot claim ledger
    summary             HASH   PointsSummary cache
    selfheal:cooldown   STRING self-heal cooldown lock (TTL)
    lock:ingest         STRING ingestion pass lock (TTL)
    jobs:recalc:*       STRING jobs run recalc cursors, deep-sweep clock, LP alert

The jobs run lock lives outside the season namespace at
``points:cron:jobs:lock:{season_id}``.

Writes are last-writer-wins. A pass writes records, cursors and ``updatedAt``
in one pipeline, then reads back ranks and writes them in a second one.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from redis.asyncio import Redis

from season_points.scoring.claims import RewardSnapshot
from season_points.storage.models import (
    LeaderboardEntry,
    PointsSummary,
    WalletPointsRecord,
    decode_value,
    to_float,
    to_optional_int,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "points"


@dataclass(frozen=True)
class LeaderboardKeys:
    """Redis key names for one season."""

    season_id: str
    prefix: str = DEFAULT_KEY_PREFIX

    @property
    def base(self) -> str:
        return f"{self.prefix}:{self.season_id}:"

    @property
    def leaderboard(self) -> str:
        return f"{self.base}leaderboard"

    @property
    def updated_at(self) -> str:
        return f"{self.base}updatedAt"

    @property
    def summary(self) -> str:
        return f"{self.base}summary"

    @property
    def self_heal_cooldown(self) -> str:
        return f"{self.base}selfheal:cooldown"

    @property
    def ingest_lock(self) -> str:
        return f"{self.base}lock:ingest"

    @property
    def jobs_lock(self) -> str:
        return f"{self.prefix}:cron:jobs:lock:{self.season_id}"

    @property
    def jobs_recalc_cursor(self) -> str:
        return f"{self.base}jobs:recalc:cursor"

    @property
    def jobs_deep_recalc_cursor(self) -> str:
        return f"{self.base}jobs:recalc:deep:cursor"

    @property
    def jobs_deep_recalc_last_run_at(self) -> str:
        return f"{self.base}jobs:recalc:deep:last-run-at"

    @property
    def jobs_lp_fallback_alert(self) -> str:
        return f"{self.base}jobs:recalc:lp-fallback-alert"

    def cursor(self, source: str) -> str:
        return f"{self.base}cursor:{source}"

    def user(self, address: str) -> str:
        return f"{self.base}user:{address.lower()}"

    def rewards(self, address: str) -> str:
        return f"{self.base}rewards:{address.lower()}"


def _member(raw: object) -> str:
    return str(decode_value(raw)).lower()


class LeaderboardStore(Protocol):
    """Persistence contract used by the pipeline and the read paths."""

    keys: LeaderboardKeys

    async def get_cursor(self, source: str) -> int | None: ...

    async def get_updated_at(self) -> int | None: ...

    async def read_record(self, address: str) -> WalletPointsRecord | None: ...

    async def read_records(self, addresses: Sequence[str]) -> list[WalletPointsRecord]: ...

    async def write_records(
        self,
        records: Sequence[WalletPointsRecord],
        *,
        cursors: Mapping[str, int] | None = None,
        updated_at: int | None = None,
    ) -> None: ...

    async def refresh_ranks(self, addresses: Iterable[str]) -> dict[str, int]: ...

    async def get_rank(self, address: str) -> int | None: ...

    async def top_entries(self, limit: int, offset: int = 0) -> list[LeaderboardEntry]: ...

    async def all_entries(self) -> list[LeaderboardEntry]: ...

    async def all_members(self) -> list[str]: ...

    async def wallet_count(self) -> int: ...

    async def get_summary(self) -> PointsSummary | None: ...

    async def set_summary(self, summary: PointsSummary) -> None: ...

    async def get_reward_snapshot(self, address: str) -> RewardSnapshot | None: ...

    async def set_reward_snapshot(self, snapshot: RewardSnapshot) -> None: ...


class RedisLeaderboardStore:
    """Leaderboard store over a ``redis.asyncio`` client.

    Example:
        ```python
        redis = Redis.from_url(settings.redis.url)
        store = RedisLeaderboardStore(redis, "season-1")
        top = await store.top_entries(100)
        ```
    """

    def __init__(self, redis: Redis, season_id: str, *, key_prefix: str = DEFAULT_KEY_PREFIX) -> None:
        self._redis = redis
        self.keys = LeaderboardKeys(season_id=season_id, prefix=key_prefix)

    @property
    def redis(self) -> Redis:
        return self._redis

    async def get_cursor(self, source: str) -> int | None:
        return to_optional_int(decode_value(await self._redis.get(self.keys.cursor(source))))

    async def get_updated_at(self) -> int | None:
        return to_optional_int(decode_value(await self._redis.get(self.keys.updated_at)))

    async def get_value(self, key: str) -> str | None:
        value = decode_value(await self._redis.get(key))
        return None if value is None else str(value)

    async def set_value(self, key: str, value: object, *, ttl_seconds: int | None = None) -> None:
        await self._redis.set(key, str(value), ex=ttl_seconds)

    async def read_record(self, address: str) -> WalletPointsRecord | None:
        raw = await self._redis.hgetall(self.keys.user(address))
        if not raw:
            return None
        return WalletPointsRecord.from_mapping(address, raw)

    async def read_records(self, addresses: Sequence[str]) -> list[WalletPointsRecord]:
        """Records in the order of ``addresses``; blank records for unknown wallets."""
        if not addresses:
            return []
        pipe = self._redis.pipeline()
        for address in addresses:
            pipe.hgetall(self.keys.user(address))
        rows = await pipe.execute()
        return [
            WalletPointsRecord.from_mapping(address, row)
            for address, row in zip(addresses, rows)
        ]

    async def write_records(
        self,
        records: Sequence[WalletPointsRecord],
        *,
        cursors: Mapping[str, int] | None = None,
        updated_at: int | None = None,
    ) -> None:
        """Write records, their scores, cursors and ``updatedAt`` in one pipeline."""
        pipe = self._redis.pipeline()
        for record in records:
            pipe.zadd(self.keys.leaderboard, {record.address: record.points})
            pipe.hset(self.keys.user(record.address), mapping=record.to_mapping())
        for source, value in (cursors or {}).items():
            pipe.set(self.keys.cursor(source), int(value))
        if updated_at is not None:
            pipe.set(self.keys.updated_at, int(updated_at))
        await pipe.execute()
        logger.debug(
            "Wrote %d records and %d cursors for %s",
            len(records),
            len(cursors or {}),
            self.keys.season_id,
        )

    async def refresh_ranks(self, addresses: Iterable[str]) -> dict[str, int]:
        """Read each wallet's 1-based rank and store it on its record."""
        members = [a.lower() for a in addresses]
        if not members:
            return {}
        pipe = self._redis.pipeline()
        for address in members:
            pipe.zrevrank(self.keys.leaderboard, address)
        results = await pipe.execute()

        ranks: dict[str, int] = {}
        write = self._redis.pipeline()
        for address, raw in zip(members, results):
            if raw is None:
                continue
            rank = int(raw) + 1
            ranks[address] = rank
            write.hset(self.keys.user(address), mapping={"rank": rank})
        if ranks:
            await write.execute()
        return ranks

    async def get_rank(self, address: str) -> int | None:
        raw = await self._redis.zrevrank(self.keys.leaderboard, address.lower())
        return int(raw) + 1 if raw is not None else None

    async def top_entries(self, limit: int, offset: int = 0) -> list[LeaderboardEntry]:
        if limit <= 0:
            return []
        rows = await self._redis.zrevrange(
            self.keys.leaderboard, offset, offset + limit - 1, withscores=True
        )
        return [
            LeaderboardEntry(address=_member(member), points=to_float(score), rank=offset + i + 1)
            for i, (member, score) in enumerate(rows)
        ]

    async def all_entries(self) -> list[LeaderboardEntry]:
        """Every wallet, highest points first, with positional ranks."""
        rows = await self._redis.zrevrange(self.keys.leaderboard, 0, -1, withscores=True)
        return [
            LeaderboardEntry(address=_member(member), points=to_float(score), rank=i + 1)
            for i, (member, score) in enumerate(rows)
        ]

    async def all_members(self) -> list[str]:
        rows = await self._redis.zrange(self.keys.leaderboard, 0, -1)
        return [_member(member) for member in rows]

    async def wallet_count(self) -> int:
        return int(await self._redis.zcard(self.keys.leaderboard))

    async def get_summary(self) -> PointsSummary | None:
        return PointsSummary.from_mapping(await self._redis.hgetall(self.keys.summary))

    async def set_summary(self, summary: PointsSummary) -> None:
        await self._redis.hset(self.keys.summary, mapping=summary.to_mapping())

    async def get_reward_snapshot(self, address: str) -> RewardSnapshot | None:
        return RewardSnapshot.from_mapping(await self._redis.hgetall(self.keys.rewards(address)))

    async def set_reward_snapshot(self, snapshot: RewardSnapshot) -> None:
        await self._redis.hset(self.keys.rewards(snapshot.address), mapping=snapshot.to_mapping())
