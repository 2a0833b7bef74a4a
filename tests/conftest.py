"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pytest

from season_points.config import clear_settings_cache


_SETTINGS_ENV = (
    "REDIS_URL",
    "POINTS_SEASON_ID",
    "POINTS_SEASON_START",
    "POINTS_SEASON_START_BLOCK",
    "POINTS_SEASON_END",
    "UNIV2_SUBGRAPH_URL",
    "UNIV2_SUBGRAPH_API_KEY",
    "UNIV3_SUBGRAPH_URL",
    "UNIV3_SUBGRAPH_API_KEY",
    "UNIV3_SUBGRAPH_FALLBACK_URLS",
    "POINTS_STAKER_ADDRESS",
    "POINTS_LP_TIMEOUT_SECONDS",
    "POINTS_RECALC_LP_PRIORITY_RANK",
    "POINTS_RECALC_LP_PRIORITY_TIMEOUT_MS",
    "POINTS_JOBS_MAX_INGEST_ROUNDS",
    "POINTS_JOBS_MAX_RECALC_ROUNDS",
    "POINTS_JOBS_RECALC_LIMIT",
    "POINTS_JOBS_FAST_LP_TIMEOUT_MS",
    "POINTS_JOBS_DEEP_RECALC",
    "POINTS_JOBS_DEEP_RECALC_INTERVAL_MS",
    "POINTS_JOBS_DEEP_RECALC_ROUNDS",
    "POINTS_JOBS_DEEP_RECALC_LIMIT",
    "POINTS_JOBS_DEEP_LP_TIMEOUT_MS",
    "POINTS_JOBS_MAX_RUNTIME_MS",
    "POINTS_TOP100_MIN_VOLUME_USD",
    "POINTS_TOP100_REQUIRE_FINALIZATION",
    "POINTS_SEASON_REWARD_CRX",
    "POINTS_REWARDS_CLAIM_OPENS_AT",
    "POINTS_REWARD_CLAIM_SIGNATURE_TTL_MS",
    "POINTS_API_BASE",
    "POINTS_INGEST_TOKEN",
    "LOG_LEVEL",
)


def _encode(value: Any) -> bytes:
    if isinstance(value, bytes):
        return value
    return str(value).encode()


class FakePipeline:
    """Buffers commands and replays them on ``execute``, like a redis pipeline."""

    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._commands: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []

    def __getattr__(self, name: str) -> Any:
        def buffer(*args: Any, **kwargs: Any) -> FakePipeline:
            self._commands.append((name, args, kwargs))
            return self

        return buffer

    async def execute(self) -> list[Any]:
        self._redis.pipeline_executions += 1
        results = []
        for name, args, kwargs in self._commands:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._commands = []
        return results


class FakeRedis:
    """In-memory stand-in for ``redis.asyncio.Redis`` (bytes in, bytes out)."""

    def __init__(self) -> None:
        self.strings: dict[str, bytes] = {}
        self.hashes: dict[str, dict[bytes, bytes]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.ttls: dict[str, int] = {}
        self.pipeline_executions = 0
        self.closed = False

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True

    async def get(self, key: str) -> bytes | None:
        return self.strings.get(key)

    async def set(
        self, key: str, value: Any, nx: bool = False, ex: int | None = None
    ) -> bool | None:
        if nx and key in self.strings:
            return None
        self.strings[key] = _encode(value)
        if ex is not None:
            self.ttls[key] = int(ex)
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            for table in (self.strings, self.hashes, self.zsets):
                if key in table:
                    del table[key]
                    removed += 1
            self.ttls.pop(key, None)
        return removed

    async def hgetall(self, key: str) -> dict[bytes, bytes]:
        return dict(self.hashes.get(key, {}))

    async def hset(self, key: str, mapping: dict[str, Any] | None = None) -> int:
        row = self.hashes.setdefault(key, {})
        added = 0
        for field, value in (mapping or {}).items():
            name = _encode(field)
            if name not in row:
                added += 1
            row[name] = _encode(value)
        return added

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update({member: float(score) for member, score in mapping.items()})
        return added

    def _ordered(self, key: str, reverse: bool) -> list[tuple[str, float]]:
        items = list(self.zsets.get(key, {}).items())
        return sorted(items, key=lambda item: (item[1], item[0]), reverse=reverse)

    @staticmethod
    def _slice(items: list[Any], start: int, end: int) -> list[Any]:
        if end < 0:
            end = len(items) + end
        return items[start : end + 1]

    def _range(self, key: str, start: int, end: int, withscores: bool, reverse: bool) -> list[Any]:
        rows = self._slice(self._ordered(key, reverse), start, end)
        if withscores:
            return [(member.encode(), score) for member, score in rows]
        return [member.encode() for member, _ in rows]

    async def zrevrange(self, key: str, start: int, end: int, withscores: bool = False) -> list[Any]:
        return self._range(key, start, end, withscores, reverse=True)

    async def zrange(self, key: str, start: int, end: int, withscores: bool = False) -> list[Any]:
        return self._range(key, start, end, withscores, reverse=False)

    async def zrevrank(self, key: str, member: str) -> int | None:
        for index, (name, _) in enumerate(self._ordered(key, reverse=True)):
            if name == member:
                return index
        return None

    async def zscore(self, key: str, member: str) -> float | None:
        return self.zsets.get(key, {}).get(member)

    async def zcard(self, key: str) -> int:
        return len(self.zsets.get(key, {}))


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[pytest.MonkeyPatch]:
    """Environment without any season settings and a fresh settings cache."""
    for name in _SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    yield monkeypatch
    clear_settings_cache()
