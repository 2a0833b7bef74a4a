"""Tests for the self-heal watchdog and store locks."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest
from redis.exceptions import RedisError

from season_points.self_heal import (
    JOBS_PATH,
    SelfHealResult,
    SelfHealTrigger,
    acquire_lock,
    release_lock,
)

NOW = 1_800_000_000_000
MINUTE = 60_000
COOLDOWN_KEY = "points:season-1:selfheal:cooldown"


def _session(status: int = 202) -> MagicMock:
    response = MagicMock(status=status)
    session = MagicMock()
    session.post.return_value.__aenter__ = AsyncMock(return_value=response)
    session.post.return_value.__aexit__ = AsyncMock(return_value=False)
    return session


def _trigger(redis, session=None, **kwargs) -> SelfHealTrigger:
    defaults = {"base_url": "https://app.example/", "token": "secret"}
    defaults.update(kwargs)
    return SelfHealTrigger(redis, session=session, **defaults)


@pytest.fixture(autouse=True)
def frozen_clock():
    with patch("season_points.self_heal._now_ms", return_value=NOW):
        yield


class TestLocks:
    async def test_acquire_and_release(self, fake_redis) -> None:
        token = await acquire_lock(fake_redis, "lock", ttl_seconds=30)
        assert token
        assert fake_redis.ttls["lock"] == 30
        assert await acquire_lock(fake_redis, "lock", retries=0) is None

        assert await release_lock(fake_redis, "lock", "someone-else") is False
        assert await release_lock(fake_redis, "lock", token) is True
        assert await fake_redis.get("lock") is None

    async def test_retries_until_free(self, fake_redis) -> None:
        await fake_redis.set("lock", "held")

        async def free_lock(_delay: float) -> None:
            await fake_redis.delete("lock")

        with patch("season_points.self_heal.asyncio.sleep", side_effect=free_lock) as sleep:
            token = await acquire_lock(fake_redis, "lock", retries=2, retry_delay=0.5)
        assert token is not None
        sleep.assert_awaited_once_with(0.5)

    async def test_release_without_token(self, fake_redis) -> None:
        assert await release_lock(fake_redis, "lock", None) is False

    async def test_release_swallows_redis_errors(self) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=RedisError("down"))
        assert await release_lock(redis, "lock", "token") is False


class TestSelfHealTrigger:
    async def test_triggers_on_stale_snapshot(self, fake_redis) -> None:
        session = _session(202)
        result = await _trigger(fake_redis, session).maybe_trigger_self_heal(
            "season-1", NOW - 9 * MINUTE, reason="leaderboard"
        )

        assert result == SelfHealResult(triggered=True, status=202)
        args, kwargs = session.post.call_args
        assert args[0] == f"https://app.example{JOBS_PATH}"
        assert kwargs["json"] == {"seasonId": "season-1", "reason": "leaderboard"}
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert fake_redis.ttls[COOLDOWN_KEY] == 180

    async def test_missing_snapshot_counts_as_stale(self, fake_redis) -> None:
        result = await _trigger(fake_redis, _session()).maybe_trigger_self_heal("season-1", None)
        assert result.triggered is True

    async def test_fresh_snapshot(self, fake_redis) -> None:
        session = _session()
        result = await _trigger(fake_redis, session).maybe_trigger_self_heal(
            "season-1", NOW - MINUTE
        )
        assert result.skipped == "fresh"
        session.post.assert_not_called()

    async def test_explicit_stale_window(self, fake_redis) -> None:
        result = await _trigger(fake_redis, _session()).maybe_trigger_self_heal(
            "season-1", NOW - 2 * MINUTE, stale_ms=MINUTE
        )
        assert result.triggered is True

    async def test_cooldown_blocks_second_trigger(self, fake_redis) -> None:
        trigger = _trigger(fake_redis, _session())
        assert (await trigger.maybe_trigger_self_heal("season-1", None)).triggered is True
        second = await trigger.maybe_trigger_self_heal("season-1", None)
        assert second.skipped == "cooldown"

    @pytest.mark.parametrize(
        ("season_id", "kwargs", "expected"),
        [
            ("", {}, "invalid_input"),
            ("season-1", {"token": ""}, "missing_token"),
            ("season-1", {"base_url": " "}, "missing_base_url"),
        ],
    )
    async def test_preconditions(self, fake_redis, season_id, kwargs, expected) -> None:
        result = await _trigger(fake_redis, _session(), **kwargs).maybe_trigger_self_heal(
            season_id, None
        )
        assert result == SelfHealResult(triggered=False, skipped=expected)

    async def test_http_error_status(self, fake_redis) -> None:
        result = await _trigger(fake_redis, _session(500)).maybe_trigger_self_heal("season-1", None)
        assert result == SelfHealResult(triggered=False, skipped="http_500", status=500)

    async def test_request_timeout(self, fake_redis) -> None:
        session = MagicMock()
        session.post.side_effect = asyncio.TimeoutError()
        result = await _trigger(fake_redis, session).maybe_trigger_self_heal("season-1", None)
        assert result.skipped == "timeout"

    async def test_request_error(self, fake_redis) -> None:
        session = MagicMock()
        session.post.side_effect = aiohttp.ClientConnectionError("refused")
        result = await _trigger(fake_redis, session).maybe_trigger_self_heal("season-1", None)
        assert result.skipped == "request_error"

    async def test_unexpected_request_failure(self, fake_redis) -> None:
        trigger = _trigger(fake_redis, _session())
        with patch.object(trigger, "_post", AsyncMock(side_effect=ValueError("bad url"))):
            result = await trigger.maybe_trigger_self_heal("season-1", None)
        assert result == SelfHealResult(triggered=False, skipped="request_error")

    async def test_store_error(self) -> None:
        redis = MagicMock()
        redis.set = AsyncMock(side_effect=RedisError("down"))
        session = _session()
        result = await _trigger(redis, session).maybe_trigger_self_heal("season-1", None)
        assert result.skipped == "store_error"
        session.post.assert_not_called()

    def test_windows_are_clamped(self, fake_redis) -> None:
        assert _trigger(fake_redis, cooldown_ms=1).cooldown_seconds == 30
        assert _trigger(fake_redis, cooldown_ms=10 * MINUTE).cooldown_seconds == 600
