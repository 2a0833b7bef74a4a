"""Staleness watchdog and store locks.

Read paths call :meth:`SelfHealTrigger.maybe_trigger_self_heal` with the
season's ``updatedAt``. When the snapshot is stale, the first caller to win the
cooldown lock (``SET NX EX``) POSTs to the internal jobs endpoint. Everything
that goes wrong is reported in ``SelfHealResult.skipped``; nothing is raised.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass

import aiohttp
from redis.asyncio import Redis
from redis.exceptions import RedisError

from season_points.storage.leaderboard import LeaderboardKeys

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_STALE_MS = 8 * 60 * 1000
DEFAULT_COOLDOWN_MS = 3 * 60 * 1000
DEFAULT_TIMEOUT_MS = 3000
MIN_STALE_MS = 60_000
MIN_COOLDOWN_MS = 30_000
MIN_TIMEOUT_MS = 1000
MAX_TIMEOUT_MS = 30_000
MAX_WINDOW_MS = 24 * 60 * 60 * 1000
MAX_REASON_LENGTH = 120
JOBS_PATH = "/api/cron/points-jobs"

DEFAULT_LOCK_TTL_SECONDS = 20
DEFAULT_LOCK_RETRIES = 3
DEFAULT_LOCK_RETRY_DELAY = 0.12


def _now_ms() -> int:
    return int(time.time() * 1000)


def _clamp(value: int | float | None, low: int, high: int, default: int) -> int:
    if value is None or not math.isfinite(value):
        return default
    return int(min(high, max(low, value)))


@dataclass(frozen=True)
class SelfHealResult:
    """Outcome of one watchdog check."""

    triggered: bool
    skipped: str | None = None
    status: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {"triggered": self.triggered, "skipped": self.skipped, "status": self.status}


async def acquire_lock(
    redis: Redis,
    key: str,
    *,
    ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    retries: int = DEFAULT_LOCK_RETRIES,
    retry_delay: float = DEFAULT_LOCK_RETRY_DELAY,
) -> str | None:
    """Take a token lock with ``SET NX EX``.

    Returns:
        The lock token on success, None when the lock stayed busy.
    """
    ttl = max(1, int(ttl_seconds))
    attempts = max(0, int(retries)) + 1
    for attempt in range(attempts):
        token = uuid.uuid4().hex
        if await redis.set(key, token, nx=True, ex=ttl):
            return token
        if attempt < attempts - 1 and retry_delay > 0:
            await asyncio.sleep(retry_delay)
    return None


async def release_lock(redis: Redis, key: str, token: str | None) -> bool:
    """Delete ``key`` only if it still holds ``token``."""
    if not key or not token:
        return False
    try:
        current = await redis.get(key)
        if isinstance(current, bytes):
            current = current.decode()
        if str(current or "") != token:
            return False
        await redis.delete(key)
        return True
    except RedisError as e:
        logger.warning("Failed to release lock %s: %s", key, e)
        return False


class SelfHealTrigger:
    """Cooldown-gated re-ingestion trigger.

    Example:
        ```python
        trigger = SelfHealTrigger(redis, base_url="https://app", token=secret)
        result = await trigger.maybe_trigger_self_heal("season-1", updated_at_ms)
        ```
    """

    def __init__(
        self,
        redis: Redis,
        *,
        base_url: str = "",
        token: str = "",
        session: aiohttp.ClientSession | None = None,
        stale_ms: int = DEFAULT_STALE_MS,
        cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        key_prefix: str = "points",
    ) -> None:
        self._redis = redis
        self._base_url = (base_url or "").strip().rstrip("/")
        self._token = (token or "").strip()
        self._session = session
        self._stale_ms = _clamp(stale_ms, MIN_STALE_MS, MAX_WINDOW_MS, DEFAULT_STALE_MS)
        self._cooldown_ms = _clamp(cooldown_ms, MIN_COOLDOWN_MS, MAX_WINDOW_MS, DEFAULT_COOLDOWN_MS)
        self._timeout_ms = _clamp(timeout_ms, MIN_TIMEOUT_MS, MAX_TIMEOUT_MS, DEFAULT_TIMEOUT_MS)
        self._key_prefix = key_prefix

    @property
    def cooldown_seconds(self) -> int:
        return max(30, math.ceil(self._cooldown_ms / 1000))

    async def _post(self, season_id: str, reason: str) -> SelfHealResult:
        timeout = aiohttp.ClientTimeout(total=self._timeout_ms / 1000)
        headers = {
            "Authorization": f"Bearer {self._token}",
            "Content-Type": "application/json",
        }
        payload = {"seasonId": season_id, "reason": reason[:MAX_REASON_LENGTH]}
        session = self._session or aiohttp.ClientSession()
        try:
            async with session.post(
                f"{self._base_url}{JOBS_PATH}", json=payload, headers=headers, timeout=timeout
            ) as response:
                ok = 200 <= response.status < 300
                return SelfHealResult(
                    triggered=ok,
                    status=response.status,
                    skipped=None if ok else f"http_{response.status}",
                )
        finally:
            if self._session is None:
                await session.close()

    async def maybe_trigger_self_heal(
        self,
        season_id: str,
        updated_at_ms: int | None,
        stale_ms: int | None = None,
        reason: str = "",
    ) -> SelfHealResult:
        """Trigger a re-ingestion if the snapshot is stale and no cooldown is active."""
        if not season_id:
            return SelfHealResult(triggered=False, skipped="invalid_input")
        if not self._token:
            return SelfHealResult(triggered=False, skipped="missing_token")
        if not self._base_url:
            return SelfHealResult(triggered=False, skipped="missing_base_url")

        now = _now_ms()
        limit = int(stale_ms) if stale_ms and stale_ms > 0 else self._stale_ms
        if updated_at_ms and now - int(updated_at_ms) < limit:
            return SelfHealResult(triggered=False, skipped="fresh")

        key = LeaderboardKeys(season_id, prefix=self._key_prefix).self_heal_cooldown
        try:
            won = await self._redis.set(key, str(now), nx=True, ex=self.cooldown_seconds)
        except RedisError as e:
            logger.warning("Self-heal cooldown lock failed for %s: %s", season_id, e)
            return SelfHealResult(triggered=False, skipped="store_error")
        if not won:
            return SelfHealResult(triggered=False, skipped="cooldown")

        try:
            result = await self._post(season_id, reason)
        except asyncio.TimeoutError:
            result = SelfHealResult(triggered=False, skipped="timeout")
        except (aiohttp.ClientError, OSError) as e:
            logger.debug("Self-heal request failed: %s", e)
            result = SelfHealResult(triggered=False, skipped="request_error")
        except Exception as e:
            logger.exception("Unexpected self-heal request failure: %s", e)
            result = SelfHealResult(triggered=False, skipped="request_error")

        if result.triggered:
            logger.info("Self-heal triggered for %s (reason=%s)", season_id, reason or "-")
        else:
            logger.warning("Self-heal for %s not triggered: %s", season_id, result.skipped)
        return result
