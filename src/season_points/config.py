"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the season
points engine, loading and validating environment variables at startup.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from season_points.feeds.graph_client import split_feed_urls
from season_points.lp.chain import (
    DEFAULT_CALL_TIMEOUT_SECONDS,
    DEFAULT_FACTORY_ADDRESS,
    DEFAULT_POSITION_MANAGER_ADDRESS,
    DEFAULT_RPC_URL,
    DEFAULT_STAKER_DEPLOY_BLOCK,
)
from season_points.lp.models import (
    CANONICAL_CRX_ADDRESS,
    CANONICAL_USDM_ADDRESS,
    CANONICAL_WETH_ADDRESS,
    AddressConfig,
)
from season_points.scoring.points import (
    DEFAULT_DIMINISHING_FACTOR,
    DEFAULT_FEE_BPS,
    DEFAULT_VOLUME_CAP_USD,
    ScoringMode,
    ScoringPolicy,
)

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"

DEFAULT_SEASON_ID = "season-1"
DEFAULT_SEASON_START_MS = 1_770_854_400_000  # 2026-02-12T00:00:00Z
DEFAULT_SEASON_START_BLOCK = 7963659


class ConfigurationError(Exception):
    """Raised when a setting required by a command is missing."""


def parse_time_ms(value: object) -> int | None:
    """Parse epoch milliseconds, epoch seconds or an ISO-8601 string into ms."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    if isinstance(value, (int, float)):
        num = float(value)
    else:
        text = str(value).strip()
        try:
            num = float(text)
        except ValueError:
            try:
                dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError as e:
                raise ValueError(f"Invalid timestamp: {value!r}") from e
            return parse_time_ms(dt)
    if num <= 0:
        return None
    # Anything below 1e11 is treated as seconds.
    return int(num * 1000) if num < 1e11 else int(num)


def _blank_to_none(v: object) -> object:
    if isinstance(v, str) and not v.strip():
        return None
    return v


class RedisSettings(BaseSettings):
    """Redis connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="redis://localhost:6379",
        alias="REDIS_URL",
        description="Redis connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL format."""
        if not v.startswith(("redis://", "rediss://")):
            raise ValueError("REDIS_URL must start with redis:// or rediss://")
        return v


class SeasonSettings(BaseSettings):
    """Scoring epoch settings."""

    model_config = SettingsConfigDict(env_prefix="POINTS_", extra="ignore")

    season_id: str = Field(
        default=DEFAULT_SEASON_ID,
        alias="POINTS_SEASON_ID",
        description="Season identifier used in every store key",
    )
    start_ms: int = Field(
        default=DEFAULT_SEASON_START_MS,
        alias="POINTS_SEASON_START",
        description="Season start (ISO-8601, epoch seconds or epoch ms)",
    )
    start_block: int | None = Field(
        default=DEFAULT_SEASON_START_BLOCK,
        alias="POINTS_SEASON_START_BLOCK",
        description="First block counted for swaps and LP mint logs",
    )
    end_ms: int | None = Field(
        default=None,
        alias="POINTS_SEASON_END",
        description="Season end (ISO-8601, epoch seconds or epoch ms)",
    )

    @field_validator("start_ms", mode="before")
    @classmethod
    def validate_start(cls, v: object) -> int:
        parsed = parse_time_ms(_blank_to_none(v))
        return parsed if parsed is not None else DEFAULT_SEASON_START_MS

    @field_validator("end_ms", mode="before")
    @classmethod
    def validate_end(cls, v: object) -> int | None:
        return parse_time_ms(_blank_to_none(v))

    @field_validator("start_block", mode="before")
    @classmethod
    def validate_start_block(cls, v: object) -> int | None:
        v = _blank_to_none(v)
        if v is None:
            return None
        block = int(float(str(v)))
        return block if block > 0 else None

    @property
    def start_sec(self) -> int:
        return self.start_ms // 1000


class FeedSettings(BaseSettings):
    """Indexed swap / LP-position feed settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    v2_url: str = Field(
        default="",
        alias="UNIV2_SUBGRAPH_URL",
        description="Indexed swap feed for v2 pools",
    )
    v2_api_key: SecretStr | None = Field(
        default=None,
        alias="UNIV2_SUBGRAPH_API_KEY",
        description="Bearer token for the v2 feed",
    )
    v3_url: str = Field(
        default="",
        alias="UNIV3_SUBGRAPH_URL",
        description="Indexed swap and LP-position feed for v3 pools",
    )
    v3_api_key: SecretStr | None = Field(
        default=None,
        alias="UNIV3_SUBGRAPH_API_KEY",
        description="Bearer token for the v3 feed",
    )
    v3_fallback_urls: str = Field(
        default="",
        alias="UNIV3_SUBGRAPH_FALLBACK_URLS",
        description="Comma-separated fallback endpoints for token prices",
    )
    timeout_seconds: float = Field(
        default=15.0,
        alias="FEED_TIMEOUT_SECONDS",
        gt=0,
        le=120,
        description="Total timeout of one feed request",
    )
    max_retries: int = Field(
        default=3,
        alias="FEED_MAX_RETRIES",
        ge=0,
        le=10,
        description="Retries on retryable feed failures",
    )

    @field_validator("v2_url", "v3_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("Feed URL must be an HTTP(S) endpoint")
        return v

    @property
    def price_urls(self) -> list[str]:
        return split_feed_urls(self.v3_url, self.v3_fallback_urls)

    def api_key(self, source: str) -> str | None:
        secret = self.v2_api_key if source == "v2" else self.v3_api_key
        return secret.get_secret_value() if secret else None


class ChainSettings(BaseSettings):
    """Chain RPC and contract settings for the on-chain LP fallback."""

    model_config = SettingsConfigDict(env_prefix="POINTS_", extra="ignore")

    rpc_url: str = Field(
        default=DEFAULT_RPC_URL,
        alias="POINTS_RPC_URL",
        description="Chain RPC endpoint",
    )
    factory_address: str = Field(
        default=DEFAULT_FACTORY_ADDRESS,
        alias="POINTS_UNIV3_FACTORY_ADDRESS",
    )
    position_manager_address: str = Field(
        default=DEFAULT_POSITION_MANAGER_ADDRESS,
        alias="POINTS_UNIV3_POSITION_MANAGER_ADDRESS",
    )
    staker_address: str | None = Field(
        default=None,
        alias="POINTS_STAKER_ADDRESS",
        description="Staking/locking contract; unset disables the staked-NFT scan",
    )
    staker_deploy_block: int = Field(
        default=DEFAULT_STAKER_DEPLOY_BLOCK,
        alias="POINTS_STAKER_DEPLOY_BLOCK",
        ge=0,
    )
    call_timeout_seconds: float = Field(
        default=DEFAULT_CALL_TIMEOUT_SECONDS,
        alias="POINTS_RPC_CALL_TIMEOUT_SECONDS",
        gt=0,
        le=60,
        description="Timeout of each individual RPC call",
    )

    @field_validator("rpc_url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate RPC URL format."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("staker_address", mode="before")
    @classmethod
    def validate_staker(cls, v: object) -> object:
        return _blank_to_none(v)


class TokenAddressSettings(BaseSettings):
    """Platform token addresses. Canonical addresses are used when unset."""

    model_config = SettingsConfigDict(env_prefix="POINTS_", extra="ignore")

    crx: str = Field(default=CANONICAL_CRX_ADDRESS, alias="POINTS_CRX_ADDRESS")
    weth: str = Field(default=CANONICAL_WETH_ADDRESS, alias="POINTS_WETH_ADDRESS")
    usdm: str = Field(default=CANONICAL_USDM_ADDRESS, alias="POINTS_USDM_ADDRESS")

    @field_validator("crx", "weth", "usdm")
    @classmethod
    def normalize(cls, v: str) -> str:
        return v.strip().lower()

    def to_address_config(self) -> AddressConfig:
        return AddressConfig(crx=self.crx, weth=self.weth, usdm=self.usdm)


class ScoringSettings(BaseSettings):
    """Points policy."""

    model_config = SettingsConfigDict(env_prefix="POINTS_", extra="ignore")

    mode: ScoringMode = Field(default=ScoringMode.VOLUME, alias="POINTS_SCORING_MODE")
    fee_bps: float = Field(default=DEFAULT_FEE_BPS, alias="POINTS_SCORING_FEE_BPS", ge=0, le=10_000)
    volume_cap_usd: float = Field(
        default=DEFAULT_VOLUME_CAP_USD,
        alias="POINTS_VOLUME_CAP_USD",
        ge=0,
        description="Volume above this counts at the diminishing factor; 0 disables the cap",
    )
    diminishing_factor: float = Field(
        default=DEFAULT_DIMINISHING_FACTOR,
        alias="POINTS_DIMINISHING_FACTOR",
        ge=0,
        le=1,
    )

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v: object) -> object:
        return str(v).strip().lower() if isinstance(v, str) else v

    def to_policy(self) -> ScoringPolicy:
        return ScoringPolicy(
            mode=self.mode,
            fee_bps=self.fee_bps,
            volume_cap_usd=self.volume_cap_usd,
            diminishing_factor=self.diminishing_factor,
        )


class RewardsSettings(BaseSettings):
    """Season reward policy knobs."""

    model_config = SettingsConfigDict(env_prefix="POINTS_", extra="ignore")

    total_supply_crx: float = Field(default=1_000_000.0, alias="POINTS_TOTAL_SUPPLY_CRX", ge=0)
    leaderboard_rewards_pct: float = Field(
        default=0.4, alias="POINTS_LEADERBOARD_REWARDS_PCT", ge=0, le=1
    )
    season_allocations: str = Field(
        default="",
        alias="POINTS_LEADERBOARD_SEASON_ALLOCATIONS",
        description="Comma-separated CRX pool per season, in season order",
    )
    season_reward_crx: float | None = Field(
        default=None,
        alias="POINTS_SEASON_REWARD_CRX",
        description="Explicit pool for the current season; overrides the allocation list",
    )
    season_index: int | None = Field(default=None, alias="POINTS_SEASON_INDEX", ge=1)
    top100_pool_pct: float = Field(default=0.5, alias="POINTS_TOP100_POOL_PCT", ge=0, le=1)
    top100_min_volume_usd: float | None = Field(
        default=None,
        alias="POINTS_TOP100_MIN_VOLUME_USD",
        ge=0,
        description="Minimum swap volume for a top-100 slot; 0 admits no-swap wallets",
    )
    top100_require_finalization: bool = Field(
        default=True, alias="POINTS_TOP100_REQUIRE_FINALIZATION"
    )
    top100_tiers: str = Field(
        default="",
        alias="POINTS_TOP100_TIERS",
        description='Tier table such as "1:15,2:10,3:7,4-10:18"; empty uses the default table',
    )
    top100_only: bool = Field(default=False, alias="POINTS_TOP100_ONLY")
    finalization_window_hours: float = Field(
        default=48.0, alias="POINTS_FINALIZATION_WINDOW_HOURS", ge=0
    )
    claim_opens_at_ms: int | None = Field(default=None, alias="POINTS_REWARDS_CLAIM_OPENS_AT")
    claim_signature_ttl_ms: int = Field(
        default=10 * 60 * 1000, alias="POINTS_REWARD_CLAIM_SIGNATURE_TTL_MS", ge=1000
    )

    @field_validator("season_allocations")
    @classmethod
    def validate_allocations(cls, v: str) -> str:
        for item in v.split(","):
            if item.strip():
                float(item)
        return v

    @field_validator("season_reward_crx", "season_index", "top100_min_volume_usd", mode="before")
    @classmethod
    def blank_optional(cls, v: object) -> object:
        return _blank_to_none(v)

    @field_validator("claim_opens_at_ms", mode="before")
    @classmethod
    def parse_claim_opens_at(cls, v: object) -> int | None:
        return parse_time_ms(_blank_to_none(v))

    @property
    def season_allocations_crx(self) -> tuple[float, ...]:
        return tuple(float(item) for item in self.season_allocations.split(",") if item.strip())


class IngestionSettings(BaseSettings):
    """Ingestion and recalc pass tuning."""

    model_config = SettingsConfigDict(env_prefix="POINTS_", extra="ignore")

    concurrency: int = Field(default=4, alias="POINTS_CONCURRENCY", ge=1, le=32)
    page_limit: int = Field(default=1000, alias="POINTS_PAGE_LIMIT", ge=1, le=1000)
    max_pages: int = Field(default=50, alias="POINTS_MAX_PAGES", ge=1, le=500)
    lp_timeout_seconds: float | None = Field(
        default=None,
        alias="POINTS_LP_TIMEOUT_SECONDS",
        gt=0,
        description="Outer timeout per wallet valuation; on expiry stored LP values are kept",
    )
    recalc_limit: int = Field(default=250, alias="POINTS_RECALC_LIMIT", ge=1, le=1000)
    priority_rank_limit: int = Field(
        default=100, alias="POINTS_RECALC_LP_PRIORITY_RANK", ge=1, le=5000
    )
    lp_fallback_warn_ratio: float = Field(
        default=0.35, alias="POINTS_LP_FALLBACK_WARN_RATIO", ge=0, le=1
    )
    lp_fallback_warn_min_processed: int = Field(
        default=10, alias="POINTS_LP_FALLBACK_WARN_MIN_PROCESSED", ge=1
    )
    lp_priority_timeout_ms: int | None = Field(
        default=None,
        alias="POINTS_RECALC_LP_PRIORITY_TIMEOUT_MS",
        description="LP timeout for priority-rank wallets in recalc; defaults to max(base, 20s)",
    )
    lock_ttl_seconds: int = Field(default=8 * 60, alias="POINTS_INGEST_LOCK_TTL_SECONDS", ge=1)

    @field_validator("lp_timeout_seconds", "lp_priority_timeout_ms", mode="before")
    @classmethod
    def blank_timeout(cls, v: object) -> object:
        return _blank_to_none(v)


# Out-of-range jobs settings are clamped into these bounds rather than rejected.
_JOBS_BOUNDS: dict[str, tuple[int, int]] = {
    "max_ingest_rounds": (1, 48),
    "max_recalc_rounds": (1, 48),
    "recalc_limit": (1, 1000),
    "fast_lp_timeout_ms": (1000, 60_000),
    "deep_recalc_interval_ms": (0, 24 * 60 * 60 * 1000),
    "deep_recalc_rounds": (1, 12),
    "deep_recalc_limit": (1, 250),
    "deep_lp_timeout_ms": (1000, 60_000),
    "max_runtime_ms": (15_000, 5 * 60 * 1000),
}


class JobsSettings(BaseSettings):
    """Scheduled jobs run: ingest rounds, deep and fast recalc sweeps."""

    model_config = SettingsConfigDict(env_prefix="POINTS_JOBS_", extra="ignore")

    max_ingest_rounds: int = Field(default=6, alias="POINTS_JOBS_MAX_INGEST_ROUNDS")
    max_recalc_rounds: int = Field(default=4, alias="POINTS_JOBS_MAX_RECALC_ROUNDS")
    recalc_limit: int = Field(default=40, alias="POINTS_JOBS_RECALC_LIMIT")
    fast_lp_timeout_ms: int = Field(default=10_000, alias="POINTS_JOBS_FAST_LP_TIMEOUT_MS")
    deep_recalc_enabled: bool = Field(default=True, alias="POINTS_JOBS_DEEP_RECALC")
    deep_recalc_interval_ms: int = Field(
        default=10 * 60 * 1000, alias="POINTS_JOBS_DEEP_RECALC_INTERVAL_MS"
    )
    deep_recalc_rounds: int = Field(default=1, alias="POINTS_JOBS_DEEP_RECALC_ROUNDS")
    deep_recalc_limit: int = Field(default=12, alias="POINTS_JOBS_DEEP_RECALC_LIMIT")
    deep_lp_timeout_ms: int = Field(default=15_000, alias="POINTS_JOBS_DEEP_LP_TIMEOUT_MS")
    max_runtime_ms: int = Field(default=50_000, alias="POINTS_JOBS_MAX_RUNTIME_MS")

    @field_validator(*_JOBS_BOUNDS)
    @classmethod
    def clamp(cls, v: int, info: ValidationInfo) -> int:
        low, high = _JOBS_BOUNDS[info.field_name]
        return min(high, max(low, v))


class SelfHealSettings(BaseSettings):
    """Self-heal watchdog settings."""

    model_config = SettingsConfigDict(env_prefix="POINTS_", extra="ignore")

    api_base_url: str = Field(
        default="",
        alias="POINTS_API_BASE",
        description="Base URL of the internal jobs endpoint",
    )
    token: SecretStr | None = Field(
        default=None,
        alias="POINTS_INGEST_TOKEN",
        description="Shared secret sent as a Bearer token",
    )
    stale_ms: int = Field(default=8 * 60 * 1000, alias="POINTS_SELF_HEAL_STALE_MS")
    cooldown_ms: int = Field(default=3 * 60 * 1000, alias="POINTS_SELF_HEAL_COOLDOWN_MS")
    timeout_ms: int = Field(default=3000, alias="POINTS_SELF_HEAL_TIMEOUT_MS")

    @field_validator("api_base_url")
    @classmethod
    def strip_base(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @property
    def token_value(self) -> str:
        return self.token.get_secret_value() if self.token else ""


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from season_points.config import get_settings

        settings = get_settings()
        print(settings.season.season_id)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    season: SeasonSettings = Field(
        default_factory=lambda: SeasonSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    feeds: FeedSettings = Field(
        default_factory=lambda: FeedSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    tokens: TokenAddressSettings = Field(
        default_factory=lambda: TokenAddressSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    scoring: ScoringSettings = Field(
        default_factory=lambda: ScoringSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    rewards: RewardsSettings = Field(
        default_factory=lambda: RewardsSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ingestion: IngestionSettings = Field(
        default_factory=lambda: IngestionSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    jobs: JobsSettings = Field(
        default_factory=lambda: JobsSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    self_heal: SelfHealSettings = Field(
        default_factory=lambda: SelfHealSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "redis_url": self._redact_url(self.redis.url),
            "season": {
                "season_id": self.season.season_id,
                "start_ms": str(self.season.start_ms),
                "start_block": str(self.season.start_block),
                "end_ms": str(self.season.end_ms) if self.season.end_ms else "(not set)",
            },
            "feeds": {
                "v2_url": self.feeds.v2_url or "(not set)",
                "v2_api_key": "(set)" if self.feeds.v2_api_key else "(not set)",
                "v3_url": self.feeds.v3_url or "(not set)",
                "v3_api_key": "(set)" if self.feeds.v3_api_key else "(not set)",
                "price_endpoints": str(len(self.feeds.price_urls)),
            },
            "chain": {
                "rpc_url": self.chain.rpc_url,
                "staker_address": self.chain.staker_address or "(not set)",
            },
            "scoring": {
                "mode": self.scoring.mode.value,
                "volume_cap_usd": str(self.scoring.volume_cap_usd),
                "diminishing_factor": str(self.scoring.diminishing_factor),
            },
            "rewards": {
                "top100_pool_pct": str(self.rewards.top100_pool_pct),
                "top100_only": str(self.rewards.top100_only),
            },
            "jobs": {
                "max_ingest_rounds": str(self.jobs.max_ingest_rounds),
                "max_recalc_rounds": str(self.jobs.max_recalc_rounds),
                "deep_recalc_enabled": str(self.jobs.deep_recalc_enabled),
                "max_runtime_ms": str(self.jobs.max_runtime_ms),
            },
            "self_heal": {
                "api_base_url": self.self_heal.api_base_url or "(not set)",
                "token": "(set)" if self.self_heal.token else "(not set)",
            },
            "log_level": self.log_level,
        }

    def validate_requirements(
        self, *, command: Literal["ingest", "recalc", "rewards", "jobs"]
    ) -> None:
        """Validate command-specific requirements.

        Raises:
            ConfigurationError: A setting the command needs is missing.
        """
        if not self.season.season_id.strip():
            raise ConfigurationError("POINTS_SEASON_ID is required")
        if command in ("ingest", "recalc", "jobs"):
            if command in ("ingest", "jobs") and not (self.feeds.v2_url or self.feeds.v3_url):
                raise ConfigurationError(
                    "UNIV2_SUBGRAPH_URL or UNIV3_SUBGRAPH_URL is required for ingestion"
                )
            for name in ("crx", "weth", "usdm"):
                if not getattr(self.tokens, name):
                    raise ConfigurationError(f"POINTS_{name.upper()}_ADDRESS is required")

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when environment variables change.
    """
    get_settings.cache_clear()
