"""Storage layer - Redis leaderboard store and persisted records."""

from season_points.storage.models import (
    LeaderboardEntry,
    PointsSummary,
    WalletPointsRecord,
)

__all__ = [
    "LeaderboardEntry",
    "PointsSummary",
    "WalletPointsRecord",
]
