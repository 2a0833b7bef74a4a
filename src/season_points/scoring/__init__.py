"""Scoring - points, reward distribution and claims."""

from season_points.scoring.points import (
    PointsBreakdown,
    ScoringMode,
    ScoringPolicy,
    compute_points,
    get_tier_multiplier,
)

__all__ = [
    "PointsBreakdown",
    "ScoringMode",
    "ScoringPolicy",
    "compute_points",
    "get_tier_multiplier",
]
