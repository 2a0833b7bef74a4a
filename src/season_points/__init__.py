"""Season points leaderboard engine.

Aggregates per-wallet swap volume and boosted LP value into a seasonal points
leaderboard and distributes the season's CRX reward pool by rank.
"""

__version__ = "0.1.0"
