"""Indexed feeds - GraphQL client, swap ingestion, prices and LP positions."""

from season_points.feeds.graph_client import (
    FeedError,
    FeedRetryError,
    FeedSchemaError,
    GraphClient,
    QueryVariant,
    split_feed_urls,
)
from season_points.feeds.swaps import (
    SourceIngestResult,
    SwapSource,
    ingest_source,
    resolve_wallet,
)

__all__ = [
    "FeedError",
    "FeedRetryError",
    "FeedSchemaError",
    "GraphClient",
    "QueryVariant",
    "SourceIngestResult",
    "SwapSource",
    "ingest_source",
    "resolve_wallet",
    "split_feed_urls",
]
