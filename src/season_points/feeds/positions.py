"""Indexed LP-position feed.

Indexers in the wild disagree on which position fields exist, so the query is
expressed as seven variants from richest (creation time, sqrt price and
transaction timestamp) to the bare minimum.
"""

from __future__ import annotations

import logging

from season_points.feeds.graph_client import GraphClient, QueryVariant
from season_points.lp.models import FeedPosition, normalize_address

logger = logging.getLogger(__name__)

MAX_POSITIONS = 200
POSITIONS_PAGE_SIZE = 100
POSITIONS_FAMILY = "positions"


def _positions_query(*, created_at: bool, tx: bool, sqrt: bool) -> str:
    extra = []
    if created_at:
        extra.append("createdAtTimestamp")
    if tx:
        extra.append("transaction { timestamp }")
    pool_fields = "id tick sqrtPrice" if sqrt else "id tick"
    return f"""
    query Positions($owner: Bytes!, $first: Int!, $skip: Int!) {{
      positions(where: {{ owner: $owner, liquidity_gt: 0 }}, first: $first, skip: $skip) {{
        id
        liquidity
        {" ".join(extra)}
        tickLower {{ tickIdx }}
        tickUpper {{ tickIdx }}
        token0 {{ id decimals }}
        token1 {{ id decimals }}
        pool {{ {pool_fields} }}
      }}
    }}
    """


POSITION_QUERY_VARIANTS: tuple[QueryVariant, ...] = (
    QueryVariant("createdAt+sqrt+tx", _positions_query(created_at=True, tx=True, sqrt=True)),
    QueryVariant("createdAt+sqrt", _positions_query(created_at=True, tx=False, sqrt=True)),
    QueryVariant("tx+sqrt", _positions_query(created_at=False, tx=True, sqrt=True)),
    QueryVariant("createdAt", _positions_query(created_at=True, tx=False, sqrt=False)),
    QueryVariant("tx", _positions_query(created_at=False, tx=True, sqrt=False)),
    QueryVariant("basic+sqrt", _positions_query(created_at=False, tx=False, sqrt=True)),
    QueryVariant("basic", _positions_query(created_at=False, tx=False, sqrt=False)),
)


class PositionFeed:
    """Reads a wallet's open positions from the indexed LP-position feed."""

    def __init__(
        self,
        client: GraphClient,
        *,
        max_positions: int = MAX_POSITIONS,
        page_size: int = POSITIONS_PAGE_SIZE,
    ) -> None:
        self._client = client
        self._max_positions = max_positions
        self._page_size = page_size

    async def fetch_positions(
        self, feed_url: str, api_key: str | None, owner: str
    ) -> list[FeedPosition]:
        """Fetch up to ``max_positions`` open positions owned by ``owner``.

        Raises:
            FeedError: The feed failed or accepted none of the variants.
        """
        if not feed_url:
            return []
        owner = normalize_address(owner)
        rows: list[dict] = []
        variant: QueryVariant | None = None
        skip = 0

        while len(rows) < self._max_positions:
            first = min(self._page_size, self._max_positions - len(rows))
            variables = {"owner": owner, "first": first, "skip": skip}
            if variant is None:
                variant, data = await self._client.post_with_variants(
                    feed_url, POSITIONS_FAMILY, POSITION_QUERY_VARIANTS, variables, api_key=api_key
                )
            else:
                data = await self._client.post(feed_url, variant.query, variables, api_key=api_key)
            chunk = data.get("positions") or []
            rows.extend(chunk)
            if len(chunk) < first:
                break
            skip += len(chunk)

        logger.debug(
            "Fetched %d positions for %s using variant %s",
            len(rows),
            owner,
            variant.label if variant else "-",
        )
        return [FeedPosition(raw=row) for row in rows if isinstance(row, dict)]
