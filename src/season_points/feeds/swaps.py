"""Swap-feed ingestion: per-wallet USD volume for a time window.

Pages the indexed swap feed in ascending timestamp order from a resumable
cursor and sums ``abs(amountUSD)`` per acting wallet.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from season_points.feeds.graph_client import GraphClient, QueryVariant

logger = logging.getLogger(__name__)

PAGE_LIMIT = 1000
MAX_PAGES = 50


class SwapSource(str, Enum):
    """AMM version a swap feed belongs to."""

    V2 = "v2"
    V3 = "v3"

    @property
    def wallet_fields(self) -> tuple[str, ...]:
        if self == SwapSource.V3:
            return ("origin", "sender", "recipient")
        return ("sender", "to")


def _swaps_query(source: SwapSource, include_block: bool) -> str:
    block_field = "transaction { blockNumber }" if include_block else ""
    return f"""
    query Swaps($start: Int!, $end: Int!, $first: Int!) {{
      swaps(
        first: $first
        orderBy: timestamp
        orderDirection: asc
        where: {{ timestamp_gte: $start, timestamp_lte: $end }}
      ) {{
        id
        timestamp
        amountUSD
        {" ".join(source.wallet_fields)}
        {block_field}
      }}
    }}
    """


def swap_query_variants(source: SwapSource, include_block: bool) -> list[QueryVariant]:
    variants = []
    if include_block:
        variants.append(QueryVariant("with_block", _swaps_query(source, include_block=True)))
    variants.append(QueryVariant("basic", _swaps_query(source, include_block=False)))
    return variants


def resolve_wallet(swap: dict[str, Any], source: SwapSource) -> str:
    """Acting wallet of a swap row, lower-cased ("" if none).

    v3 prefers ``origin``, then ``sender``, then ``recipient``; v2 prefers
    ``sender``, then ``to``.
    """
    for name in source.wallet_fields:
        value = swap.get(name)
        if value:
            return str(value).strip().lower()
    return ""


def _row_block(swap: dict[str, Any]) -> int | None:
    tx = swap.get("transaction")
    raw = tx.get("blockNumber") if isinstance(tx, dict) else swap.get("blockNumber")
    try:
        return int(raw) if raw is not None and raw != "" else None
    except (TypeError, ValueError):
        return None


def _row_amount(swap: dict[str, Any]) -> float | None:
    try:
        amount = abs(float(swap.get("amountUSD") or 0))
    except (TypeError, ValueError):
        return None
    if not math.isfinite(amount) or amount <= 0:
        return None
    return amount


def _row_timestamp(swap: dict[str, Any]) -> int | None:
    try:
        return int(float(swap.get("timestamp") or 0))
    except (TypeError, ValueError):
        return None


@dataclass
class SourceIngestResult:
    """Outcome of ingesting one swap source."""

    source: SwapSource
    wallet_volume_deltas: dict[str, float] = field(default_factory=dict)
    start_cursor: int = 0
    next_cursor: int = 0
    pages: int = 0
    rows: int = 0
    skipped_rows: int = 0
    block_filter_active: bool = False

    @property
    def cursor_advanced(self) -> bool:
        return self.next_cursor > self.start_cursor


async def ingest_source(
    client: GraphClient,
    source: SwapSource | str,
    feed_url: str,
    api_key: str | None,
    start_sec: int,
    end_sec: int,
    *,
    start_block: int | None = None,
    page_limit: int = PAGE_LIMIT,
    max_pages: int = MAX_PAGES,
) -> SourceIngestResult:
    """Aggregate swap volume per wallet for ``[start_sec, end_sec]``.

    The cursor moves to ``last_row_timestamp + 1`` only when the page's last
    timestamp is past the current cursor. A short page ends the pass.

    With ``start_block`` set, rows mined before it are dropped. If the feed
    cannot serve the block field, the narrower query without it is used.

    Raises:
        FeedError: On a non-recoverable feed failure for the first page or
            any later page. Deltas from earlier pages are discarded with the
            exception; the caller commits nothing for this source.
    """
    source = SwapSource(source)
    result = SourceIngestResult(source=source, start_cursor=start_sec, next_cursor=start_sec)
    include_block = start_block is not None and start_block > 0
    variants = swap_query_variants(source, include_block)
    family = f"swaps:{source.value}"

    cursor = start_sec
    while result.pages < max_pages:
        variant, data = await client.post_with_variants(
            feed_url,
            family,
            variants,
            {"start": cursor, "end": end_sec, "first": page_limit},
            api_key=api_key,
        )
        result.pages += 1
        result.block_filter_active = variant.label == "with_block"
        swaps = data.get("swaps") or []
        if not swaps:
            break

        last_ts = cursor
        for swap in swaps:
            result.rows += 1
            ts = _row_timestamp(swap)
            if ts is not None and ts > last_ts:
                last_ts = ts
            if result.block_filter_active:
                block = _row_block(swap)
                if block is not None and block < start_block:  # type: ignore[operator]
                    result.skipped_rows += 1
                    continue
            wallet = resolve_wallet(swap, source)
            amount = _row_amount(swap)
            if not wallet or amount is None:
                result.skipped_rows += 1
                continue
            result.wallet_volume_deltas[wallet] = result.wallet_volume_deltas.get(wallet, 0.0) + amount

        logger.debug(
            "Source %s page %d: %d rows, cursor %d -> %d",
            source.value,
            result.pages,
            len(swaps),
            cursor,
            last_ts + 1 if last_ts > cursor else cursor,
        )

        if last_ts <= cursor:
            break
        cursor = last_ts + 1
        if len(swaps) < page_limit:
            break
    else:
        logger.warning("Source %s hit the %d page cap at cursor %d", source.value, max_pages, cursor)

    result.next_cursor = cursor
    return result
