"""Wallet LP valuation.

Combines the indexed LP-position feed, the price map, tick math and the
on-chain reader into a single :class:`LpData` per wallet. Only boosted-pair
positions (CRX/ETH and CRX/USDM) are valued; other liquidity earns nothing.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Mapping, Sequence

from season_points.feeds.graph_client import FeedError
from season_points.feeds.positions import PositionFeed
from season_points.feeds.prices import infer_missing_prices
from season_points.lp.chain import ChainReader
from season_points.lp.models import (
    AddressConfig,
    BoostPair,
    LpData,
    LpPosition,
    PositionSource,
)
from season_points.lp.tick_math import (
    format_units,
    get_amounts_for_liquidity,
    is_in_range,
    tick_to_sqrt_price_x96,
)
from season_points.scoring.points import get_tier_multiplier

logger = logging.getLogger(__name__)


def needs_chain_fallback(positions: Sequence[LpPosition]) -> bool:
    """True when feed data is too thin to value or age the wallet's LP.

    That is: no positions, no creation time on any of them, or any position
    without pool price data.
    """
    if not positions:
        return True
    if not any(p.created_at for p in positions):
        return True
    return any(not p.has_pool_price for p in positions)


def value_position(position: LpPosition, prices: Mapping[str, float]) -> tuple[float, bool] | None:
    """USD value and in-range flag of one position, None if unpriceable."""
    sqrt_price = position.current_sqrt_price_x96()
    sqrt_a = tick_to_sqrt_price_x96(position.tick_lower)
    sqrt_b = tick_to_sqrt_price_x96(position.tick_upper)
    if not sqrt_price or not sqrt_a or not sqrt_b:
        return None

    amounts = get_amounts_for_liquidity(sqrt_price, sqrt_a, sqrt_b, position.liquidity)
    if amounts is None:
        return None

    price0 = prices.get(position.token0)
    price1 = prices.get(position.token1)
    if price0 is None or price1 is None or not math.isfinite(price0) or not math.isfinite(price1):
        return None

    usd = (
        format_units(amounts[0], position.decimals0) * price0
        + format_units(amounts[1], position.decimals1) * price1
    )
    if not math.isfinite(usd):
        return None
    return usd, is_in_range(sqrt_price, sqrt_a, sqrt_b)


class LpValuator:
    """Computes a wallet's boosted LP value, feed first and chain second.

    Example:
        ```python
        valuator = LpValuator(PositionFeed(client), chain_reader)
        lp = await valuator.compute_lp_data(url, key, wallet, addresses, prices)
        ```
    """

    def __init__(self, position_feed: PositionFeed, chain_reader: ChainReader | None = None) -> None:
        self._position_feed = position_feed
        self._chain_reader = chain_reader

    async def _feed_positions(
        self, feed_url: str, api_key: str | None, wallet: str
    ) -> list[LpPosition]:
        if not feed_url:
            return []
        try:
            rows = await self._position_feed.fetch_positions(feed_url, api_key, wallet)
        except FeedError as e:
            logger.warning("Position feed failed for %s: %s", wallet, e)
            return []
        return [row.to_lp_position() for row in rows]

    async def compute_lp_data(
        self,
        feed_url: str,
        api_key: str | None,
        wallet: str,
        addresses: AddressConfig,
        price_map: Mapping[str, float],
        start_block: int | None = None,
        *,
        allow_onchain: bool = True,
        allow_staker_scan: bool = True,
    ) -> LpData:
        """Value a wallet's boosted-pair liquidity.

        Positions that cannot be priced set ``missing_price`` and are left
        out; the other positions still count.
        """
        positions = [p for p in await self._feed_positions(feed_url, api_key, wallet) if p.liquidity > 0]
        source = PositionSource.FEED if positions else PositionSource.NONE
        chain_age: int | None = None

        if allow_onchain and self._chain_reader is not None and needs_chain_fallback(positions):
            known = {}
            for p in positions:
                known[p.token0] = p.decimals0
                known[p.token1] = p.decimals1
            onchain = await self._chain_reader.fetch_onchain_positions(
                wallet, known, start_block, allow_staker_scan=allow_staker_scan
            )
            if onchain.positions:
                logger.debug(
                    "Using on-chain positions for %s (%d from chain, %d from feed)",
                    wallet,
                    len(onchain.positions),
                    len(positions),
                )
                positions = [p for p in onchain.positions if p.liquidity > 0]
                source = PositionSource.CHAIN
                chain_age = onchain.lp_age_seconds

        buckets: list[tuple[LpPosition, BoostPair]] = []
        for position in positions:
            pair = addresses.classify_pair(position.token0, position.token1)
            if pair is not None:
                buckets.append((position, pair))
        if not buckets:
            return LpData(source=source)

        prices = infer_missing_prices(
            [p for p, _ in buckets if not p.pool_state_estimated],
            {k.lower(): v for k, v in price_map.items()},
        )

        lp_usd = 0.0
        totals = {BoostPair.CRX_ETH: 0.0, BoostPair.CRX_USDM: 0.0}
        in_range_usd = 0.0
        has_range_data = False
        has_in_range = False
        missing_price = False
        earliest_created: int | None = None

        for position, pair in buckets:
            if position.created_at and (earliest_created is None or position.created_at < earliest_created):
                earliest_created = position.created_at
            valued = value_position(position, prices)
            if valued is None:
                missing_price = True
                continue
            usd, in_range = valued
            has_range_data = True
            lp_usd += usd
            totals[pair] += usd
            if in_range:
                has_in_range = True
                in_range_usd += usd

        if source == PositionSource.CHAIN:
            lp_age = chain_age
        elif earliest_created is not None:
            lp_age = max(0, int(time.time()) - earliest_created)
        else:
            lp_age = None

        if missing_price:
            logger.debug("Some positions of %s could not be priced", wallet)

        return LpData(
            lp_usd=lp_usd,
            lp_usd_crx_eth=totals[BoostPair.CRX_ETH],
            lp_usd_crx_usdm=totals[BoostPair.CRX_USDM],
            has_boost_lp=True,
            lp_age_seconds=lp_age,
            base_multiplier=get_tier_multiplier(lp_age),
            lp_in_range_pct=min(1.0, in_range_usd / lp_usd) if lp_usd > 0 else 0.0,
            has_range_data=has_range_data,
            has_in_range=has_in_range,
            missing_price=missing_price,
            position_count=len(buckets),
            source=source,
        )
