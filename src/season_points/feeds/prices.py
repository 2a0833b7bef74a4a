"""Token USD prices from the indexed feed, with pool-ratio inference.

``price = derivedETH * bundle.ethPriceUSD``. Several endpoints may be
configured; the one pricing the most requested tokens wins.
"""

from __future__ import annotations

import logging
import math
from typing import Iterable, Sequence

from season_points.feeds.graph_client import FeedError, GraphClient
from season_points.lp.models import LpPosition, normalize_address
from season_points.lp.tick_math import sqrt_price_to_price_ratio, tick_to_price_ratio

logger = logging.getLogger(__name__)

TOKEN_PRICES_QUERY = """
query TokenPrices($ids: [Bytes!]!) {
  tokens(where: { id_in: $ids }) {
    id
    derivedETH
  }
  bundles(first: 1) {
    ethPriceUSD
  }
}
"""

MAX_INFERENCE_PASSES = 3
MIN_PRICE_RATIO = 1e-12
MAX_PRICE_RATIO = 1e12


class PriceOracleError(Exception):
    """Raised when every price endpoint failed and none returned data."""

    def __init__(self, message: str, errors: Sequence[Exception] = ()) -> None:
        super().__init__(message)
        self.errors = list(errors)


def _positive(value: object) -> float | None:
    try:
        num = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None
    return num if math.isfinite(num) and num > 0 else None


def parse_token_prices(data: dict) -> dict[str, float]:
    """Map token address -> USD from a TokenPrices response."""
    bundles = data.get("bundles") or []
    bundle = bundles[0] if bundles and isinstance(bundles[0], dict) else {}
    eth_price = _positive(bundle.get("ethPriceUSD") or bundle.get("ethPrice"))
    if eth_price is None:
        return {}
    prices: dict[str, float] = {}
    for token in data.get("tokens") or []:
        derived = _positive(token.get("derivedETH"))
        address = normalize_address(token.get("id"))
        if derived is None or not address:
            continue
        prices[address] = derived * eth_price
    return prices


class PriceOracle:
    """Resolves USD prices for token addresses across fallback endpoints.

    Example:
        ```python
        oracle = PriceOracle(client, stable_token=usdm)
        prices = await oracle.fetch_token_prices(urls, api_key, [crx, weth])
        ```
    """

    def __init__(self, client: GraphClient, *, stable_token: str | None = None) -> None:
        self._client = client
        self._stable_token = normalize_address(stable_token) if stable_token else None

    async def fetch_token_prices(
        self,
        feed_urls: Sequence[str],
        api_key: str | None,
        token_addresses: Iterable[str],
    ) -> dict[str, float]:
        """Fetch USD prices, trying each endpoint in order.

        Stops early once every address is priced. Otherwise keeps the largest
        result; on ties the earlier endpoint wins.

        Raises:
            PriceOracleError: Every endpoint failed and none returned data.
        """
        wanted = sorted({normalize_address(a) for a in token_addresses if a})
        if not wanted or not feed_urls:
            return self._with_stable({})

        best: dict[str, float] = {}
        errors: list[Exception] = []
        answered = False

        for url in feed_urls:
            try:
                data = await self._client.post(
                    url, TOKEN_PRICES_QUERY, {"ids": wanted}, api_key=api_key
                )
            except FeedError as e:
                logger.warning("Price endpoint %s failed: %s", url, e)
                errors.append(e)
                continue
            answered = True
            prices = {k: v for k, v in parse_token_prices(data).items() if k in wanted}
            logger.debug("Price endpoint %s priced %d/%d tokens", url, len(prices), len(wanted))
            if len(prices) > len(best):
                best = prices
            if len(best) == len(wanted):
                break

        if not answered and errors:
            raise PriceOracleError(
                f"All {len(errors)} price endpoints failed: {errors[-1]}", errors=errors
            )
        return self._with_stable(best)

    def _with_stable(self, prices: dict[str, float]) -> dict[str, float]:
        if self._stable_token and self._stable_token not in prices:
            prices = dict(prices)
            prices[self._stable_token] = 1.0
        return prices


def _position_ratio(position: LpPosition) -> float | None:
    if position.pool_tick is not None:
        ratio = tick_to_price_ratio(position.pool_tick, position.decimals0, position.decimals1)
    elif position.pool_sqrt_price_x96:
        ratio = sqrt_price_to_price_ratio(
            position.pool_sqrt_price_x96, position.decimals0, position.decimals1
        )
    else:
        return None
    if ratio is None or not MIN_PRICE_RATIO <= ratio <= MAX_PRICE_RATIO:
        return None
    return ratio


def infer_missing_prices(
    positions: Sequence[LpPosition],
    prices: dict[str, float],
    max_passes: int = MAX_INFERENCE_PASSES,
) -> dict[str, float]:
    """Backfill prices from pool ratios where exactly one side is priced.

    ``ratio`` is the price of token0 in token1 units, so
    ``price0 = price1 * ratio`` and ``price1 = price0 / ratio``. Runs up to
    ``max_passes`` times to follow chains of pools; stops early when a pass
    changes nothing. Returns a new dict.
    """
    out = dict(prices)
    for _ in range(max_passes):
        changed = False
        for position in positions:
            price0 = _positive(out.get(position.token0))
            price1 = _positive(out.get(position.token1))
            if (price0 is None) == (price1 is None):
                continue
            ratio = _position_ratio(position)
            if ratio is None:
                continue
            if price0 is None:
                inferred = price1 * ratio  # type: ignore[operator]
                target = position.token0
            else:
                inferred = price0 / ratio
                target = position.token1
            if math.isfinite(inferred) and inferred > 0:
                out[target] = inferred
                changed = True
        if not changed:
            break
    return out
