"""Tests for swap-feed ingestion."""

from __future__ import annotations

from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from season_points.feeds.graph_client import FeedError, QueryVariant
from season_points.feeds.swaps import (
    SourceIngestResult,
    SwapSource,
    ingest_source,
    resolve_wallet,
    swap_query_variants,
)

URL = "https://feed.example/v3"
WALLET_A = "0x" + "a" * 40
WALLET_B = "0x" + "b" * 40


def _swap(ts: int, amount: object, **wallets: Any) -> dict[str, Any]:
    return {"id": f"{ts}-{amount}", "timestamp": str(ts), "amountUSD": amount, **wallets}


def _client(*pages: list[dict[str, Any]], label: str = "basic") -> MagicMock:
    client = MagicMock()
    variant = QueryVariant(label, "query")
    client.post_with_variants = AsyncMock(side_effect=[(variant, {"swaps": page}) for page in pages])
    return client


class TestResolveWallet:
    def test_v3_prefers_origin(self) -> None:
        row = {"origin": "0xORIGIN", "sender": "0xrouter", "recipient": "0xrecipient"}
        assert resolve_wallet(row, SwapSource.V3) == "0xorigin"

    def test_v3_falls_back_to_sender_then_recipient(self) -> None:
        assert resolve_wallet({"sender": "0xS", "recipient": "0xR"}, SwapSource.V3) == "0xs"
        assert resolve_wallet({"recipient": "0xR"}, SwapSource.V3) == "0xr"

    def test_v2_prefers_sender_then_to(self) -> None:
        assert resolve_wallet({"sender": "0xS", "to": "0xT"}, SwapSource.V2) == "0xs"
        assert resolve_wallet({"sender": "", "to": "0xT"}, SwapSource.V2) == "0xt"
        assert resolve_wallet({}, SwapSource.V2) == ""

    def test_block_variant_listed_first(self) -> None:
        labels = [v.label for v in swap_query_variants(SwapSource.V3, include_block=True)]
        assert labels == ["with_block", "basic"]
        assert [v.label for v in swap_query_variants(SwapSource.V2, include_block=False)] == ["basic"]


class TestIngestSource:
    async def test_aggregates_abs_volume_per_wallet(self) -> None:
        page = [
            _swap(100, "10.5", origin=WALLET_A),
            _swap(101, "-4.5", origin=WALLET_A.upper()),
            _swap(102, "20", origin=WALLET_B),
        ]
        client = _client(page)
        result = await ingest_source(client, "v3", URL, None, 100, 200, page_limit=1000)

        assert result.wallet_volume_deltas == {WALLET_A: 15.0, WALLET_B: 20.0}
        assert result.next_cursor == 103
        assert result.cursor_advanced
        assert result.pages == 1
        assert result.rows == 3

    async def test_skips_invalid_rows(self) -> None:
        page = [
            _swap(100, "0", origin=WALLET_A),
            _swap(101, "nan", origin=WALLET_A),
            _swap(102, "abc", origin=WALLET_A),
            _swap(103, "5"),
            _swap(104, "7", origin=WALLET_B),
        ]
        result = await ingest_source(_client(page), SwapSource.V3, URL, None, 100, 200)
        assert result.wallet_volume_deltas == {WALLET_B: 7.0}
        assert result.skipped_rows == 4

    async def test_pages_until_short_page(self) -> None:
        first = [_swap(100, "1", sender=WALLET_A), _swap(101, "1", sender=WALLET_A)]
        second = [_swap(150, "2", sender=WALLET_B)]
        client = _client(first, second)
        result = await ingest_source(client, SwapSource.V2, URL, "key", 100, 200, page_limit=2)

        assert result.pages == 2
        assert result.next_cursor == 151
        assert result.wallet_volume_deltas == {WALLET_A: 2.0, WALLET_B: 2.0}
        second_call = client.post_with_variants.await_args_list[1]
        assert second_call.args[3] == {"start": 102, "end": 200, "first": 2}
        assert second_call.kwargs["api_key"] == "key"

    async def test_empty_page_keeps_cursor(self) -> None:
        result = await ingest_source(_client([]), SwapSource.V3, URL, None, 500, 900)
        assert result.next_cursor == 500
        assert not result.cursor_advanced
        assert result.wallet_volume_deltas == {}

    async def test_stale_page_does_not_move_cursor(self) -> None:
        page = [_swap(400, "3", origin=WALLET_A)]
        result = await ingest_source(_client(page), SwapSource.V3, URL, None, 500, 900)
        assert result.next_cursor == 500
        assert not result.cursor_advanced

    async def test_page_cap(self) -> None:
        pages = [[_swap(100 + i, "1", origin=WALLET_A)] for i in range(3)]
        result = await ingest_source(
            _client(*pages), SwapSource.V3, URL, None, 100, 900, page_limit=1, max_pages=3
        )
        assert result.pages == 3
        assert result.next_cursor == 103
        assert result.wallet_volume_deltas == {WALLET_A: 3.0}

    async def test_block_filter_drops_early_rows(self) -> None:
        page = [
            {**_swap(100, "5", origin=WALLET_A), "transaction": {"blockNumber": "99"}},
            {**_swap(101, "6", origin=WALLET_B), "transaction": {"blockNumber": "100"}},
        ]
        client = _client(page, label="with_block")
        result = await ingest_source(client, SwapSource.V3, URL, None, 100, 200, start_block=100)

        assert result.block_filter_active
        assert result.wallet_volume_deltas == {WALLET_B: 6.0}
        variants = client.post_with_variants.await_args.args[2]
        assert variants[0].label == "with_block"

    async def test_block_filter_ignored_on_narrow_variant(self) -> None:
        page = [{**_swap(100, "5", origin=WALLET_A), "transaction": {"blockNumber": "1"}}]
        result = await ingest_source(
            _client(page, label="basic"), SwapSource.V3, URL, None, 100, 200, start_block=100
        )
        assert not result.block_filter_active
        assert result.wallet_volume_deltas == {WALLET_A: 5.0}

    async def test_feed_error_propagates(self) -> None:
        client = MagicMock()
        client.post_with_variants = AsyncMock(side_effect=FeedError("down"))
        with pytest.raises(FeedError):
            await ingest_source(client, SwapSource.V3, URL, None, 100, 200)

    def test_result_defaults(self) -> None:
        result = SourceIngestResult(source=SwapSource.V2, start_cursor=10, next_cursor=10)
        assert not result.cursor_advanced
