"""Tests for the indexed-feed GraphQL client."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from season_points.feeds.graph_client import (
    FeedError,
    FeedRetryError,
    FeedSchemaError,
    GraphClient,
    QueryVariant,
    QueryVariantCache,
    is_missing_field_error,
    split_feed_urls,
)

URL = "https://feed.example/graphql"


def _session_returning(status: int, payload: object) -> MagicMock:
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    session = MagicMock()
    session.closed = False
    session.post.return_value.__aenter__.return_value = response
    return session


class TestHelpers:
    def test_split_feed_urls_dedupes_in_order(self) -> None:
        urls = split_feed_urls("https://a", "https://b, https://a ,,https://c")
        assert urls == ["https://a", "https://b", "https://c"]

    def test_split_feed_urls_accepts_sequences(self) -> None:
        assert split_feed_urls(None, ["https://b"]) == ["https://b"]
        assert split_feed_urls("", None) == []

    @pytest.mark.parametrize(
        "message",
        [
            'Cannot query field "blockNumber" on type "Transaction"',
            "Type `Pool` has no field `sqrtPrice`",
            "Unknown field createdAtTimestamp",
        ],
    )
    def test_missing_field_markers(self, message: str) -> None:
        assert is_missing_field_error(message)

    def test_other_errors_are_not_schema_errors(self) -> None:
        assert not is_missing_field_error("indexer is behind")

    def test_variant_cache(self) -> None:
        cache = QueryVariantCache()
        cache.remember(URL, "swaps", "basic")
        assert cache.get(URL, "swaps") == "basic"
        assert len(cache) == 1
        cache.forget(URL, "swaps")
        assert cache.get(URL, "swaps") is None


class TestPostOnce:
    async def test_returns_data_object(self) -> None:
        session = _session_returning(200, {"data": {"swaps": []}})
        client = GraphClient(session)
        assert await client.post(URL, "query", api_key="secret") == {"swaps": []}

        _, kwargs = session.post.call_args
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        assert kwargs["json"]["variables"] == {}

    async def test_retryable_http_status(self) -> None:
        client = GraphClient(_session_returning(503, {}))
        with pytest.raises(FeedError) as exc_info:
            await client._post_once(URL, "query", {}, None)
        assert exc_info.value.retryable
        assert exc_info.value.http_status == 503

    async def test_client_error_status_is_not_retryable(self) -> None:
        client = GraphClient(_session_returning(400, {}))
        with pytest.raises(FeedError) as exc_info:
            await client._post_once(URL, "query", {}, None)
        assert not exc_info.value.retryable

    async def test_schema_error_classified(self) -> None:
        payload = {"errors": [{"message": 'Cannot query field "origin" on type "Swap"'}]}
        client = GraphClient(_session_returning(200, payload))
        with pytest.raises(FeedSchemaError):
            await client._post_once(URL, "query", {}, None)

    async def test_other_graphql_error_is_plain_feed_error(self) -> None:
        client = GraphClient(_session_returning(200, {"errors": ["indexer unavailable"]}))
        with pytest.raises(FeedError) as exc_info:
            await client._post_once(URL, "query", {}, None)
        assert not isinstance(exc_info.value, FeedSchemaError)
        assert not exc_info.value.retryable

    async def test_transport_timeout_is_retryable(self) -> None:
        session = MagicMock()
        session.closed = False
        session.post.return_value.__aenter__.side_effect = asyncio.TimeoutError()
        client = GraphClient(session)
        with pytest.raises(FeedError) as exc_info:
            await client._post_once(URL, "query", {}, None)
        assert exc_info.value.retryable

    async def test_transport_error_is_retryable(self) -> None:
        session = MagicMock()
        session.closed = False
        session.post.return_value.__aenter__.side_effect = aiohttp.ClientConnectionError("reset")
        client = GraphClient(session)
        with pytest.raises(FeedError) as exc_info:
            await client._post_once(URL, "query", {}, None)
        assert exc_info.value.retryable


class TestRetry:
    async def test_retries_then_succeeds(self) -> None:
        client = GraphClient(MagicMock(), max_retries=3, retry_base_delay=0)
        with patch.object(
            client,
            "_post_once",
            AsyncMock(side_effect=[FeedError("busy", retryable=True), {"ok": 1}]),
        ) as post_once:
            assert await client.post(URL, "query") == {"ok": 1}
        assert post_once.await_count == 2

    async def test_exhausted_retries_raise_retry_error(self) -> None:
        client = GraphClient(MagicMock(), max_retries=2, retry_base_delay=0)
        error = FeedError("busy", retryable=True, http_status=429)
        with patch.object(client, "_post_once", AsyncMock(side_effect=error)) as post_once:
            with pytest.raises(FeedRetryError) as exc_info:
                await client.post(URL, "query")
        assert post_once.await_count == 3
        assert exc_info.value.last_exception is error
        assert exc_info.value.http_status == 429

    async def test_non_retryable_raises_immediately(self) -> None:
        client = GraphClient(MagicMock(), max_retries=3, retry_base_delay=0)
        with patch.object(
            client, "_post_once", AsyncMock(side_effect=FeedError("bad request"))
        ) as post_once:
            with pytest.raises(FeedError):
                await client.post(URL, "query")
        assert post_once.await_count == 1


class TestVariants:
    rich = QueryVariant("rich", "query rich")
    basic = QueryVariant("basic", "query basic")

    async def test_falls_back_and_memoizes(self) -> None:
        client = GraphClient(MagicMock(), retry_base_delay=0)

        async def fake_post(url, query, variables=None, *, api_key=None):
            if query == "query rich":
                raise FeedSchemaError("Cannot query field rich")
            return {"variant": query}

        with patch.object(client, "post", AsyncMock(side_effect=fake_post)) as post:
            variant, data = await client.post_with_variants(URL, "fam", [self.rich, self.basic])
            assert variant is self.basic
            assert data == {"variant": "query basic"}
            assert client.variant_cache.get(URL, "fam") == "basic"

            post.reset_mock()
            variant, _ = await client.post_with_variants(URL, "fam", [self.rich, self.basic])
            assert variant is self.basic
            assert post.await_count == 1

    async def test_no_variant_accepted(self) -> None:
        client = GraphClient(MagicMock())
        with patch.object(
            client, "post", AsyncMock(side_effect=FeedSchemaError("Unknown field x"))
        ):
            with pytest.raises(FeedSchemaError):
                await client.post_with_variants(URL, "fam", [self.rich, self.basic])

    async def test_non_schema_errors_propagate(self) -> None:
        client = GraphClient(MagicMock())
        with patch.object(client, "post", AsyncMock(side_effect=FeedError("down"))):
            with pytest.raises(FeedError):
                await client.post_with_variants(URL, "fam", [self.rich, self.basic])

    async def test_requires_a_variant(self) -> None:
        client = GraphClient(MagicMock())
        with pytest.raises(ValueError):
            await client.post_with_variants(URL, "fam", [])
