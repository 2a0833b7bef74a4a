"""Async client for GraphQL-style indexed feeds with typed errors and retry.

Errors are classified once, at the HTTP boundary, into :class:`FeedError`
instances carrying ``retryable`` and ``http_status``. The retry loop switches
on those fields only.

Schema drift is handled with capability variants: an ordered list of query
shapes from richest to narrowest. The first variant the endpoint accepts is
remembered per ``(url, family)`` so later calls go straight to it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Sequence

import aiohttp

logger = logging.getLogger(__name__)

# Constants
DEFAULT_TIMEOUT_SECONDS = 15.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_DELAY = 0.5
RETRY_STATUS_CODES = (408, 425, 429, 500, 502, 503, 504)
MISSING_FIELD_MARKERS = ("Cannot query field", "has no field", "Unknown field")


class FeedError(Exception):
    """Base exception for indexed-feed errors."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = False,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.http_status = http_status


class FeedSchemaError(FeedError):
    """Raised when the feed rejects a field of the query (schema drift)."""

    def __init__(self, message: str, http_status: int | None = None) -> None:
        super().__init__(message, retryable=False, http_status=http_status)


class FeedRetryError(FeedError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: FeedError | None = None) -> None:
        super().__init__(
            message,
            retryable=False,
            http_status=last_exception.http_status if last_exception else None,
        )
        self.last_exception = last_exception


def is_missing_field_error(message: str) -> bool:
    return any(marker in message for marker in MISSING_FIELD_MARKERS)


def split_feed_urls(primary: str | None, fallbacks: str | Sequence[str] | None = None) -> list[str]:
    """Primary URL followed by comma-separated fallbacks, de-duplicated in order."""
    candidates: list[str] = []
    for chunk in [primary or ""] + (
        fallbacks.split(",") if isinstance(fallbacks, str) else list(fallbacks or [])
    ):
        for url in str(chunk).split(","):
            url = url.strip()
            if url and url not in candidates:
                candidates.append(url)
    return candidates


@dataclass(frozen=True)
class QueryVariant:
    """One query shape in a capability list."""

    label: str
    query: str


class QueryVariantCache:
    """Remembers which variant of a query family an endpoint accepts."""

    def __init__(self) -> None:
        self._selected: dict[tuple[str, str], str] = {}

    def get(self, url: str, family: str) -> str | None:
        return self._selected.get((url, family))

    def remember(self, url: str, family: str, label: str) -> None:
        self._selected[(url, family)] = label

    def forget(self, url: str, family: str) -> None:
        self._selected.pop((url, family), None)

    def __len__(self) -> int:
        return len(self._selected)


class GraphClient:
    """Indexed-feed client with retry/backoff and capability variants.

    Example:
        ```python
        async with GraphClient() as client:
            data = await client.post(url, query, {"first": 10})
        ```
    """

    def __init__(
        self,
        session: aiohttp.ClientSession | None = None,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_delay: float = DEFAULT_RETRY_BASE_DELAY,
        variant_cache: QueryVariantCache | None = None,
    ) -> None:
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._max_retries = max(0, max_retries)
        self._retry_base_delay = retry_base_delay
        self.variant_cache = variant_cache or QueryVariantCache()

    async def __aenter__(self) -> GraphClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def aclose(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @staticmethod
    def _headers(api_key: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def _post_once(
        self,
        url: str,
        query: str,
        variables: dict[str, Any],
        api_key: str | None,
    ) -> dict[str, Any]:
        session = self._get_session()
        try:
            async with session.post(
                url,
                json={"query": query, "variables": variables},
                headers=self._headers(api_key),
                timeout=self._timeout,
            ) as response:
                status = response.status
                if status < 200 or status >= 300:
                    raise FeedError(
                        f"Feed HTTP {status}",
                        retryable=status in RETRY_STATUS_CODES,
                        http_status=status,
                    )
                try:
                    payload = await response.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError) as e:
                    raise FeedError(f"Invalid feed response: {e}", http_status=status) from e
        except asyncio.TimeoutError as e:
            raise FeedError("Feed request timed out", retryable=True) from e
        except aiohttp.ClientError as e:
            raise FeedError(f"Feed transport error: {e}", retryable=True) from e

        if not isinstance(payload, dict):
            raise FeedError("Invalid feed response: expected an object", http_status=status)

        errors = payload.get("errors") or []
        if errors:
            first = errors[0]
            message = str(first.get("message") if isinstance(first, dict) else first) or "Feed error"
            if is_missing_field_error(message):
                raise FeedSchemaError(message, http_status=status)
            raise FeedError(message, http_status=status)

        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    async def post(
        self,
        url: str,
        query: str,
        variables: dict[str, Any] | None = None,
        *,
        api_key: str | None = None,
    ) -> dict[str, Any]:
        """POST a query and return its ``data`` object.

        Retryable failures are retried with exponential backoff.

        Raises:
            FeedSchemaError: The feed rejected a field of the query.
            FeedError: Non-retryable failure.
            FeedRetryError: Retryable failures exhausted every attempt.
        """
        variables = variables or {}
        last_exception: FeedError | None = None
        delay = self._retry_base_delay

        for attempt in range(self._max_retries + 1):
            try:
                return await self._post_once(url, query, variables, api_key)
            except FeedError as e:
                if not e.retryable:
                    raise
                last_exception = e
                if attempt == self._max_retries:
                    break
                logger.warning(
                    "Feed attempt %d/%d failed for %s: %s. Retrying in %.1f seconds...",
                    attempt + 1,
                    self._max_retries + 1,
                    url,
                    str(e),
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2

        raise FeedRetryError(
            f"All {self._max_retries + 1} attempts failed for {url}",
            last_exception=last_exception,
        )

    async def post_with_variants(
        self,
        url: str,
        family: str,
        variants: Sequence[QueryVariant],
        variables: dict[str, Any] | None = None,
        *,
        api_key: str | None = None,
    ) -> tuple[QueryVariant, dict[str, Any]]:
        """Run the first variant of ``family`` the endpoint accepts.

        The cached variant (if any) is tried first, then the remaining ones in
        priority order. Only schema errors move on to the next variant.

        Returns:
            The variant that succeeded and its ``data`` object.

        Raises:
            FeedSchemaError: No variant is accepted by the endpoint.
        """
        if not variants:
            raise ValueError("At least one query variant is required")

        cached = self.variant_cache.get(url, family)
        ordered = sorted(variants, key=lambda v: v.label != cached) if cached else list(variants)

        last_error: FeedSchemaError | None = None
        for variant in ordered:
            try:
                data = await self.post(url, variant.query, variables, api_key=api_key)
            except FeedSchemaError as e:
                last_error = e
                if variant.label == cached:
                    self.variant_cache.forget(url, family)
                logger.debug("Variant %s/%s rejected by %s: %s", family, variant.label, url, e)
                continue
            if variant.label != cached:
                self.variant_cache.remember(url, family, variant.label)
            return variant, data

        raise FeedSchemaError(
            f"No {family} query variant accepted by {url}: {last_error}",
            http_status=last_error.http_status if last_error else None,
        )
