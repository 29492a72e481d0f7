"""Fetchers: page retrieval in front of the raw-page cache.

This module provides SyncFetcher and AsyncFetcher. Both consult the
raw-page namespace of a CacheStore under the same key the driver uses for
the processed-result namespace, so a page has one identity in both caches.

The fetcher is responsible for:

- Maintaining the HTTP client (httpx.Client or httpx.AsyncClient)
- Returning cached pages without touching the network
- Converting HTTP responses to RawPage objects and storing them
- Raising FetchError for transport failures and error statuses

Retry policy belongs to the driver; fetchers never retry. AsyncFetcher runs
cache reads and writes in a worker thread so disk I/O never blocks the
event loop.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import httpx

from arbor.cache.coordination import AsyncSingleFlight
from arbor.cache.store import CacheStore, Namespace
from arbor.common.exceptions import (
    CacheError,
    CacheReadError,
    CacheWriteError,
    FetchError,
    RequestTimeoutException,
)
from arbor.config import HttpOptions
from arbor.data_types import RawPage, RunStats

logger = logging.getLogger(__name__)

CacheErrorCallback = Callable[[CacheError], None]


def _to_raw_page(url: str, http_response: httpx.Response) -> RawPage:
    """Convert an httpx response, raising FetchError on error statuses."""
    if http_response.status_code >= 400:
        raise FetchError(
            url,
            f"HTTP {http_response.status_code}",
            status_code=http_response.status_code,
        )
    return RawPage(
        url=url,
        content=http_response.content,
        status_code=http_response.status_code,
        headers={k.lower(): v for k, v in http_response.headers.items()},
    )


def _request_kwargs(options: HttpOptions) -> dict[str, Any]:
    return {
        "headers": options.headers,
        "timeout": options.timeout_seconds,
        "follow_redirects": options.follow_redirects,
    }


class _CachedFetchMixin:
    """Raw-cache bookkeeping shared by both fetchers."""

    cache: CacheStore
    stats: RunStats

    def _cached_page(
        self, key: str, on_cache_error: CacheErrorCallback | None
    ) -> RawPage | None:
        try:
            page = self.cache.get(Namespace.RAW, key)
        except CacheReadError as e:
            _route_cache_error(e, on_cache_error)
            return None
        return self._count_hit(page)

    def _store_page(
        self,
        key: str,
        page: RawPage,
        on_cache_error: CacheErrorCallback | None,
    ) -> None:
        try:
            self.cache.put(Namespace.RAW, key, page)
        except CacheWriteError as e:
            _route_cache_error(e, on_cache_error)

    def _count_hit(self, page: RawPage | None) -> RawPage | None:
        if page is not None:
            self.stats.raw_cache_hits += 1
        return page


def _route_cache_error(
    error: CacheError, on_cache_error: CacheErrorCallback | None
) -> None:
    if on_cache_error is None:
        raise error
    on_cache_error(error)


class SyncFetcher(_CachedFetchMixin):
    """Fetches pages for synchronous drivers.

    Example::

        with SyncFetcher(CacheStore.on_disk("cache")) as fetcher:
            page = fetcher.fetch(
                "https://example.com/", "example/index", HttpOptions()
            )

    Args:
        cache: Store whose raw-page namespace backs the fetcher.
        stats: Counters to update. A fresh RunStats if omitted.
        transport: Optional httpx transport (e.g. httpx.MockTransport).
    """

    def __init__(
        self,
        cache: CacheStore,
        stats: RunStats | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.cache = cache
        self.stats = stats if stats is not None else RunStats()
        self._client = httpx.Client(transport=transport)

    def close(self) -> None:
        """Close the HTTP client and release resources."""
        self._client.close()

    def __enter__(self) -> SyncFetcher:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def fetch(
        self,
        url: str,
        key: str,
        options: HttpOptions,
        refresh: bool = False,
        on_cache_error: CacheErrorCallback | None = None,
    ) -> RawPage:
        """Return the page for ``url``, from the cache when possible.

        Args:
            url: Absolute URL to retrieve.
            key: Rendered cache key for the page.
            options: Effective HTTP options.
            refresh: Skip the cache read (the result is still stored).
            on_cache_error: Receives cache failures instead of raising
                them; a failed read then counts as a miss.

        Returns:
            The RawPage.

        Raises:
            FetchError: On transport failure or HTTP status >= 400.
            RequestTimeoutException: When the socket timeout elapses.
        """

        def load() -> RawPage:
            if not refresh:
                cached = self._cached_page(key, on_cache_error)
                if cached is not None:
                    return cached

            page = self.resolve(url, options)
            self._store_page(key, page, on_cache_error)
            return page

        return self.cache.single_flight(Namespace.RAW, key, load)

    def resolve(self, url: str, options: HttpOptions) -> RawPage:
        """Retrieve ``url`` over the network, bypassing the cache."""
        logger.debug(f"GET {url}", extra={"url": url})
        self.stats.network_fetches += 1
        try:
            http_response = self._client.request(
                "GET", url, **_request_kwargs(options)
            )
        except httpx.TimeoutException:
            raise RequestTimeoutException(
                url=url, timeout_seconds=options.timeout_seconds
            ) from None
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise FetchError(url, f"{type(e).__name__}: {e}") from e
        return _to_raw_page(url, http_response)


class AsyncFetcher(_CachedFetchMixin):
    """Fetches pages for asynchronous drivers.

    Concurrent fetches for the same key share one network request.

    Example::

        async with AsyncFetcher(CacheStore.on_disk("cache")) as fetcher:
            page = await fetcher.fetch(url, key, HttpOptions())
    """

    def __init__(
        self,
        cache: CacheStore,
        stats: RunStats | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.cache = cache
        self.stats = stats if stats is not None else RunStats()
        self._client = httpx.AsyncClient(transport=transport)
        self._flights = AsyncSingleFlight()

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        await self._client.aclose()

    async def __aenter__(self) -> AsyncFetcher:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def fetch(
        self,
        url: str,
        key: str,
        options: HttpOptions,
        refresh: bool = False,
        on_cache_error: CacheErrorCallback | None = None,
    ) -> RawPage:
        """Async counterpart of SyncFetcher.fetch()."""

        async def load() -> RawPage:
            if not refresh:
                cached = await self._acached_page(key, on_cache_error)
                if cached is not None:
                    return cached

            page = await self.resolve(url, options)
            await self._astore_page(key, page, on_cache_error)
            return page

        return await self._flights.do(key, load)

    async def _acached_page(
        self, key: str, on_cache_error: CacheErrorCallback | None
    ) -> RawPage | None:
        try:
            page = await asyncio.to_thread(self.cache.get, Namespace.RAW, key)
        except CacheReadError as e:
            _route_cache_error(e, on_cache_error)
            return None
        return self._count_hit(page)

    async def _astore_page(
        self,
        key: str,
        page: RawPage,
        on_cache_error: CacheErrorCallback | None,
    ) -> None:
        try:
            await asyncio.to_thread(self.cache.put, Namespace.RAW, key, page)
        except CacheWriteError as e:
            _route_cache_error(e, on_cache_error)

    async def resolve(self, url: str, options: HttpOptions) -> RawPage:
        """Retrieve ``url`` over the network, bypassing the cache."""
        logger.debug(f"GET {url}", extra={"url": url})
        self.stats.network_fetches += 1
        try:
            http_response = await self._client.request(
                "GET", url, **_request_kwargs(options)
            )
        except httpx.TimeoutException:
            raise RequestTimeoutException(
                url=url, timeout_seconds=options.timeout_seconds
            ) from None
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise FetchError(url, f"{type(e).__name__}: {e}") from e
        return _to_raw_page(url, http_response)
