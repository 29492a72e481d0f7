"""Tests for SyncFetcher and AsyncFetcher.

Key behaviors tested:
- A cached page is returned without touching the network
- A fetched page is stored in the raw namespace under the given key
- Error statuses and transport failures raise FetchError
- Only transport failures, 429 and 5xx are retryable
- Concurrent async fetches of one key share a single request
"""

import asyncio
from pathlib import Path

import httpx
import pytest

from arbor.cache.store import CacheStore, Namespace
from arbor.common.exceptions import (
    CacheReadError,
    FetchError,
    RequestTimeoutException,
)
from arbor.common.request_manager import AsyncFetcher, SyncFetcher
from arbor.config import HttpOptions
from arbor.data_types import RawPage
from tests.utils import html_page, mock_transport

URL = "http://court.test/cases"


class TestSyncFetcher:
    def test_fetch_stores_raw_page(self, store: CacheStore) -> None:
        transport, hits = mock_transport({URL: html_page("<p>cases</p>")})

        with SyncFetcher(store, transport=transport) as fetcher:
            page = fetcher.fetch(URL, "court/cases", HttpOptions())

        assert page.content == b"<p>cases</p>"
        assert page.status_code == 200
        assert page.content_type == "text/html; charset=utf-8"
        assert store.get(Namespace.RAW, "court/cases") == page
        assert hits[URL] == 1
        assert fetcher.stats.network_fetches == 1

    def test_cached_page_skips_network(self, store: CacheStore) -> None:
        """A raw cache hit shall not issue a request."""
        transport, hits = mock_transport({URL: html_page("<p>cases</p>")})
        cached = RawPage(url=URL, content=b"<p>cached</p>")
        store.put(Namespace.RAW, "court/cases", cached)

        with SyncFetcher(store, transport=transport) as fetcher:
            page = fetcher.fetch(URL, "court/cases", HttpOptions())

        assert page == cached
        assert hits[URL] == 0
        assert fetcher.stats.raw_cache_hits == 1

    def test_refresh_bypasses_cache_read(self, store: CacheStore) -> None:
        transport, hits = mock_transport({URL: html_page("<p>fresh</p>")})
        store.put(
            Namespace.RAW, "court/cases", RawPage(url=URL, content=b"old")
        )

        with SyncFetcher(store, transport=transport) as fetcher:
            page = fetcher.fetch(
                URL, "court/cases", HttpOptions(), refresh=True
            )

        assert page.content == b"<p>fresh</p>"
        assert hits[URL] == 1
        assert store.get(Namespace.RAW, "court/cases").content == (
            b"<p>fresh</p>"
        )

    def test_disabled_raw_cache_always_fetches(self, cache_dir: Path) -> None:
        store = CacheStore.on_disk(cache_dir, raw_enabled=False)
        transport, hits = mock_transport({URL: html_page("<p>x</p>")})

        with SyncFetcher(store, transport=transport) as fetcher:
            fetcher.fetch(URL, "k", HttpOptions())
            fetcher.fetch(URL, "k", HttpOptions())

        assert hits[URL] == 2

    @pytest.mark.parametrize(
        "status,retryable", [(404, False), (403, False), (429, True), (500, True), (503, True)]
    )
    def test_error_status(
        self, store: CacheStore, status: int, retryable: bool
    ) -> None:
        transport, _ = mock_transport({URL: html_page("<p>no</p>", status)})

        with SyncFetcher(store, transport=transport) as fetcher:
            with pytest.raises(FetchError) as exc_info:
                fetcher.fetch(URL, "k", HttpOptions())

        assert exc_info.value.status_code == status
        assert exc_info.value.retryable is retryable
        assert exc_info.value.url == URL
        assert store.get(Namespace.RAW, "k") is None

    def test_transport_failure(self, store: CacheStore) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with SyncFetcher(store, transport=httpx.MockTransport(refuse)) as f:
            with pytest.raises(FetchError) as exc_info:
                f.fetch(URL, "k", HttpOptions())

        assert exc_info.value.status_code is None
        assert exc_info.value.retryable

    def test_timeout(self, store: CacheStore) -> None:
        def stall(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("too slow", request=request)

        with SyncFetcher(store, transport=httpx.MockTransport(stall)) as f:
            with pytest.raises(RequestTimeoutException) as exc_info:
                f.fetch(URL, "k", HttpOptions(socket_timeout=250))

        assert exc_info.value.timeout_seconds == 0.25
        assert isinstance(exc_info.value, FetchError)

    def test_headers_sent(self, store: CacheStore) -> None:
        seen = {}

        def record(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return httpx.Response(200, text="<p/>")

        options = HttpOptions(headers={"X-Court": "bug"})
        with SyncFetcher(store, transport=httpx.MockTransport(record)) as f:
            f.fetch(URL, "k", options)

        assert seen["x-court"] == "bug"

    def test_corrupt_cache_entry_reported_and_refetched(
        self, store: CacheStore, cache_dir: Path
    ) -> None:
        (cache_dir / "raw" / "k.page.zst").write_bytes(b"garbage")
        transport, hits = mock_transport({URL: html_page("<p>x</p>")})
        errors = []

        with SyncFetcher(store, transport=transport) as fetcher:
            page = fetcher.fetch(
                URL, "k", HttpOptions(), on_cache_error=errors.append
            )

        assert page.content == b"<p>x</p>"
        assert hits[URL] == 1
        assert len(errors) == 1
        assert isinstance(errors[0], CacheReadError)

    def test_live_server(self, server_url: str, store: CacheStore) -> None:
        with SyncFetcher(store) as fetcher:
            page = fetcher.fetch(
                f"{server_url}/api/cases/BCC-2024-001", "api/1", HttpOptions()
            )

        assert page.content_type.startswith("application/json")
        assert b"Barry Beetle" in page.content

    def test_live_server_timeout(self, server_url: str, store: CacheStore) -> None:
        with SyncFetcher(store) as fetcher:
            with pytest.raises(RequestTimeoutException):
                fetcher.fetch(
                    f"{server_url}/slow", "slow", HttpOptions(socket_timeout=50)
                )


class TestAsyncFetcher:
    @pytest.mark.asyncio
    async def test_concurrent_fetches_share_one_request(
        self, store: CacheStore
    ) -> None:
        """Racing fetches for one key shall trigger one request."""
        calls = 0

        async def slow(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return httpx.Response(200, text="<p>once</p>")

        async with AsyncFetcher(
            store, transport=httpx.MockTransport(slow)
        ) as fetcher:
            pages = await asyncio.gather(
                *(fetcher.fetch(URL, "k", HttpOptions()) for _ in range(5))
            )

        assert calls == 1
        assert {p.content for p in pages} == {b"<p>once</p>"}
        assert fetcher.stats.network_fetches == 1

    @pytest.mark.asyncio
    async def test_cached_page_skips_network(self, store: CacheStore) -> None:
        transport, hits = mock_transport({URL: html_page("<p>x</p>")})
        store.put(Namespace.RAW, "k", RawPage(url=URL, content=b"cached"))

        async with AsyncFetcher(store, transport=transport) as fetcher:
            page = await fetcher.fetch(URL, "k", HttpOptions())

        assert page.content == b"cached"
        assert hits[URL] == 0

    @pytest.mark.asyncio
    async def test_error_status(self, store: CacheStore) -> None:
        transport, _ = mock_transport({})

        async with AsyncFetcher(store, transport=transport) as fetcher:
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch(URL, "k", HttpOptions())

        assert exc_info.value.status_code == 404
