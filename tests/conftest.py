"""Shared fixtures: a live Bug Court server, registries and caches."""

import asyncio
import socket
import threading
import time
from collections import Counter
from collections.abc import Generator
from contextlib import closing
from pathlib import Path

import pytest
from aiohttp import web

from arbor.cache.store import CacheStore
from arbor.config import ScrapeOptions
from arbor.registry import HandlerRegistry
from tests.mock_server import HITS, create_app
from tests.scraper.bug_court import build_registry


# =============================================================================
# aiohttp test server fixtures
# =============================================================================


def find_free_port() -> int:
    """Find a free port on localhost.

    Returns:
        An available port number.
    """
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("", 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


class AioHttpTestServer:
    """Wrapper to run aiohttp server in a background thread."""

    def __init__(self, app: web.Application, port: int) -> None:
        self.app = app
        self.port = port
        self.host = "127.0.0.1"
        self._loop: asyncio.AbstractEventLoop | None = None
        self._runner: web.AppRunner | None = None
        self._thread: threading.Thread | None = None
        self._started = threading.Event()

    @property
    def url(self) -> str:
        """Get the base URL of the server."""
        return f"http://{self.host}:{self.port}"

    @property
    def hits(self) -> Counter:
        """Requests served so far, per path."""
        return self.app[HITS]

    def start(self) -> None:
        """Start the server in a background thread."""
        self._thread = threading.Thread(target=self._run_server, daemon=True)
        self._thread.start()
        self._started.wait(timeout=5.0)

    def _run_server(self) -> None:
        """Run the server in an asyncio event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        async def start() -> None:
            self._runner = web.AppRunner(self.app)
            await self._runner.setup()
            site = web.TCPSite(self._runner, self.host, self.port)
            await site.start()

        self._loop.run_until_complete(start())
        self._started.set()
        self._loop.run_forever()

    def stop(self) -> None:
        """Stop the server and clean up resources."""
        if self._loop and self._runner:
            runner = self._runner
            future = asyncio.run_coroutine_threadsafe(
                runner.cleanup(), self._loop
            )
            try:
                future.result(timeout=2.0)
            except Exception:
                pass  # Best effort cleanup

        if self._loop:
            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._thread:
            self._thread.join(timeout=2.0)


@pytest.fixture
def bug_court_server() -> Generator[AioHttpTestServer, None, None]:
    """Start the Bug Court app on a random port.

    Yields:
        AioHttpTestServer instance with the Bug Court app running.
    """
    server = AioHttpTestServer(create_app(), find_free_port())
    server.start()
    # Let the listener settle before the first request
    time.sleep(0.05)
    yield server
    server.stop()


@pytest.fixture
def server_url(bug_court_server: AioHttpTestServer) -> str:
    """The base URL of the test server (e.g. "http://127.0.0.1:8080")."""
    return bug_court_server.url


@pytest.fixture
def hits(bug_court_server: AioHttpTestServer) -> Counter:
    """Per-path request counts of the running test server."""
    return bug_court_server.hits


# =============================================================================
# Engine fixtures
# =============================================================================


@pytest.fixture
def registry() -> HandlerRegistry:
    """A fresh registry with the Bug Court handlers."""
    return build_registry()


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    return tmp_path / "cache"


@pytest.fixture
def options(cache_dir: Path) -> ScrapeOptions:
    return ScrapeOptions(cache_dir=cache_dir)


@pytest.fixture
def store(cache_dir: Path) -> CacheStore:
    return CacheStore.on_disk(cache_dir)
