"""Test utilities shared by the driver, fetcher and CLI tests."""

import json
from collections import Counter
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

import httpx

from tests.mock_server import CASES

Page = tuple[int, str, bytes]


def html_page(body: str, status: int = 200) -> Page:
    return status, "text/html; charset=utf-8", body.encode("utf-8")


def json_page(value: Any, status: int = 200) -> Page:
    return status, "application/json", json.dumps(value).encode("utf-8")


def _router(
    pages: dict[str, Page], hits: Counter
) -> Callable[[httpx.Request], httpx.Response]:
    def handle(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        hits[url] += 1
        if url not in pages:
            return httpx.Response(404, text="not found")
        status, content_type, body = pages[url]
        return httpx.Response(
            status, headers={"content-type": content_type}, content=body
        )

    return handle


def mock_transport(
    pages: dict[str, Page],
) -> tuple[httpx.MockTransport, Counter]:
    """Create an httpx transport serving ``pages`` by absolute URL.

    Unknown URLs answer 404.

    Returns:
        A tuple of (transport, hits), hits counting requests per URL.

    Example:
        transport, hits = mock_transport({"http://x/": html_page("<p/>")})
        driver = SyncDriver(registry, options, transport=transport)
    """
    hits: Counter = Counter()
    return httpx.MockTransport(_router(pages, hits)), hits


def collect(records: Iterable[Any]) -> list[dict[str, Any]]:
    """Drain a record sequence into plain dicts."""
    return [dict(record) for record in records]


async def acollect(records: AsyncIterator[Any]) -> list[dict[str, Any]]:
    """Drain an async record sequence into plain dicts."""
    return [dict(record) async for record in records]


def sort_records(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Order records canonically, for comparing unordered outputs."""
    return sorted(records, key=lambda r: json.dumps(r, sort_keys=True))


def expected_bug_court_records() -> list[dict[str, Any]]:
    """The leaf records a full Bug Court scrape yields, in site order."""
    return [
        {
            "court": "Bug Civil Court",
            "docket": case.docket,
            "case_name": case.case_name,
            "judge": case.judge,
            "status": case.status,
            "plaintiff": case.plaintiff,
            "defendant": case.defendant,
            "date_filed": case.date_filed.isoformat(),
        }
        for case in CASES
    ]
