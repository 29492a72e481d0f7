"""
Structural scraping framework.

A site is treated as a tree of pages. Seed contexts name a page (``url``)
and the handler to run on it (``processor``); handlers return child
contexts, which are merged with their parent and followed until they no
longer point anywhere. Every expansion is cached, so an interrupted run
resumes by running it again.
"""

from arbor.config import HttpOptions, ScrapeOptions
from arbor.data_types import Context
from arbor.driver.async_driver import AsyncDriver, ascrape
from arbor.driver.sync_driver import SyncDriver, scrape
from arbor.registry import (
    Handler,
    HandlerRegistry,
    default_registry,
    handler,
)

__all__ = [
    "AsyncDriver",
    "Context",
    "Handler",
    "HandlerRegistry",
    "HttpOptions",
    "ScrapeOptions",
    "SyncDriver",
    "ascrape",
    "default_registry",
    "handler",
    "scrape",
]
