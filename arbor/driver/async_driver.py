"""Asynchronous driver implementation.

The AsyncDriver mirrors SyncDriver with three key differences:

1. The frontier is an asyncio.Queue drained by ``num_workers`` workers, so
   fetches for sibling pages overlap.
2. Leaves are handed to the consumer through a bounded output queue: when
   the consumer stops reading, workers stop producing.
3. Expansions of the same cache key are coordinated through
   AsyncSingleFlight, so racing workers share one fetch and one handler
   call.

Cache reads and writes run in worker threads via asyncio.to_thread, so a
slow disk never stalls the event loop.

Children of one expansion keep their handler order, but no order is
guaranteed across concurrently processed siblings. Use SyncDriver when the
output sequence must be reproducible.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from typing import Any

import httpx

from arbor.cache.coordination import AsyncSingleFlight
from arbor.cache.store import CacheStore, Namespace
from arbor.common.exceptions import (
    CacheError,
    CacheReadError,
    CacheWriteError,
    FetchError,
    ScrapeError,
)
from arbor.common.parsing import parse_document
from arbor.common.request_manager import AsyncFetcher
from arbor.config import HttpOptions, ScrapeOptions
from arbor.data_types import (
    Context,
    RawPage,
    RunStats,
    matches_only,
    merge_context,
)
from arbor.driver.sync_driver import (
    ErrorCallback,
    PendingContext,
    Seed,
    log_error_and_continue,
    normalize_seed,
    retry_delay,
)
from arbor.registry import Handler, HandlerRegistry, default_registry

logger = logging.getLogger(__name__)

_DRAINED = object()


@dataclass(frozen=True)
class _WorkerFailure:
    error: BaseException


class AsyncDriver:
    """Concurrent traversal with a bounded worker pool.

    Example::

        driver = AsyncDriver(options=ScrapeOptions(num_workers=8))
        async for record in driver.run(seed):
            print(record)

    Arguments match SyncDriver; ``stop_event`` is an asyncio.Event and
    ``on_error`` must be a plain (non-async) callable.
    """

    def __init__(
        self,
        registry: HandlerRegistry | None = None,
        options: ScrapeOptions | None = None,
        cache: CacheStore | None = None,
        fetcher: AsyncFetcher | None = None,
        on_error: ErrorCallback | None = None,
        stop_event: asyncio.Event | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.registry = registry if registry is not None else default_registry
        self.options = options if options is not None else ScrapeOptions()
        self.cache = (
            cache
            if cache is not None
            else CacheStore.on_disk(
                self.options.cache_dir,
                raw_enabled=self.options.raw_cache_enabled,
                processed_enabled=self.options.processed_cache_enabled,
            )
        )
        self._fetcher = fetcher
        self.stats = fetcher.stats if fetcher is not None else RunStats()
        self.on_error = on_error or log_error_and_continue
        self.stop_event = stop_event
        self.transport = transport
        self.num_workers = self.options.num_workers
        self._stopped = False
        self._flights = AsyncSingleFlight()

    async def run(
        self, seed: Seed | Callable[[], Seed]
    ) -> AsyncGenerator[Context, None]:
        """Traverse from ``seed`` and yield leaf contexts as they appear.

        Closing the generator (or leaving an ``async for`` early) cancels
        the workers.

        Raises:
            SeedError: If the seed is malformed.
        """
        if self._fetcher is None:
            self.stats = RunStats()
        handlers = self.registry.snapshot()
        contexts = normalize_seed(seed)
        fetcher = self._fetcher or AsyncFetcher(
            self.cache, self.stats, transport=self.transport
        )
        self._stopped = False

        frontier: asyncio.Queue[PendingContext] = asyncio.Queue()
        output: asyncio.Queue[Any] = asyncio.Queue(
            maxsize=self.options.output_buffer
        )
        for context in contexts:
            frontier.put_nowait(PendingContext(context))
        logger.info(
            f"Starting run with {len(contexts)} seed context(s) "
            f"and {self.num_workers} worker(s)"
        )

        async def wait_until_drained() -> None:
            await frontier.join()
            await output.put(_DRAINED)

        workers = [
            asyncio.create_task(
                self._worker(i, frontier, output, handlers, fetcher)
            )
            for i in range(self.num_workers)
        ]
        monitor = asyncio.create_task(wait_until_drained())

        try:
            while True:
                item = await output.get()
                if item is _DRAINED:
                    break
                if isinstance(item, _WorkerFailure):
                    raise item.error
                yield item
        finally:
            for task in (*workers, monitor):
                task.cancel()
            await asyncio.gather(*workers, monitor, return_exceptions=True)
            if self._fetcher is None:
                await fetcher.close()
            logger.info(f"Run finished: {self.stats}")

    def _should_stop(self) -> bool:
        return self._stopped or bool(
            self.stop_event and self.stop_event.is_set()
        )

    def _report(self, context: Context, error: ScrapeError) -> bool:
        self.stats.errors += 1
        should_continue = self.on_error(context, error)
        if not should_continue:
            self._stopped = True
        return should_continue

    async def _worker(
        self,
        worker_id: int,
        frontier: asyncio.Queue[PendingContext],
        output: asyncio.Queue[Any],
        handlers: HandlerRegistry,
        fetcher: AsyncFetcher,
    ) -> None:
        """Worker coroutine that processes contexts from the frontier.

        Args:
            worker_id: Identifier for this worker (for debugging).
        """
        while True:
            pending = await frontier.get()
            try:
                # After a stop, remaining entries are dropped so join()
                # can complete
                if self._should_stop():
                    continue
                await self._process(
                    pending, frontier, output, handlers, fetcher
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Worker {worker_id} failed: {e!r}",
                    extra={"url": pending.context.url},
                )
                await output.put(_WorkerFailure(e))
            finally:
                frontier.task_done()

    async def _process(
        self,
        pending: PendingContext,
        frontier: asyncio.Queue[PendingContext],
        output: asyncio.Queue[Any],
        handlers: HandlerRegistry,
        fetcher: AsyncFetcher,
    ) -> None:
        context = pending.context

        if context.is_terminal(self.options.require_url):
            self.stats.emitted += 1
            await output.put(context)
            return

        if self.options.only and not matches_only(context, self.options.only):
            self.stats.filtered += 1
            return

        try:
            children = await self.expand(pending, handlers, fetcher)
        except ScrapeError as e:
            self._report(context, e)
            return

        for child in children:
            frontier.put_nowait(child)

    async def expand(
        self,
        pending: PendingContext,
        handlers: HandlerRegistry,
        fetcher: AsyncFetcher,
    ) -> list[PendingContext]:
        """Expand one non-terminal context into merged child entries."""
        context = pending.context
        handler = handlers.resolve(context.processor)  # type: ignore[arg-type]
        key = handler.cache_key(context)

        if key in pending.ancestors:
            self.stats.cycles_skipped += 1
            logger.debug(
                f"Skipping cycle back to {key}",
                extra={"key": key, "url": context.url},
            )
            return []

        children = await self._flights.do(
            key, lambda: self._load_children(context, handler, key, fetcher)
        )
        ancestors = pending.ancestors | {key}
        return [
            PendingContext(merge_context(context, child), ancestors)
            for child in children
        ]

    async def _load_children(
        self,
        context: Context,
        handler: Handler,
        key: str,
        fetcher: AsyncFetcher,
    ) -> list[dict[str, Any]]:
        refresh = self.options.update and handler.updatable
        if not refresh:
            try:
                cached = await asyncio.to_thread(
                    self.cache.get, Namespace.PROCESSED, key
                )
            except CacheReadError as e:
                self._report(context, e)
                cached = None
            if cached is not None:
                self.stats.processed_cache_hits += 1
                return cached

        http_options = self.options.http_options.merged(handler.http_options)
        page = await self._fetch(context, key, http_options, refresh, fetcher)
        document = parse_document(page, http_options)
        self.stats.handler_calls += 1
        children = handler.process(document, context)
        try:
            await asyncio.to_thread(
                self.cache.put, Namespace.PROCESSED, key, children
            )
        except CacheWriteError as e:
            self._report(context, e)
        return children

    async def _fetch(
        self,
        context: Context,
        key: str,
        http_options: HttpOptions,
        refresh: bool,
        fetcher: AsyncFetcher,
    ) -> RawPage:
        if not context.url:
            raise FetchError("", "context has no url")

        def on_cache_error(error: CacheError) -> None:
            self._report(context, error)

        attempt = 0
        while True:
            try:
                return await fetcher.fetch(
                    context.url,
                    key,
                    http_options,
                    refresh=refresh,
                    on_cache_error=on_cache_error,
                )
            except FetchError as e:
                if not e.retryable or attempt >= self.options.retries:
                    raise
                delay = retry_delay(
                    attempt,
                    self.options.retry_base_delay,
                    self.options.max_retry_delay,
                )
                logger.info(
                    f"Retrying {context.url} in {delay:.1f}s "
                    f"(attempt {attempt + 1} of {self.options.retries})",
                    extra={"url": context.url, "key": key},
                )
                await asyncio.sleep(delay)
                attempt += 1


def ascrape(
    seed: Seed | Callable[[], Seed],
    options: ScrapeOptions | None = None,
    registry: HandlerRegistry | None = None,
    **kwargs: Any,
) -> AsyncGenerator[Context, None]:
    """Run a concurrent scrape and return the async sequence of leaves.

    Extra keyword arguments are passed to AsyncDriver.
    """
    return AsyncDriver(registry=registry, options=options, **kwargs).run(seed)
