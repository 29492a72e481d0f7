"""Synchronous driver implementation.

The driver walks the site tree described by a seed and the registered
handlers and yields leaf contexts as it finds them.

- Pending contexts live on an explicit stack, never on the call stack, so
  deep or cyclic sites cannot exhaust recursion.
- Children are pushed in reverse, making the walk strictly depth-first in
  handler order: two runs over the same cache yield the same sequence.
- Every expansion is memoized in the processed-result cache under the
  handler's rendered key, and every page in the raw-page cache under the
  same key. Re-running an interrupted scrape with the same seed skips all
  completed work.
- A failure while expanding one context is reported through ``on_error``
  and only that subtree is abandoned.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Generator, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from arbor.cache.store import CacheStore, Namespace
from arbor.common.exceptions import (
    CacheError,
    CacheReadError,
    CacheWriteError,
    FetchError,
    ScrapeError,
    SeedError,
)
from arbor.common.parsing import parse_document
from arbor.common.request_manager import SyncFetcher
from arbor.config import HttpOptions, ScrapeOptions
from arbor.data_types import (
    Context,
    RawPage,
    RunStats,
    matches_only,
    merge_context,
)
from arbor.registry import Handler, HandlerRegistry, default_registry

logger = logging.getLogger(__name__)

ErrorCallback = Callable[[Context, ScrapeError], bool]
Seed = Mapping[str, Any] | Iterable[Mapping[str, Any]]


@dataclass(frozen=True)
class PendingContext:
    """A frontier entry.

    Attributes:
        context: The context to evaluate.
        ancestors: Cache keys expanded on the path leading here. A key that
            reappears among its own ancestors is a cycle and is skipped.
    """

    context: Context
    ancestors: frozenset[str] = frozenset()


def normalize_seed(seed: Seed | Callable[[], Seed]) -> list[Context]:
    """Turn a seed into a list of contexts.

    Accepts a mapping, an iterable of mappings, or a zero-argument callable
    returning either.

    Raises:
        SeedError: If the seed has any other shape.
    """
    if callable(seed) and not isinstance(seed, Mapping):
        seed = seed()
    if isinstance(seed, Mapping):
        return [Context(seed)]
    if seed is None or isinstance(seed, (str, bytes)) or not isinstance(
        seed, Iterable
    ):
        raise SeedError(
            f"Seed must be a mapping or an iterable of mappings, "
            f"got {type(seed).__name__}"
        )

    contexts: list[Context] = []
    for position, item in enumerate(seed):
        if not isinstance(item, Mapping):
            raise SeedError(
                f"Seed item {position} is {type(item).__name__}, "
                "expected a mapping",
                details={"position": position},
            )
        contexts.append(item if isinstance(item, Context) else Context(item))
    return contexts


def log_error_and_continue(context: Context, error: ScrapeError) -> bool:
    """Default on_error callback: log the failure and keep going."""
    logger.warning(
        f"Abandoning subtree of {context.processor} "
        f"at {context.url}: {error.message}",
        extra={
            "url": context.url,
            "processor": context.processor,
            "error_type": type(error).__name__,
            "details": error.details,
        },
    )
    return True


def retry_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff: ``base_delay * 2**attempt``, capped."""
    return min(base_delay * (2**attempt), max_delay)


class SyncDriver:
    """Depth-first, lazily evaluated traversal.

    Example::

        driver = SyncDriver(options=ScrapeOptions(cache_dir="cache"))
        for record in driver.run([{"url": START, "processor": "index"}]):
            print(record)
        print(driver.stats)

    Args:
        registry: Handlers to resolve ``processor`` fields against.
            Defaults to ``default_registry``.
        options: Run options. Defaults to ScrapeOptions().
        cache: Cache store. When omitted a filesystem store is built from
            ``options.cache_dir`` honouring the per-namespace enable flags.
            A store passed in is used as is.
        fetcher: Fetcher to use. When omitted one is created per run and
            closed when the run ends.
        on_error: Called with (context, error) for every per-context
            failure. Return True to continue, False to stop the run after
            the current context. Defaults to log_error_and_continue.
        stop_event: When set, the run stops before the next frontier pop.
        transport: httpx transport for the fetcher this driver creates.
    """

    def __init__(
        self,
        registry: HandlerRegistry | None = None,
        options: ScrapeOptions | None = None,
        cache: CacheStore | None = None,
        fetcher: SyncFetcher | None = None,
        on_error: ErrorCallback | None = None,
        stop_event: threading.Event | None = None,
        transport: httpx.BaseTransport | None = None,
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
        self._stopped = False

    def run(
        self, seed: Seed | Callable[[], Seed]
    ) -> Generator[Context, None, None]:
        """Traverse from ``seed`` and yield leaf contexts.

        Nothing happens until the first value is requested. Closing the
        generator early stops the traversal between two frontier pops.

        Raises:
            SeedError: If the seed is malformed.
        """
        if self._fetcher is None:
            self.stats = RunStats()
        handlers = self.registry.snapshot()
        frontier = [PendingContext(c) for c in reversed(normalize_seed(seed))]
        fetcher = self._fetcher or SyncFetcher(
            self.cache, self.stats, transport=self.transport
        )
        self._stopped = False
        logger.info(f"Starting run with {len(frontier)} seed context(s)")

        try:
            while frontier:
                if self._should_stop():
                    logger.info("Stop requested, ending run")
                    break

                pending = frontier.pop()
                context = pending.context

                if context.is_terminal(self.options.require_url):
                    self.stats.emitted += 1
                    yield context
                    continue

                if self.options.only and not matches_only(
                    context, self.options.only
                ):
                    self.stats.filtered += 1
                    continue

                try:
                    children = self.expand(pending, handlers, fetcher)
                except ScrapeError as e:
                    self._report(context, e)
                    continue

                # Reversed so the first child is popped first
                frontier.extend(reversed(children))
        finally:
            if self._fetcher is None:
                fetcher.close()
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

    def expand(
        self,
        pending: PendingContext,
        handlers: HandlerRegistry,
        fetcher: SyncFetcher,
    ) -> list[PendingContext]:
        """Expand one non-terminal context into merged child entries.

        Raises:
            ScrapeError: Any per-context failure (template, handler lookup,
                fetch, parse, processing).
        """
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

        children = self.cache.single_flight(
            Namespace.PROCESSED,
            key,
            lambda: self._load_children(context, handler, key, fetcher),
        )
        ancestors = pending.ancestors | {key}
        return [
            PendingContext(merge_context(context, child), ancestors)
            for child in children
        ]

    def _load_children(
        self,
        context: Context,
        handler: Handler,
        key: str,
        fetcher: SyncFetcher,
    ) -> list[dict[str, Any]]:
        refresh = self.options.update and handler.updatable
        if not refresh:
            cached = self._read_processed(context, key)
            if cached is not None:
                self.stats.processed_cache_hits += 1
                return cached

        http_options = self.options.http_options.merged(handler.http_options)
        page = self._fetch(context, key, http_options, refresh, fetcher)
        document = parse_document(page, http_options)
        self.stats.handler_calls += 1
        children = handler.process(document, context)
        self._write_processed(context, key, children)
        return children

    def _read_processed(
        self, context: Context, key: str
    ) -> list[dict[str, Any]] | None:
        try:
            return self.cache.get(Namespace.PROCESSED, key)
        except CacheReadError as e:
            self._report(context, e)
            return None

    def _write_processed(
        self, context: Context, key: str, children: list[dict[str, Any]]
    ) -> None:
        try:
            self.cache.put(Namespace.PROCESSED, key, children)
        except CacheWriteError as e:
            self._report(context, e)

    def _fetch(
        self,
        context: Context,
        key: str,
        http_options: HttpOptions,
        refresh: bool,
        fetcher: SyncFetcher,
    ) -> RawPage:
        if not context.url:
            raise FetchError("", "context has no url")

        def on_cache_error(error: CacheError) -> None:
            self._report(context, error)

        attempt = 0
        while True:
            try:
                return fetcher.fetch(
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
                time.sleep(delay)
                attempt += 1


def scrape(
    seed: Seed | Callable[[], Seed],
    options: ScrapeOptions | None = None,
    registry: HandlerRegistry | None = None,
    **kwargs: Any,
) -> Generator[Context, None, None]:
    """Run a depth-first scrape and return the lazy sequence of leaves.

    Extra keyword arguments are passed to SyncDriver.
    """
    return SyncDriver(registry=registry, options=options, **kwargs).run(seed)
