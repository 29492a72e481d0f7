"""Per-key coordination of concurrent computations.

When several callers ask for the same key at the same time, only the first
one runs the computation. The others wait for it and receive the same
result, or the same exception. Once the computation finishes the key is
released, so a later call starts afresh (and normally finds the value in
the cache).

SingleFlight serves threads; AsyncSingleFlight serves coroutines running on
one event loop.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable, Hashable
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Call(Generic[T]):
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Any = None
        self.error: BaseException | None = None


class SingleFlight:
    """Thread-level at-most-one computation per key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._calls: dict[Hashable, _Call[Any]] = {}

    def do(self, key: Hashable, fn: Callable[[], T]) -> T:
        """Run ``fn`` for ``key`` unless a call is already in flight.

        Args:
            key: Identity of the computation.
            fn: Zero-argument callable producing the value.

        Returns:
            The value produced by whichever caller ran ``fn``.
        """
        with self._lock:
            call = self._calls.get(key)
            leader = call is None
            if call is None:
                call = _Call()
                self._calls[key] = call

        if not leader:
            call.done.wait()
            if call.error is not None:
                raise call.error
            return call.result

        try:
            call.result = fn()
        except BaseException as e:
            call.error = e
            raise
        finally:
            with self._lock:
                del self._calls[key]
            call.done.set()
        return call.result

    def in_flight(self) -> int:
        with self._lock:
            return len(self._calls)


class AsyncSingleFlight:
    """Coroutine-level at-most-one computation per key."""

    def __init__(self) -> None:
        self._calls: dict[Hashable, asyncio.Future[Any]] = {}

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        """Await ``fn()`` for ``key`` unless a call is already in flight.

        Waiters are shielded: cancelling one waiter does not cancel the
        shared computation.
        """
        future = self._calls.get(key)
        if future is not None:
            logger.debug(f"Joining in-flight computation for {key!r}")
            return await asyncio.shield(future)

        future = asyncio.get_running_loop().create_future()
        self._calls[key] = future
        try:
            result = await fn()
        except BaseException as e:
            if isinstance(e, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(e)
                # Waiters re-raise it; mark it retrieved for the leader
                future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            del self._calls[key]

    def in_flight(self) -> int:
        return len(self._calls)
