"""Tests for per-key single-flight coordination."""

import asyncio
import threading
import time

import pytest

from arbor.cache.coordination import AsyncSingleFlight, SingleFlight


class TestSingleFlight:
    def test_sequential_calls_each_run(self) -> None:
        """Once a call finishes the key is released."""
        flight = SingleFlight()
        calls = []

        for i in range(3):
            flight.do("k", lambda: calls.append(i))

        assert len(calls) == 3
        assert flight.in_flight() == 0

    def test_waiters_share_the_leader_exception(self) -> None:
        flight = SingleFlight()
        started = threading.Event()
        errors = []

        def slow_failure() -> None:
            started.set()
            time.sleep(0.1)
            raise ValueError("boom")

        def leader() -> None:
            try:
                flight.do("k", slow_failure)
            except ValueError as e:
                errors.append(e)

        def follower() -> None:
            started.wait()
            try:
                flight.do("k", lambda: None)
            except ValueError as e:
                errors.append(e)

        threads = [
            threading.Thread(target=leader),
            threading.Thread(target=follower),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(errors) == 2
        assert errors[0] is errors[1]

    def test_different_keys_run_concurrently(self) -> None:
        flight = SingleFlight()
        both_running = threading.Barrier(2, timeout=2)

        def work() -> str:
            both_running.wait()
            return "done"

        results = []
        threads = [
            threading.Thread(target=lambda k=k: results.append(flight.do(k, work)))
            for k in ("a", "b")
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == ["done", "done"]


class TestAsyncSingleFlight:
    @pytest.mark.asyncio
    async def test_concurrent_awaiters_share_one_call(self) -> None:
        """Coroutines racing on one key shall share a single computation."""
        flight = AsyncSingleFlight()
        calls = 0

        async def compute() -> int:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return 42

        results = await asyncio.gather(
            *(flight.do("k", compute) for _ in range(10))
        )

        assert results == [42] * 10
        assert calls == 1
        assert flight.in_flight() == 0

    @pytest.mark.asyncio
    async def test_exception_reaches_every_awaiter(self) -> None:
        flight = AsyncSingleFlight()

        async def compute() -> int:
            await asyncio.sleep(0.01)
            raise ValueError("boom")

        results = await asyncio.gather(
            *(flight.do("k", compute) for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, ValueError) for r in results)

    @pytest.mark.asyncio
    async def test_key_released_after_completion(self) -> None:
        flight = AsyncSingleFlight()
        calls = 0

        async def compute() -> int:
            nonlocal calls
            calls += 1
            return calls

        assert await flight.do("k", compute) == 1
        assert await flight.do("k", compute) == 2
