"""Unit tests for the deduplicating, rate-limited work queue."""

from __future__ import annotations

import asyncio

import pytest

from kubephase.runtime.queue import QueueShutDownError, WorkQueue

# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------


class TestDeduplication:
    async def test_waiting_key_is_queued_once(self) -> None:
        queue: WorkQueue[str] = WorkQueue("test")
        queue.add("a")
        queue.add("a")
        queue.add("b")

        assert len(queue) == 2
        assert await queue.get() == "a"
        assert await queue.get() == "b"
        assert len(queue) == 0

    async def test_key_added_while_processing_waits_for_done(self) -> None:
        queue: WorkQueue[str] = WorkQueue("test")
        queue.add("a")
        key = await queue.get()

        queue.add("a")
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(queue.get(), 0.02)

        queue.done(key)
        assert await asyncio.wait_for(queue.get(), 1.0) == "a"


# ---------------------------------------------------------------------------
# Delays and backoff
# ---------------------------------------------------------------------------


class TestDelays:
    async def test_add_after_delays_the_key(self) -> None:
        queue: WorkQueue[str] = WorkQueue("test")
        queue.add_after("a", 0.02)
        assert len(queue) == 0

        await asyncio.sleep(0.05)
        assert len(queue) == 1

    async def test_rate_limit_doubles_until_forgotten(self) -> None:
        queue: WorkQueue[str] = WorkQueue("test", base_delay=0.005, max_delay=0.015)

        assert queue.add_rate_limited("a") == 0.005
        assert queue.add_rate_limited("a") == 0.01
        assert queue.add_rate_limited("a") == 0.015
        assert queue.failures("a") == 3

        queue.forget("a")
        assert queue.failures("a") == 0
        assert queue.add_rate_limited("a") == 0.005


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


class TestShutdown:
    async def test_shutdown_releases_waiting_workers(self) -> None:
        queue: WorkQueue[str] = WorkQueue("test")
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        queue.shutdown()

        with pytest.raises(QueueShutDownError):
            await asyncio.wait_for(waiter, 1.0)

    async def test_adds_after_shutdown_are_dropped(self) -> None:
        queue: WorkQueue[str] = WorkQueue("test")
        queue.add_after("late", 0.01)
        queue.shutdown()
        queue.add("a")

        await asyncio.sleep(0.03)
        assert len(queue) == 0
