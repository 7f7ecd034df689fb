"""Tests for key-value storage backends and the periodic task runner."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from src.circles.core.storage import InMemoryKeyValueStore, RedisKeyValueStore, StorageKeys
from src.circles.sync.scheduler import PeriodicTask


class TestInMemoryKeyValueStore:
    async def test_set_get_remove(self):
        storage = InMemoryKeyValueStore()

        assert await storage.get(StorageKeys.CONTACTS) is None
        await storage.set(StorageKeys.CONTACTS, b"[]")
        assert await storage.get(StorageKeys.CONTACTS) == b"[]"

        await storage.remove(StorageKeys.CONTACTS)
        assert await storage.get(StorageKeys.CONTACTS) is None

    async def test_initial_contents(self):
        storage = InMemoryKeyValueStore({"last_sync": b"2024-01-01T00:00:00+00:00"})
        assert storage.keys() == ["last_sync"]


class TestRedisKeyValueStore:
    async def test_keys_are_prefixed(self):
        redis = AsyncMock()
        redis.get.return_value = b"{}"
        storage = RedisKeyValueStore(redis, prefix="circles-test")

        await storage.set(StorageKeys.OFFLINE_QUEUE, b"[]")
        value = await storage.get(StorageKeys.OFFLINE_QUEUE)
        await storage.remove(StorageKeys.OFFLINE_QUEUE)

        redis.set.assert_awaited_once_with("circles-test:offline_queue", b"[]")
        redis.get.assert_awaited_once_with("circles-test:offline_queue")
        redis.delete.assert_awaited_once_with("circles-test:offline_queue")
        assert value == b"{}"

    async def test_close(self):
        redis = AsyncMock()

        await RedisKeyValueStore(redis).close()

        redis.aclose.assert_awaited_once()


class TestPeriodicTask:
    async def test_runs_until_stopped(self):
        fn = AsyncMock()
        task = PeriodicTask("test", fn, interval=0.01)

        task.start()
        assert task.running is True
        await asyncio.sleep(0.05)
        await task.stop()

        assert fn.await_count >= 1
        assert task.running is False

    async def test_skips_ticks_while_offline(self):
        fn = AsyncMock()

        async def offline() -> bool:
            return False

        task = PeriodicTask("test", fn, interval=0.01, is_online=offline)
        task.start()
        await asyncio.sleep(0.05)
        await task.stop()

        fn.assert_not_awaited()

    async def test_failing_run_does_not_stop_the_loop(self):
        fn = AsyncMock(side_effect=RuntimeError("boom"))
        task = PeriodicTask("test", fn, interval=0.01)

        task.start()
        await asyncio.sleep(0.05)
        still_running = task.running
        await task.stop()

        assert still_running is True
        assert fn.await_count >= 2
