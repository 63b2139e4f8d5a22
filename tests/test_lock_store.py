"""
Tests for the lock store adapter and the in-process sweep loop.

The Redis client is replaced with an AsyncMock, so no server is needed.
"""

import asyncio
import json
from unittest.mock import AsyncMock

from app.lock_store import (
    RedisLockStore,
    clear_heartbeat_quietly,
    release_quietly,
    touch_heartbeat_quietly,
)
from app.scheduler import SweepScheduler


def make_store():
    store = RedisLockStore(
        url="redis://localhost:6379/15",
        lock_prefix="lock:",
        heartbeat_prefix="hb:",
    )
    store._client = AsyncMock()
    return store


class TestRedisLockStore:

    async def test_release_deletes_lock_key(self):
        store = make_store()
        await store.release("provider-1")
        store._client.delete.assert_awaited_once_with("lock:provider-1")

    async def test_heartbeat_written_with_ttl(self):
        store = make_store()
        await store.touch_heartbeat("op-1", {"status": "AWAITING_PACKAGE"}, 65)

        key, ttl, value = store._client.setex.await_args.args
        assert key == "hb:op-1"
        assert ttl == 65
        assert json.loads(value) == {"status": "AWAITING_PACKAGE"}

    async def test_clear_heartbeat(self):
        store = make_store()
        await store.clear_heartbeat("op-1")
        store._client.delete.assert_awaited_once_with("hb:op-1")


class TestQuietWrappers:
    """Lock store failures are logged and swallowed; they never reach the caller."""

    async def test_release_reports_success(self, lock_store):
        assert await release_quietly(lock_store, "provider-1") is True
        assert lock_store.released == ["provider-1"]

    async def test_release_without_resource(self, lock_store):
        assert await release_quietly(lock_store, None) is False
        assert lock_store.released == []

    async def test_failures_are_swallowed(self, lock_store, caplog):
        lock_store.fail = True

        assert await release_quietly(lock_store, "provider-1") is False
        await clear_heartbeat_quietly(lock_store, "op-1")
        await touch_heartbeat_quietly(lock_store, "op-1", {}, 65)

        assert "Failed to release lock for provider-1" in caplog.text
        assert "Failed to clear heartbeat key" in caplog.text
        assert "Failed to mirror heartbeat" in caplog.text


class TestSweepScheduler:

    async def test_run_once_on_empty_database(self, session_factory, lock_store):
        scheduler = SweepScheduler(session_factory, lock_store, interval_seconds=60)
        await scheduler.run_once()
        assert lock_store.released == []

    async def test_loop_survives_a_failed_run(self, session_factory, lock_store, monkeypatch):
        scheduler = SweepScheduler(session_factory, lock_store, interval_seconds=0.01)
        calls = []

        async def flaky_run_once():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("database unavailable")

        monkeypatch.setattr(scheduler, "run_once", flaky_run_once)

        scheduler.start()
        for _ in range(100):
            if len(calls) >= 2:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()

        assert len(calls) >= 2
        assert not scheduler.running
