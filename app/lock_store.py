"""
External lock store — provider-account locks and heartbeat mirror keys.

The Automation Worker takes a lock on the provider account it drives
(key LOCK_KEY_PREFIX + provider_account_id) so two operations never drive
the same external account at once. When an operation terminates without
the worker's cooperation (sweep, cancel) the API releases that lock.

Heartbeats are mirrored to HEARTBEAT_KEY_PREFIX + operation_id with a TTL
so the worker can notice an abandoned session without polling the
database.

Everything here is best-effort from the caller's point of view: a lock
store outage must never roll back a refund or a status write. Callers use
release_quietly() / clear_heartbeat_quietly(), which log and swallow
store errors.
"""

import json
import logging
from typing import Protocol

import redis.asyncio as redis

from app.config import settings

logger = logging.getLogger(__name__)


class LockStore(Protocol):
    async def release(self, resource_id: str) -> None: ...

    async def touch_heartbeat(
        self, operation_id: str, payload: dict, ttl_seconds: int
    ) -> None: ...

    async def clear_heartbeat(self, operation_id: str) -> None: ...


class RedisLockStore:
    """LockStore on redis.asyncio. The client connects lazily on first command."""

    def __init__(
        self,
        url: str | None = None,
        lock_prefix: str | None = None,
        heartbeat_prefix: str | None = None,
    ):
        self.url = url or settings.REDIS_URL
        self.lock_prefix = lock_prefix or settings.LOCK_KEY_PREFIX
        self.heartbeat_prefix = heartbeat_prefix or settings.HEARTBEAT_KEY_PREFIX
        self._client = redis.from_url(self.url, decode_responses=True)

    async def release(self, resource_id: str) -> None:
        await self._client.delete(f"{self.lock_prefix}{resource_id}")

    async def touch_heartbeat(
        self, operation_id: str, payload: dict, ttl_seconds: int
    ) -> None:
        await self._client.setex(
            f"{self.heartbeat_prefix}{operation_id}",
            ttl_seconds,
            json.dumps(payload),
        )

    async def clear_heartbeat(self, operation_id: str) -> None:
        await self._client.delete(f"{self.heartbeat_prefix}{operation_id}")

    async def close(self) -> None:
        await self._client.aclose()


_lock_store: LockStore | None = None


def get_lock_store() -> LockStore:
    """FastAPI dependency returning the process-wide lock store."""
    global _lock_store
    if _lock_store is None:
        _lock_store = RedisLockStore()
    return _lock_store


async def close_lock_store() -> None:
    """Close the process-wide client, if one was ever opened."""
    global _lock_store
    if isinstance(_lock_store, RedisLockStore):
        await _lock_store.close()
    _lock_store = None


# ---------------------------------------------------------------------------
# Best-effort wrappers
# ---------------------------------------------------------------------------

async def release_quietly(lock_store: LockStore, resource_id: str | None) -> bool:
    """Release a provider-account lock. Returns True if the release went through."""
    if not resource_id:
        return False
    try:
        await lock_store.release(resource_id)
        return True
    except Exception:
        logger.warning("Failed to release lock for %s", resource_id, exc_info=True)
        return False


async def clear_heartbeat_quietly(lock_store: LockStore, operation_id: str) -> None:
    try:
        await lock_store.clear_heartbeat(operation_id)
    except Exception:
        logger.warning(
            "Failed to clear heartbeat key for operation %s", operation_id,
            exc_info=True,
        )


async def touch_heartbeat_quietly(
    lock_store: LockStore, operation_id: str, payload: dict, ttl_seconds: int
) -> None:
    try:
        await lock_store.touch_heartbeat(operation_id, payload, ttl_seconds)
    except Exception:
        logger.warning(
            "Failed to mirror heartbeat for operation %s", operation_id,
            exc_info=True,
        )
