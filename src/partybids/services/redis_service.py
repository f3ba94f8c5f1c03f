"""Redis service for maintenance locks and global view snapshots."""

import json
import uuid
from typing import Any

from redis.asyncio import Redis


class RedisService:
    """Service class for Redis operations used by the aggregation engine."""

    # Lua script for safe lock release (only delete own lock)
    RELEASE_LOCK_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("DEL", KEYS[1])
    else
        return 0
    end
    """

    # Lua script for lock renewal (only extend own lock)
    EXTEND_LOCK_SCRIPT = """
    if redis.call("GET", KEYS[1]) == ARGV[1] then
        return redis.call("EXPIRE", KEYS[1], ARGV[2])
    else
        return 0
    end
    """

    GLOBAL_VIEW_PREFIX = "global_view"

    def __init__(self, redis: Redis):
        """Initialize Redis service with a Redis client.

        Args:
            redis: Async Redis client instance
        """
        self.redis = redis
        self._release_lock_script = None
        self._extend_lock_script = None

    async def _get_release_lock_script(self):
        """Get or register the release lock Lua script."""
        if self._release_lock_script is None:
            self._release_lock_script = self.redis.register_script(self.RELEASE_LOCK_SCRIPT)
        return self._release_lock_script

    async def _get_extend_lock_script(self):
        """Get or register the extend lock Lua script."""
        if self._extend_lock_script is None:
            self._extend_lock_script = self.redis.register_script(self.EXTEND_LOCK_SCRIPT)
        return self._extend_lock_script

    # ==================== Maintenance Lock Operations ====================

    async def acquire_lock(
        self, name: str, owner_id: str | None = None, ttl: int = 900
    ) -> tuple[bool, str]:
        """Acquire a named distributed lock.

        Key pattern: lock:{name}
        Uses SET NX EX for atomic lock acquisition.

        Args:
            name: Lock name, e.g. "maintenance:aggregates"
            owner_id: Unique identifier for lock owner (auto-generated if None)
            ttl: Lock timeout in seconds so a crashed holder cannot wedge it

        Returns:
            Tuple of (success, owner_id)
        """
        key = f"lock:{name}"
        if owner_id is None:
            owner_id = str(uuid.uuid4())

        acquired = await self.redis.set(key, owner_id, nx=True, ex=ttl)
        return (bool(acquired), owner_id)

    async def release_lock(self, name: str, owner_id: str) -> bool:
        """Release a named lock (only if owner matches).

        Args:
            name: Lock name
            owner_id: The owner_id returned from acquire_lock

        Returns:
            True if lock was released, False if not owner or not locked
        """
        key = f"lock:{name}"
        script = await self._get_release_lock_script()
        result = await script(keys=[key], args=[owner_id])
        return int(result) == 1

    async def extend_lock(self, name: str, owner_id: str, ttl: int) -> bool:
        """Push back the expiry of a held lock during a long run.

        Returns:
            True if the caller still owns the lock and it was extended
        """
        key = f"lock:{name}"
        script = await self._get_extend_lock_script()
        result = await script(keys=[key], args=[owner_id, ttl])
        return int(result) == 1

    async def get_lock_owner(self, name: str) -> str | None:
        return await self.redis.get(f"lock:{name}")

    # ==================== Global View Snapshot Cache ====================

    def _global_view_key(self, sort_by: str, limit: int) -> str:
        return f"{self.GLOBAL_VIEW_PREFIX}:{sort_by}:{limit}"

    async def cache_global_view(
        self, sort_by: str, limit: int, entries: list[dict[str, Any]], ttl: int
    ) -> None:
        """Cache a projected global view with a short TTL.

        Key pattern: global_view:{sort_by}:{limit}

        Args:
            sort_by: Ranking field the entries are ordered by
            limit: Number of entries requested
            entries: JSON-serializable entries
            ttl: TTL in seconds
        """
        key = self._global_view_key(sort_by, limit)
        await self.redis.setex(key, ttl, json.dumps(entries))

    async def get_cached_global_view(
        self, sort_by: str, limit: int
    ) -> list[dict[str, Any]] | None:
        """Get a cached global view.

        Returns:
            List of entries or None if not cached/expired
        """
        key = self._global_view_key(sort_by, limit)
        data = await self.redis.get(key)
        if data:
            return json.loads(data)
        return None

    async def invalidate_global_view(self) -> int:
        """Drop every cached global view variant.

        Called after maintenance runs rewrite aggregates.

        Returns:
            Number of keys deleted
        """
        keys = [key async for key in self.redis.scan_iter(match=f"{self.GLOBAL_VIEW_PREFIX}:*")]
        if not keys:
            return 0
        return await self.redis.delete(*keys)

