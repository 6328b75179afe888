"""
Redis caching layer for the Permissions Service.

Key layout, under a configurable prefix (default ``rbac``):

- ``{prefix}:user:{user_id}:perm:{key}``: one cached decision (JSON, SETEX)
- ``{prefix}:user:{user_id}:keys``: set of the user's decision keys
- ``{prefix}:user:{user_id}:gen``: the user's invalidation generation
  (expires after a day without invalidations or writes)
- ``{prefix}:role:{role_id}:users`` / ``{prefix}:group:{group_id}:users``:
  users whose cached decisions depend on a role or group
- ``{prefix}:epoch``: cache-wide epoch advanced by role/group invalidation
"""

from typing import Any, Dict, Iterable, List, Optional

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError, WatchError

from shared.errors import AccessLayerException, CacheUnavailableError
from shared.logging import get_logger
from .base import CacheKey, CacheToken, PermissionCache
from ..rbac.models import PermissionDecision


TRACKING_TTL_SECONDS = 24 * 3600


class RedisPermissionCache(PermissionCache):
    """Redis-backed permission cache shared by every service instance."""

    def __init__(self, redis_url: str, prefix: str = "rbac", ttl_seconds: int = 1800,
                 client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.prefix = prefix or "rbac"
        self.ttl_seconds = ttl_seconds
        self.logger = get_logger("permissions.cache.redis")
        self.redis: Optional[redis.Redis] = client

    async def start(self):
        """Start the Redis cache."""
        try:
            if self.redis is None:
                self.redis = redis.from_url(
                    self.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30
                )

            # Test connection
            await self.redis.ping()

            self.logger.info("Redis cache started", prefix=self.prefix)

        except (RedisError, OSError) as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise AccessLayerException("REDIS_START_FAILED", str(e))

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis cache stopped")

    def _client(self) -> redis.Redis:
        if self.redis is None:
            raise CacheUnavailableError("Redis cache not started")
        return self.redis

    async def get(self, key: CacheKey) -> Optional[PermissionDecision]:
        cache_key = self._entry_key(key)
        try:
            cached_data = await self._client().get(cache_key)
        except (RedisError, OSError) as e:
            raise CacheUnavailableError("Redis read failed", {"error": str(e)}) from e

        if not cached_data:
            return None

        try:
            decision = PermissionDecision.model_validate_json(cached_data)
        except PydanticValidationError as e:
            self.logger.warning("Discarding unreadable cache entry", cache_key=cache_key, error=str(e))
            return None

        self.logger.debug("Cache hit for permission", cache_key=cache_key)
        return decision

    async def snapshot(self, user_id: str) -> CacheToken:
        try:
            epoch, generation = await self._client().mget(self._epoch_key(), self._gen_key(user_id))
        except (RedisError, OSError) as e:
            raise CacheUnavailableError("Redis read failed", {"error": str(e)}) from e
        return (int(epoch or 0), int(generation or 0))

    async def put(self, key: CacheKey, decision: PermissionDecision, token: CacheToken,
                  role_ids: Iterable[str] = (), group_ids: Iterable[str] = (),
                  max_ttl_seconds: Optional[float] = None) -> bool:
        cache_key = self._entry_key(key)
        ttl = self.ttl_seconds if max_ttl_seconds is None else min(self.ttl_seconds, int(max_ttl_seconds))
        if ttl < 1:
            self.logger.debug("Decision expires too soon to cache", cache_key=cache_key)
            return False
        keys_key = self._user_keys_key(key.user_id)
        epoch_key = self._epoch_key()
        gen_key = self._gen_key(key.user_id)

        try:
            async with self._client().pipeline(transaction=True) as pipe:
                # The write commits only if no invalidation touched these keys
                await pipe.watch(epoch_key, gen_key)
                epoch, generation = await pipe.mget(epoch_key, gen_key)
                if (int(epoch or 0), int(generation or 0)) != tuple(token):
                    await pipe.unwatch()
                    self.logger.debug("Discarding stale cache write", cache_key=cache_key)
                    return False

                pipe.multi()
                pipe.setex(cache_key, ttl, decision.model_dump_json())
                pipe.sadd(keys_key, cache_key)
                pipe.expire(keys_key, self.ttl_seconds * 2)
                pipe.expire(gen_key, TRACKING_TTL_SECONDS)
                for role_id in role_ids:
                    pipe.sadd(self._role_users_key(role_id), key.user_id)
                    pipe.expire(self._role_users_key(role_id), TRACKING_TTL_SECONDS)
                for group_id in group_ids:
                    pipe.sadd(self._group_users_key(group_id), key.user_id)
                    pipe.expire(self._group_users_key(group_id), TRACKING_TTL_SECONDS)
                await pipe.execute()

        except WatchError:
            self.logger.debug("Cache write lost race with invalidation", cache_key=cache_key)
            return False
        except (RedisError, OSError) as e:
            raise CacheUnavailableError("Redis write failed", {"error": str(e)}) from e

        self.logger.debug("Cached permission decision", cache_key=cache_key, ttl=ttl)
        return True

    async def invalidate_user(self, user_id: str) -> int:
        try:
            removed = await self._invalidate_user(user_id)
        except (RedisError, OSError) as e:
            self.logger.error("Error invalidating user permissions", user_id=user_id, error=str(e))
            raise CacheUnavailableError("Redis invalidation failed", {"user_id": user_id, "error": str(e)}) from e

        self.logger.info("Invalidated user permissions", user_id=user_id, count=removed)
        return removed

    async def _invalidate_user(self, user_id: str) -> int:
        client = self._client()
        keys_key = self._user_keys_key(user_id)
        gen_key = self._gen_key(user_id)

        async with client.pipeline(transaction=True) as pipe:
            pipe.incr(gen_key)
            pipe.expire(gen_key, TRACKING_TTL_SECONDS)
            pipe.smembers(keys_key)
            _, _, keys = await pipe.execute()

        keys = sorted(keys or [])
        if keys:
            # Remove only what was enumerated; entries written after the
            # generation bump belong to the new generation and stay tracked
            async with client.pipeline(transaction=True) as pipe:
                pipe.delete(*keys)
                pipe.srem(keys_key, *keys)
                await pipe.execute()
        return len(keys)

    async def invalidate_group(self, group_id: str) -> int:
        return await self._invalidate_dependents("group", group_id, self._group_users_key(group_id))

    async def invalidate_role(self, role_id: str) -> int:
        return await self._invalidate_dependents("role", role_id, self._role_users_key(role_id))

    async def _invalidate_dependents(self, scope: str, scope_id: str, users_key: str) -> int:
        client = self._client()
        try:
            # Claim the tracked users in one step; puts that land afterwards
            # carry a fresh token and re-register themselves
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(self._epoch_key())
                pipe.smembers(users_key)
                pipe.delete(users_key)
                _, members, _ = await pipe.execute()

            users: List[str] = sorted(members or [])
            for user_id in users:
                await self._invalidate_user(user_id)
        except (RedisError, OSError) as e:
            self.logger.error(f"Error invalidating {scope} permissions", scope_id=scope_id, error=str(e))
            raise CacheUnavailableError(
                "Redis invalidation failed",
                {scope + "_id": scope_id, "error": str(e)}
            ) from e

        self.logger.info(f"Invalidated {scope} permissions", scope_id=scope_id, users=len(users))
        return len(users)

    async def clear_cache(self) -> int:
        """Delete every key under the prefix except the epoch, which advances."""
        client = self._client()
        epoch_key = self._epoch_key()
        entry_prefix = f"{self.prefix}:user:"
        removed = 0
        try:
            await client.incr(epoch_key)
            batch: List[str] = []
            async for redis_key in client.scan_iter(match=f"{self.prefix}:*", count=500):
                if redis_key == epoch_key:
                    continue
                if redis_key.startswith(entry_prefix) and ":perm:" in redis_key:
                    removed += 1
                batch.append(redis_key)
                if len(batch) >= 500:
                    await client.delete(*batch)
                    batch = []
            if batch:
                await client.delete(*batch)
        except (RedisError, OSError) as e:
            self.logger.error("Error clearing permission cache", error=str(e))
            raise CacheUnavailableError("Redis clear failed", {"error": str(e)}) from e

        self.logger.info("Cleared permission cache", count=removed)
        return removed

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        client = self._client()
        try:
            info = await client.info()
            epoch = await client.get(self._epoch_key())
            entries = 0
            async for _ in client.scan_iter(match=f"{self.prefix}:user:*:perm:*", count=500):
                entries += 1
        except (RedisError, OSError) as e:
            self.logger.error("Error getting cache stats", error=str(e))
            raise CacheUnavailableError("Redis stats failed", {"error": str(e)}) from e

        hits = int(info.get("keyspace_hits", 0))
        misses = int(info.get("keyspace_misses", 0))
        return {
            "backend": "redis",
            "redis_version": info.get("redis_version"),
            "used_memory": info.get("used_memory_human"),
            "connected_clients": info.get("connected_clients"),
            "entries": entries,
            "epoch": int(epoch or 0),
            "keyspace_hits": hits,
            "keyspace_misses": misses,
            "hit_rate": round(hits / (hits + misses), 4) if hits + misses else 0.0
        }

    async def health_check(self) -> bool:
        """Check Redis health."""
        if self.redis is None:
            return False
        try:
            await self.redis.ping()
            return True
        except (RedisError, OSError):
            return False

    def _entry_key(self, key: CacheKey) -> str:
        return f"{self.prefix}:user:{key.user_id}:perm:{key.to_str()}"

    def _user_keys_key(self, user_id: str) -> str:
        return f"{self.prefix}:user:{user_id}:keys"

    def _gen_key(self, user_id: str) -> str:
        return f"{self.prefix}:user:{user_id}:gen"

    def _epoch_key(self) -> str:
        return f"{self.prefix}:epoch"

    def _role_users_key(self, role_id: str) -> str:
        return f"{self.prefix}:role:{role_id}:users"

    def _group_users_key(self, group_id: str) -> str:
        return f"{self.prefix}:group:{group_id}:users"
