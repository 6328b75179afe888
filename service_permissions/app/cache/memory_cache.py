"""
In-process permission cache.
"""

import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Set, Tuple

from shared.logging import get_logger
from .base import CacheKey, CacheToken, PermissionCache
from ..rbac.models import PermissionDecision


class InMemoryPermissionCache(PermissionCache):
    """Dictionary-backed cache with per-entry TTL.

    Entries are immutable ``(decision, expires_at)`` tuples replaced as a
    whole, so readers take no lock and never observe a torn entry. Writers
    and invalidations serialize on one lock.

    Dependency indices only hold users that still have entries. Expired
    entries are dropped when read and by a sweep that runs from ``put`` at
    most once per TTL period.
    """

    def __init__(self, ttl_seconds: int = 1800, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self.logger = get_logger("permissions.cache.memory")
        self._lock = threading.Lock()

        self._entries: Dict[CacheKey, Tuple[PermissionDecision, float]] = {}
        self._user_keys: Dict[str, Set[CacheKey]] = {}
        self._user_deps: Dict[str, Tuple[Set[str], Set[str]]] = {}
        self._role_users: Dict[str, Set[str]] = {}
        self._group_users: Dict[str, Set[str]] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._next_sweep = self.clock() + ttl_seconds
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: CacheKey) -> Optional[PermissionDecision]:
        entry = self._entries.get(key)
        if entry is not None and entry[1] <= self.clock():
            self._evict(key, entry)
            entry = None
        if entry is None:
            self._misses += 1
            return None
        self._hits += 1
        return entry[0]

    def _evict(self, key: CacheKey, entry: Tuple[PermissionDecision, float]):
        with self._lock:
            # Only drop the entry we saw expire, not a fresh replacement
            if self._entries.get(key) is entry:
                self._drop_key_locked(key)

    def _drop_key_locked(self, key: CacheKey):
        self._entries.pop(key, None)
        keys = self._user_keys.get(key.user_id)
        if keys is not None:
            keys.discard(key)
            if not keys:
                self._forget_user_locked(key.user_id)

    def _forget_user_locked(self, user_id: str):
        """Remove a user without entries from every dependency index."""
        self._user_keys.pop(user_id, None)
        role_ids, group_ids = self._user_deps.pop(user_id, ((), ()))
        for index, ids in ((self._role_users, role_ids), (self._group_users, group_ids)):
            for scope_id in ids:
                users = index.get(scope_id)
                if users is None:
                    continue
                users.discard(user_id)
                if not users:
                    del index[scope_id]

    def _sweep_locked(self, now: float):
        expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
        for key in expired:
            self._drop_key_locked(key)

        idle = [user_id for user_id in self._generations if user_id not in self._user_keys]
        if idle:
            # Dropped generations restart at 0; the epoch bump voids tokens that saw the old values
            self._epoch += 1
            for user_id in idle:
                del self._generations[user_id]

        self._next_sweep = now + self.ttl_seconds
        if expired or idle:
            self.logger.debug("Swept permission cache", expired=len(expired), idle_users=len(idle))

    async def snapshot(self, user_id: str) -> CacheToken:
        with self._lock:
            return (self._epoch, self._generations.get(user_id, 0))

    async def put(self, key: CacheKey, decision: PermissionDecision, token: CacheToken,
                  role_ids: Iterable[str] = (), group_ids: Iterable[str] = (),
                  max_ttl_seconds: Optional[float] = None) -> bool:
        lifetime = self.ttl_seconds if max_ttl_seconds is None else min(self.ttl_seconds, max_ttl_seconds)

        with self._lock:
            now = self.clock()
            if now >= self._next_sweep:
                self._sweep_locked(now)

            if token != (self._epoch, self._generations.get(key.user_id, 0)):
                self.logger.debug("Discarding stale cache write", user_id=key.user_id, key=key.to_str())
                return False
            if lifetime <= 0:
                return False

            self._entries[key] = (decision, now + lifetime)
            self._user_keys.setdefault(key.user_id, set()).add(key)
            user_roles, user_groups = self._user_deps.setdefault(key.user_id, (set(), set()))
            for role_id in role_ids:
                user_roles.add(role_id)
                self._role_users.setdefault(role_id, set()).add(key.user_id)
            for group_id in group_ids:
                user_groups.add(group_id)
                self._group_users.setdefault(group_id, set()).add(key.user_id)
            return True

    async def invalidate_user(self, user_id: str) -> int:
        with self._lock:
            removed = self._invalidate_user_locked(user_id)
        self.logger.info("Invalidated user permissions", user_id=user_id, count=removed)
        return removed

    def _invalidate_user_locked(self, user_id: str) -> int:
        self._generations[user_id] = self._generations.get(user_id, 0) + 1
        keys = self._user_keys.get(user_id, set())
        for key in keys:
            self._entries.pop(key, None)
        self._forget_user_locked(user_id)
        return len(keys)

    async def invalidate_group(self, group_id: str) -> int:
        with self._lock:
            self._epoch += 1
            users = self._group_users.pop(group_id, set())
            for user_id in users:
                self._invalidate_user_locked(user_id)
        self.logger.info("Invalidated group permissions", group_id=group_id, users=len(users))
        return len(users)

    async def invalidate_role(self, role_id: str) -> int:
        with self._lock:
            self._epoch += 1
            users = self._role_users.pop(role_id, set())
            for user_id in users:
                self._invalidate_user_locked(user_id)
        self.logger.info("Invalidated role permissions", role_id=role_id, users=len(users))
        return len(users)

    async def clear_cache(self) -> int:
        with self._lock:
            removed = len(self._entries)
            self._epoch += 1
            self._entries.clear()
            self._user_keys.clear()
            self._user_deps.clear()
            self._role_users.clear()
            self._group_users.clear()
            self._generations.clear()
        self.logger.info("Cleared permission cache", count=removed)
        return removed

    async def get_cache_stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "backend": "memory",
            "entries": len(self._entries),
            "users": len(self._user_keys),
            "tracked_roles": len(self._role_users),
            "tracked_groups": len(self._group_users),
            "epoch": self._epoch,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / lookups, 4) if lookups else 0.0
        }
