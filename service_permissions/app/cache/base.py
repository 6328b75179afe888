"""
Permission cache contract.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from ..rbac.models import PermissionDecision, enum_value


# (cache-wide epoch, per-user generation) observed before a resolution started
CacheToken = Tuple[int, int]


def context_hash(attributes: Optional[Mapping[str, Any]]) -> str:
    """Stable fingerprint of request attributes; empty when there are none."""
    if not attributes:
        return ""
    context_str = json.dumps(attributes, sort_keys=True, default=str)
    return hashlib.md5(context_str.encode()).hexdigest()


@dataclass(frozen=True)
class CacheKey:
    """Identity of one cached decision."""
    user_id: str
    resource_type: str
    resource_id: str
    action: str
    context_hash: str = ""

    @classmethod
    def for_request(cls, user_id: str, resource_type: Any, resource_id: str, action: Any,
                    attributes: Optional[Mapping[str, Any]] = None) -> "CacheKey":
        return cls(
            user_id=user_id,
            resource_type=enum_value(resource_type),
            resource_id=resource_id,
            action=enum_value(action),
            context_hash=context_hash(attributes)
        )

    def to_str(self) -> str:
        ctx = self.context_hash or "-"
        return f"{self.resource_type}:{self.resource_id}:{self.action}:ctx:{ctx}"


class PermissionCache(ABC):
    """Subject-keyed memo of resolved decisions.

    Writers follow a snapshot/put protocol: take ``snapshot(user_id)``
    before reading the entity store, then ``put`` with that token. A put
    whose token no longer matches (because the user, or any role or group,
    was invalidated meanwhile) is dropped, so a resolution computed from
    pre-mutation data never lands in the cache after the invalidation.
    """

    @abstractmethod
    async def get(self, key: CacheKey) -> Optional[PermissionDecision]:
        """Cached decision, or None on a miss."""

    @abstractmethod
    async def snapshot(self, user_id: str) -> CacheToken:
        """Current invalidation token for ``user_id``."""

    @abstractmethod
    async def put(self, key: CacheKey, decision: PermissionDecision, token: CacheToken,
                  role_ids: Iterable[str] = (), group_ids: Iterable[str] = (),
                  max_ttl_seconds: Optional[float] = None) -> bool:
        """Store a decision and track its role and group dependencies.

        ``max_ttl_seconds`` shortens the entry lifetime below the configured
        TTL, e.g. to the earliest expiry of the grants behind the decision.
        Returns False when the token is stale or the lifetime is already
        spent, and nothing was stored.
        """

    @abstractmethod
    async def invalidate_user(self, user_id: str) -> int:
        """Drop every decision cached for a user. Returns entries removed."""

    @abstractmethod
    async def invalidate_group(self, group_id: str) -> int:
        """Invalidate every user whose decisions went through a group. Returns users invalidated."""

    @abstractmethod
    async def invalidate_role(self, role_id: str) -> int:
        """Invalidate every user whose decisions depended on a role. Returns users invalidated."""

    @abstractmethod
    async def clear_cache(self) -> int:
        """Drop every cached decision and void in-flight writes. Returns entries removed."""

    @abstractmethod
    async def get_cache_stats(self) -> Dict[str, Any]:
        """Backend statistics for operators."""

    async def start(self):
        """Acquire connections, if any."""

    async def stop(self):
        """Release connections, if any."""

    async def health_check(self) -> bool:
        return True


class NullPermissionCache(PermissionCache):
    """Cache that never stores anything."""

    async def get(self, key: CacheKey) -> Optional[PermissionDecision]:
        return None

    async def snapshot(self, user_id: str) -> CacheToken:
        return (0, 0)

    async def put(self, key: CacheKey, decision: PermissionDecision, token: CacheToken,
                  role_ids: Iterable[str] = (), group_ids: Iterable[str] = (),
                  max_ttl_seconds: Optional[float] = None) -> bool:
        return False

    async def invalidate_user(self, user_id: str) -> int:
        return 0

    async def invalidate_group(self, group_id: str) -> int:
        return 0

    async def invalidate_role(self, role_id: str) -> int:
        return 0

    async def clear_cache(self) -> int:
        return 0

    async def get_cache_stats(self) -> Dict[str, Any]:
        return {"backend": "none"}
