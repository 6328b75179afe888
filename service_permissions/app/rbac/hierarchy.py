"""
Hierarchy traversal and resource-scope matching.

Resources, roles and groups each form a tree through parent pointers
held in the entity store. Only the resource tree affects permissions;
role and group ancestry is computed for reporting.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from shared.errors import CycleDetectedError, DataIntegrityError
from shared.logging import get_logger
from .models import HierarchyKind, WILDCARD
from ..store.base import EntityStore


class HierarchyResolver:
    """Computes ancestor chains, nearest first.

    Traversal is iterative over an explicit visited set, so a malformed
    store can neither loop forever nor exhaust the stack.
    """

    def __init__(self, store: EntityStore, max_depth: int = 64):
        self.store = store
        self.max_depth = max_depth
        self.logger = get_logger("permissions.hierarchy")
        self._memo: Dict[Tuple[HierarchyKind, str], Tuple[str, ...]] = {}

    def _parent_lookup(self, kind: HierarchyKind) -> Callable[[str], Awaitable[Optional[str]]]:
        if kind == HierarchyKind.RESOURCE:
            return self.store.get_resource_parent
        if kind == HierarchyKind.ROLE:
            return self.store.get_role_parent
        if kind == HierarchyKind.GROUP:
            return self.store.get_group_parent
        raise ValueError(f"Unknown hierarchy kind: {kind!r}")

    async def ancestors(self, node_id: str, kind: HierarchyKind) -> List[str]:
        """Ancestor IDs of ``node_id``, nearest first. Raises CycleDetectedError."""
        kind = HierarchyKind(kind)
        memo_key = (kind, node_id)
        if memo_key in self._memo:
            return list(self._memo[memo_key])

        get_parent = self._parent_lookup(kind)
        chain: List[str] = []
        visited = {node_id}
        current = node_id

        while True:
            parent = await get_parent(current)
            if parent is None:
                break
            if parent in visited:
                self.logger.error("Hierarchy cycle detected", kind=kind.value, node_id=node_id, parent=parent)
                raise CycleDetectedError(kind.value, parent, [node_id] + chain + [parent])
            if len(chain) >= self.max_depth:
                raise DataIntegrityError(
                    f"{kind.value} hierarchy deeper than {self.max_depth}",
                    {"kind": kind.value, "node_id": node_id, "max_depth": self.max_depth}
                )
            visited.add(parent)
            chain.append(parent)
            current = parent

        self._memo[memo_key] = tuple(chain)
        return chain


@dataclass(frozen=True)
class RequestScope:
    """The requested resource together with its ancestor chain."""
    resource_type: str
    resource_id: str
    ancestors: Tuple[str, ...] = ()

    def matches(self, grant_resource_id: Optional[str]) -> bool:
        """Whether a grant scoped to ``grant_resource_id`` covers this request."""
        if grant_resource_id is None:
            return True
        if self.resource_id == WILDCARD:
            return False
        if grant_resource_id == self.resource_id:
            return True
        # Granted at an ancestor. Descendant grants never leak upward.
        return grant_resource_id in self.ancestors


class ScopeMatcher:
    """Decides whether resource-scoped grants apply to a request."""

    def __init__(self, resolver: HierarchyResolver):
        self.resolver = resolver

    async def scope_for(self, resource_type: str, resource_id: str) -> RequestScope:
        """Resolve the request's ancestor chain once for many grants."""
        if resource_id == WILDCARD:
            return RequestScope(resource_type, resource_id)
        ancestors = await self.resolver.ancestors(resource_id, HierarchyKind.RESOURCE)
        return RequestScope(resource_type, resource_id, tuple(ancestors))

    async def matches(self, grant_resource_id: Optional[str], resource_type: str, resource_id: str) -> bool:
        if grant_resource_id is None:
            return True
        scope = await self.scope_for(resource_type, resource_id)
        return scope.matches(grant_resource_id)
