"""
Unit tests for hierarchy traversal and scope matching.
"""

import pytest
from unittest.mock import AsyncMock

from shared.errors import CycleDetectedError, DataIntegrityError
from service_permissions.app.rbac.hierarchy import HierarchyResolver, RequestScope, ScopeMatcher
from service_permissions.app.rbac.models import HierarchyKind, Resource, Role, UserGroup
from service_permissions.app.store.memory import InMemoryEntityStore


class TestHierarchyResolver:
    """Test cases for HierarchyResolver."""

    @pytest.mark.asyncio
    async def test_resource_ancestors_nearest_first(self, store):
        """Test ancestor chain order."""
        resolver = HierarchyResolver(store)

        ancestors = await resolver.ancestors("task-t", HierarchyKind.RESOURCE)

        assert ancestors == ["ws-w", "proj-p", "org-1"]

    @pytest.mark.asyncio
    async def test_root_and_unknown_nodes_have_no_ancestors(self, store):
        """Test roots and unknown IDs yield an empty chain."""
        resolver = HierarchyResolver(store)

        assert await resolver.ancestors("org-1", HierarchyKind.RESOURCE) == []
        assert await resolver.ancestors("does-not-exist", HierarchyKind.RESOURCE) == []

    @pytest.mark.asyncio
    async def test_role_and_group_kinds(self, store):
        """Test role and group trees are traversed separately."""
        resolver = HierarchyResolver(store)

        assert await resolver.ancestors("viewer", HierarchyKind.ROLE) == ["team-lead", "admin"]
        assert await resolver.ancestors("grp-platform", "group") == ["grp-eng"]

    @pytest.mark.asyncio
    async def test_cycle_detected(self):
        """Test a two-node cycle fails fast."""
        store = InMemoryEntityStore()
        store.add_resource(Resource("a", "project", "a", parent_resource_id="b"))
        store.add_resource(Resource("b", "project", "b", parent_resource_id="a"))
        resolver = HierarchyResolver(store)

        with pytest.raises(CycleDetectedError) as exc_info:
            await resolver.ancestors("a", HierarchyKind.RESOURCE)

        assert exc_info.value.code == "CYCLE_DETECTED"
        assert exc_info.value.details["kind"] == "resource"
        assert exc_info.value.details["path"] == ["a", "b", "a"]

    @pytest.mark.asyncio
    async def test_self_loop_detected(self):
        """Test a node that is its own parent."""
        store = InMemoryEntityStore()
        store.add_role(Role("loop", "Loop", parent_role_id="loop"))
        resolver = HierarchyResolver(store)

        with pytest.raises(CycleDetectedError):
            await resolver.ancestors("loop", HierarchyKind.ROLE)

    @pytest.mark.asyncio
    async def test_cycle_above_start_node(self):
        """Test a cycle that does not include the start node."""
        store = InMemoryEntityStore()
        store.add_group(UserGroup("leaf", "Leaf", parent_group_id="x"))
        store.add_group(UserGroup("x", "X", parent_group_id="y"))
        store.add_group(UserGroup("y", "Y", parent_group_id="x"))
        resolver = HierarchyResolver(store)

        with pytest.raises(CycleDetectedError) as exc_info:
            await resolver.ancestors("leaf", HierarchyKind.GROUP)

        assert exc_info.value.details["node_id"] == "x"

    @pytest.mark.asyncio
    async def test_depth_limit(self):
        """Test chains longer than max_depth are rejected."""
        store = InMemoryEntityStore()
        store.add_resource(Resource("r0", "project", "r0"))
        for i in range(1, 6):
            store.add_resource(Resource(f"r{i}", "project", f"r{i}", parent_resource_id=f"r{i - 1}"))
        resolver = HierarchyResolver(store, max_depth=3)

        with pytest.raises(DataIntegrityError) as exc_info:
            await resolver.ancestors("r5", HierarchyKind.RESOURCE)

        assert exc_info.value.code == "DATA_INTEGRITY_ERROR"
        assert await HierarchyResolver(store, max_depth=5).ancestors("r5", HierarchyKind.RESOURCE) == [
            "r4", "r3", "r2", "r1", "r0"
        ]

    @pytest.mark.asyncio
    async def test_ancestors_memoized(self):
        """Test repeated lookups do not hit the store again."""
        store = AsyncMock()
        store.get_resource_parent = AsyncMock(side_effect=lambda rid: {"child": "parent"}.get(rid))
        resolver = HierarchyResolver(store)

        first = await resolver.ancestors("child", HierarchyKind.RESOURCE)
        second = await resolver.ancestors("child", HierarchyKind.RESOURCE)

        assert first == second == ["parent"]
        assert store.get_resource_parent.await_count == 2

    @pytest.mark.asyncio
    async def test_memo_returns_copies(self, store):
        """Test callers cannot corrupt the memo."""
        resolver = HierarchyResolver(store)

        chain = await resolver.ancestors("ws-w", HierarchyKind.RESOURCE)
        chain.append("tampered")

        assert await resolver.ancestors("ws-w", HierarchyKind.RESOURCE) == ["proj-p", "org-1"]


class TestScopeMatching:
    """Test cases for RequestScope and ScopeMatcher."""

    def test_global_grant_always_matches(self):
        """Test global grants."""
        assert RequestScope("workspace", "ws-w", ("proj-p",)).matches(None) is True
        assert RequestScope("workspace", "*").matches(None) is True

    def test_exact_and_ancestor_match(self):
        """Test downward containment."""
        scope = RequestScope("workspace", "ws-w", ("proj-p", "org-1"))

        assert scope.matches("ws-w") is True
        assert scope.matches("proj-p") is True
        assert scope.matches("org-1") is True

    def test_descendant_and_sibling_do_not_match(self):
        """Test grants never leak upward or sideways."""
        scope = RequestScope("project", "proj-p", ("org-1",))

        assert scope.matches("ws-w") is False
        assert scope.matches("proj-q") is False

    def test_wildcard_request_matches_only_global(self):
        """Test a wildcard request is not satisfied by scoped grants."""
        scope = RequestScope("workspace", "*")

        assert scope.matches("ws-w") is False
        assert scope.matches("*") is False

    @pytest.mark.asyncio
    async def test_matcher_against_store(self, store):
        """Test ScopeMatcher resolves ancestry through the store."""
        matcher = ScopeMatcher(HierarchyResolver(store))

        assert await matcher.matches("proj-p", "task", "task-t") is True
        assert await matcher.matches("ws-w", "project", "proj-p") is False
        assert await matcher.matches(None, "system", "system") is True

    @pytest.mark.asyncio
    async def test_wildcard_scope_skips_store(self):
        """Test no ancestry lookup happens for a wildcard request."""
        store = AsyncMock()
        matcher = ScopeMatcher(HierarchyResolver(store))

        scope = await matcher.scope_for("workspace", "*")

        assert scope.ancestors == ()
        store.get_resource_parent.assert_not_called()
