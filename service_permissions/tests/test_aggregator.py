"""
Unit tests for PermissionAggregator.
"""

from datetime import timedelta

import pytest
from unittest.mock import AsyncMock

from service_permissions.app.rbac.aggregator import PermissionAggregator, condition_applies
from service_permissions.app.rbac.conditions import ConditionOutcome
from service_permissions.app.rbac.hierarchy import HierarchyResolver, ScopeMatcher
from service_permissions.app.rbac.models import (
    DecisionSource, Permission, PermissionEffect, Role, RolePermission, UserRole, utc_now
)


def make_aggregator(store) -> PermissionAggregator:
    return PermissionAggregator(store, ScopeMatcher(HierarchyResolver(store)))


class TestPermissionAggregator:
    """Test cases for PermissionAggregator."""

    @pytest.mark.asyncio
    async def test_direct_grant_at_ancestor_scope(self, store):
        """Test a project-scoped grant covers its workspaces."""
        decisions = await make_aggregator(store).collect("u-lead", "workspace", "ws-w", "read")

        assert len(decisions) == 1
        decision = decisions[0]
        assert decision.effect == PermissionEffect.ALLOW
        assert decision.source == DecisionSource.DIRECT
        assert decision.source_role_id == "team-lead"
        assert decision.source_permission_id == "workspace-read"
        assert decision.scope_resource_id == "proj-p"

    @pytest.mark.asyncio
    async def test_no_upward_leakage(self, store):
        """Test a workspace-scoped grant does not apply to its project."""
        store.assign_role_to_user("u-ws", "team-lead", resource_id="ws-w")

        assert await make_aggregator(store).collect("u-ws", "project", "proj-p", "manage") == []

    @pytest.mark.asyncio
    async def test_type_and_action_filtering(self, store):
        """Test bindings are filtered to the requested type and action."""
        aggregator = make_aggregator(store)

        assert await aggregator.collect("u-lead", "workspace", "ws-w", "delete") == []
        assert await aggregator.collect("u-lead", "task", "task-t", "read") == []

    @pytest.mark.asyncio
    async def test_role_seniority_not_inherited(self, store):
        """Test holding team-lead does not confer admin's permissions."""
        decisions = await make_aggregator(store).collect("u-lead", "system", "system", "manage")

        assert decisions == []

    @pytest.mark.asyncio
    async def test_group_mediated_grant(self, store):
        """Test grants reach active group members only."""
        aggregator = make_aggregator(store)

        member = await aggregator.collect("u-member", "workspace", "ws-q", "read")
        outsider = await aggregator.collect("u-lead", "workspace", "ws-q", "read")

        assert [d.source for d in member] == [DecisionSource.GROUP]
        assert member[0].source_group_id == "grp-eng"
        assert outsider == []

    @pytest.mark.asyncio
    async def test_inactive_group_contributes_nothing(self, store):
        """Test inactive groups are ignored."""
        store.groups["grp-eng"].is_active = False

        assert await make_aggregator(store).collect("u-member", "workspace", "ws-q", "read") == []

    @pytest.mark.asyncio
    async def test_allow_and_deny_both_collected(self, store):
        """Test conflicting bindings are both emitted."""
        decisions = await make_aggregator(store).collect("u1", "workspace", "ws-w", "delete")

        assert sorted((d.source_role_id, d.effect.value) for d in decisions) == [
            ("allow-role", "allow"), ("deny-role", "deny")
        ]

    @pytest.mark.asyncio
    async def test_unknown_user_and_resource(self, store):
        """Test absence yields an empty set, not an error."""
        aggregator = make_aggregator(store)

        assert await aggregator.collect("nobody", "workspace", "ws-w", "read") == []
        assert await aggregator.collect("u-lead", "workspace", "no-such-ws", "read") == []

    @pytest.mark.asyncio
    async def test_global_grant_matches_wildcard(self, store):
        """Test wildcard requests are satisfied only by global grants."""
        store.assign_role_to_user("u-global", "viewer")
        aggregator = make_aggregator(store)

        assert len(await aggregator.collect("u-global", "workspace", "*", "read")) == 1
        assert await aggregator.collect("u-lead", "workspace", "*", "read") == []

    @pytest.mark.asyncio
    async def test_duplicate_grants_deduplicated(self, store):
        """Test the same grant through two assignments yields one decision."""
        store.assign_role_to_user("u-lead", "team-lead", resource_id="proj-p")

        assert len(await make_aggregator(store).collect("u-lead", "workspace", "ws-w", "read")) == 1

    @pytest.mark.asyncio
    async def test_expired_grants_rechecked(self):
        """Test grants the store reports as effective are re-checked."""
        now = utc_now()
        store = AsyncMock()
        store.get_effective_user_roles.return_value = [
            UserRole("u", "expired", expires_at=now - timedelta(minutes=1)),
            UserRole("u", "disabled", is_active=False),
        ]
        store.get_active_groups_for_user.return_value = []
        aggregator = PermissionAggregator(store, ScopeMatcher(HierarchyResolver(store)), clock=lambda: now)

        subject = await aggregator.subject_grants("u")

        assert subject.grants == []
        assert await aggregator.collect("u", "workspace", "ws-w", "read") == []
        store.get_role_permissions.assert_not_called()

    @pytest.mark.asyncio
    async def test_future_expiry_is_effective(self, store):
        """Test unexpired grants count."""
        store.assign_role_to_user("u-temp", "viewer", expires_at=utc_now() + timedelta(hours=1))

        assert len(await make_aggregator(store).collect("u-temp", "workspace", "ws-x", "read")) == 1

    @pytest.mark.asyncio
    async def test_valid_until_is_earliest_grant_expiry(self, store):
        """Test the subject's grant set is bounded by its first expiring grant."""
        soon = utc_now() + timedelta(minutes=10)
        store.assign_role_to_user("u-temp", "viewer", expires_at=soon + timedelta(hours=1))
        store.assign_role_to_user("u-temp", "team-lead", resource_id="proj-p", expires_at=soon)
        aggregator = make_aggregator(store)

        assert (await aggregator.subject_grants("u-temp")).valid_until == soon
        assert (await aggregator.subject_grants("u-lead")).valid_until is None

    @pytest.mark.asyncio
    async def test_bindings_fetched_once_per_role(self):
        """Test role bindings are memoized across grants and requests."""
        permission = Permission("p", "workspace:read", "workspace", "read")
        store = AsyncMock()
        store.get_effective_user_roles.return_value = [
            UserRole("u", "r", resource_id=None),
            UserRole("u", "r", resource_id="ws-w"),
        ]
        store.get_active_groups_for_user.return_value = []
        store.get_resource_parent.return_value = None
        store.get_role_permissions.return_value = [RolePermission("r", permission)]
        aggregator = make_aggregator(store)

        await aggregator.collect("u", "workspace", "ws-w", "read")
        await aggregator.collect("u", "workspace", "ws-w", "read")

        store.get_role_permissions.assert_awaited_once_with("r")
        store.get_effective_user_roles.assert_awaited_once_with("u")

    @pytest.mark.asyncio
    async def test_conditional_allow_requires_attributes(self, store):
        """Test a conditional allow applies only when its conditions hold."""
        store.add_role(Role("eu-editor", "EU Editor"))
        store.bind_permission("eu-editor", "workspace-write", conditions={"region": "eu"})
        store.assign_role_to_user("u-eu", "eu-editor")
        aggregator = make_aggregator(store)

        assert len(await aggregator.collect("u-eu", "workspace", "ws-w", "write", {"region": "eu"})) == 1
        assert await aggregator.collect("u-eu", "workspace", "ws-w", "write", {"region": "us"}) == []
        assert await aggregator.collect("u-eu", "workspace", "ws-w", "write") == []

    @pytest.mark.asyncio
    async def test_conditional_deny_fails_closed(self, store):
        """Test a conditional deny applies when its field is missing."""
        store.add_role(Role("freeze", "Change Freeze"))
        store.bind_permission("freeze", "workspace-write", effect="deny", conditions={"frozen": True})
        store.assign_role_to_user("u-lead", "freeze")
        aggregator = make_aggregator(store)

        missing = await aggregator.collect("u-lead", "workspace", "ws-w", "write")
        unfrozen = await aggregator.collect("u-lead", "workspace", "ws-w", "write", {"frozen": False})

        assert {d.effect for d in missing} == {PermissionEffect.ALLOW, PermissionEffect.DENY}
        assert {d.effect for d in unfrozen} == {PermissionEffect.ALLOW}

    @pytest.mark.asyncio
    async def test_subject_grants_summary(self, store):
        """Test role and group summaries of a subject."""
        store.assign_role_to_user("u-member", "allow-role", resource_id="ws-w")

        subject = await make_aggregator(store).subject_grants("u-member")

        assert subject.direct_role_ids == ["allow-role"]
        assert subject.group_role_ids == ["viewer"]
        assert subject.role_ids == ["allow-role", "viewer"]
        assert subject.group_ids == ["grp-eng"]


@pytest.mark.parametrize("effect,outcome,expected", [
    (PermissionEffect.ALLOW, ConditionOutcome.MET, True),
    (PermissionEffect.ALLOW, ConditionOutcome.UNMET, False),
    (PermissionEffect.ALLOW, ConditionOutcome.UNKNOWN, False),
    (PermissionEffect.DENY, ConditionOutcome.MET, True),
    (PermissionEffect.DENY, ConditionOutcome.UNMET, False),
    (PermissionEffect.DENY, ConditionOutcome.UNKNOWN, True),
])
def test_condition_applies(effect, outcome, expected):
    """Test the fail-closed condition table."""
    assert condition_applies(effect, outcome) is expected
