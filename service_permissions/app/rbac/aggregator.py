"""
Permission aggregation.

Collects every role-permission binding reachable by a subject for one
request: direct role assignments plus the role assignments of every
active group the subject belongs to, restricted to grants whose resource
scope covers the requested resource. Role and group ancestry are never
walked here; seniority does not expand the grant set.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from shared.logging import get_logger
from .conditions import ConditionEvaluator, ConditionOutcome, conditions_to_dicts, request_fields
from .hierarchy import ScopeMatcher
from .models import (
    DecisionSource, PermissionDecision, PermissionEffect, RolePermission, as_utc, enum_value, utc_now
)
from ..store.base import EntityStore


@dataclass(frozen=True)
class ScopedGrant:
    """An effective role assignment, direct or through a group."""
    role_id: str
    resource_id: Optional[str]
    source: DecisionSource
    group_id: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass
class SubjectGrants:
    """Everything a subject holds, before scope filtering."""
    user_id: str
    grants: List[ScopedGrant] = field(default_factory=list)
    group_ids: List[str] = field(default_factory=list)

    @property
    def direct_role_ids(self) -> List[str]:
        return sorted({g.role_id for g in self.grants if g.source == DecisionSource.DIRECT})

    @property
    def group_role_ids(self) -> List[str]:
        return sorted({g.role_id for g in self.grants if g.source == DecisionSource.GROUP})

    @property
    def role_ids(self) -> List[str]:
        return sorted({g.role_id for g in self.grants})

    @property
    def valid_until(self) -> Optional[datetime]:
        """Earliest expiry among all effective grants, or None when none expire."""
        expiries = [as_utc(g.expires_at) for g in self.grants if g.expires_at is not None]
        return min(expiries) if expiries else None


def condition_applies(effect: PermissionEffect, outcome: ConditionOutcome) -> bool:
    """Fail closed: an undeterminable condition keeps a deny and drops an allow."""
    if outcome == ConditionOutcome.MET:
        return True
    if outcome == ConditionOutcome.UNKNOWN:
        return effect == PermissionEffect.DENY
    return False


class PermissionAggregator:
    """Collects candidate decisions for a (user, resource, action) request.

    One aggregator serves one resolution (or one matrix computation); it
    memoizes subject grants and role bindings for its own lifetime only.
    """

    def __init__(self, store: EntityStore, matcher: ScopeMatcher,
                 evaluator: Optional[ConditionEvaluator] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.matcher = matcher
        self.evaluator = evaluator or ConditionEvaluator()
        self.clock = clock
        self.logger = get_logger("permissions.aggregator")
        self._subjects: Dict[str, SubjectGrants] = {}
        self._bindings: Dict[str, List[RolePermission]] = {}

    async def subject_grants(self, user_id: str) -> SubjectGrants:
        """Effective direct and group-mediated grants of a user."""
        if user_id in self._subjects:
            return self._subjects[user_id]

        user_roles, groups = await asyncio.gather(
            self.store.get_effective_user_roles(user_id),
            self.store.get_active_groups_for_user(user_id)
        )
        group_role_lists = await asyncio.gather(
            *(self.store.get_effective_group_roles(group.group_id) for group in groups)
        )

        # Stores promise effective grants only; re-check against our clock
        now = self.clock()
        grants: List[ScopedGrant] = [
            ScopedGrant(role_id=ur.role_id, resource_id=ur.resource_id, source=DecisionSource.DIRECT,
                        expires_at=ur.expires_at)
            for ur in user_roles if ur.is_effective(now)
        ]
        for group, group_roles in zip(groups, group_role_lists):
            grants.extend(
                ScopedGrant(role_id=gr.role_id, resource_id=gr.resource_id,
                            source=DecisionSource.GROUP, group_id=group.group_id,
                            expires_at=gr.expires_at)
                for gr in group_roles if gr.is_effective(now)
            )

        subject = SubjectGrants(
            user_id=user_id,
            grants=list(dict.fromkeys(grants)),
            group_ids=sorted({group.group_id for group in groups})
        )
        self._subjects[user_id] = subject
        return subject

    async def role_bindings(self, role_id: str) -> List[RolePermission]:
        if role_id not in self._bindings:
            self._bindings[role_id] = await self.store.get_role_permissions(role_id)
        return self._bindings[role_id]

    async def collect(self, user_id: str, resource_type: Any, resource_id: str, action: Any,
                      attributes: Optional[Mapping[str, Any]] = None) -> List[PermissionDecision]:
        """Every applicable decision for the request. Empty means no grant."""
        start_time = time.time()
        resource_type = enum_value(resource_type)
        action = enum_value(action)

        subject = await self.subject_grants(user_id)
        if not subject.grants:
            return []

        scope = await self.matcher.scope_for(resource_type, resource_id)
        matching = [grant for grant in subject.grants if scope.matches(grant.resource_id)]
        if not matching:
            return []

        role_ids = list(dict.fromkeys(grant.role_id for grant in matching))
        binding_lists = await asyncio.gather(*(self.role_bindings(role_id) for role_id in role_ids))
        bindings_by_role = dict(zip(role_ids, binding_lists))

        request = request_fields(user_id, resource_type, resource_id, action)
        decisions: Dict[Tuple[str, ...], PermissionDecision] = {}

        for grant in matching:
            for binding in bindings_by_role[grant.role_id]:
                permission = binding.permission
                if enum_value(permission.resource_type) != resource_type or enum_value(permission.action) != action:
                    continue

                effect = binding.effective_effect
                if binding.conditions:
                    outcome = self.evaluator.evaluate(binding.conditions, attributes, request)
                    if not condition_applies(effect, outcome):
                        continue

                decision = self._to_decision(grant, binding, effect, resource_type, resource_id, action)
                decisions.setdefault(decision.sort_key, decision)

        self.logger.debug(
            "Collected permission decisions",
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            grants=len(matching),
            decisions=len(decisions),
            duration_ms=round((time.time() - start_time) * 1000, 2)
        )
        return list(decisions.values())

    def _to_decision(self, grant: ScopedGrant, binding: RolePermission, effect: PermissionEffect,
                     resource_type: str, resource_id: str, action: str) -> PermissionDecision:
        via = f"group '{grant.group_id}'" if grant.source == DecisionSource.GROUP else "direct assignment"
        scope = f"resource '{grant.resource_id}'" if grant.resource_id else "global scope"
        return PermissionDecision(
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            effect=effect,
            source=grant.source,
            source_role_id=grant.role_id,
            source_permission_id=binding.permission_id,
            source_group_id=grant.group_id,
            scope_resource_id=grant.resource_id,
            reason=f"Role '{grant.role_id}' {effect.value}s via {via} at {scope}",
            conditions=conditions_to_dicts(binding.conditions)
        )
