"""
In-memory entity store.

Reference implementation of ``EntityStore`` for tests, local development
and embedding. Administrative helpers mutate committed state; they do not
invalidate any cache, callers must do that through the service.
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from shared.logging import get_logger
from .base import EntityStore
from ..rbac.conditions import parse_conditions
from ..rbac.models import (
    Role, Permission, Resource, UserGroup, RolePermission, UserRole, GroupRole,
    UserGroupMembership, PermissionEffect, utc_now
)


@dataclass
class _BindingRecord:
    """Binding as persisted: effect and conditions are still raw."""
    role_id: str
    permission_id: str
    effect: Any = None
    conditions: Any = None


class InMemoryEntityStore(EntityStore):
    """Dictionary-backed entity store."""

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self.logger = get_logger("permissions.store.memory")
        self.clock = clock
        self._lock = threading.RLock()

        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.resources: Dict[str, Resource] = {}
        self.groups: Dict[str, UserGroup] = {}
        self.bindings: Dict[Tuple[str, str], _BindingRecord] = {}
        self.user_roles: List[UserRole] = []
        self.group_roles: List[GroupRole] = []
        self.memberships: Dict[Tuple[str, str], UserGroupMembership] = {}

    # Administrative helpers

    def add_role(self, role: Role) -> Role:
        with self._lock:
            self.roles[role.role_id] = role
        return role

    def add_permission(self, permission: Permission) -> Permission:
        with self._lock:
            self.permissions[permission.permission_id] = permission
        return permission

    def add_resource(self, resource: Resource) -> Resource:
        with self._lock:
            self.resources[resource.resource_id] = resource
        return resource

    def add_group(self, group: UserGroup) -> UserGroup:
        with self._lock:
            self.groups[group.group_id] = group
        return group

    def bind_permission(self, role_id: str, permission_id: str, effect: Any = None, conditions: Any = None):
        """Bind a permission to a role; ``effect`` overrides the permission's own."""
        with self._lock:
            self.bindings[(role_id, permission_id)] = _BindingRecord(role_id, permission_id, effect, conditions)

    def unbind_permission(self, role_id: str, permission_id: str) -> bool:
        with self._lock:
            return self.bindings.pop((role_id, permission_id), None) is not None

    def assign_role_to_user(self, user_id: str, role_id: str, resource_id: Optional[str] = None,
                            expires_at: Optional[datetime] = None, assigned_by: Optional[str] = None) -> UserRole:
        grant = UserRole(user_id=user_id, role_id=role_id, resource_id=resource_id,
                         expires_at=expires_at, assigned_by=assigned_by)
        with self._lock:
            self.user_roles.append(grant)
        self.logger.info("Role assigned to user", user_id=user_id, role_id=role_id, resource_id=resource_id)
        return grant

    def revoke_role_from_user(self, user_id: str, role_id: str, resource_id: Optional[str] = None) -> int:
        with self._lock:
            before = len(self.user_roles)
            self.user_roles = [
                g for g in self.user_roles
                if not (g.user_id == user_id and g.role_id == role_id and g.resource_id == resource_id)
            ]
            return before - len(self.user_roles)

    def assign_role_to_group(self, group_id: str, role_id: str, resource_id: Optional[str] = None,
                             expires_at: Optional[datetime] = None, assigned_by: Optional[str] = None) -> GroupRole:
        grant = GroupRole(group_id=group_id, role_id=role_id, resource_id=resource_id,
                          expires_at=expires_at, assigned_by=assigned_by)
        with self._lock:
            self.group_roles.append(grant)
        self.logger.info("Role assigned to group", group_id=group_id, role_id=role_id, resource_id=resource_id)
        return grant

    def revoke_role_from_group(self, group_id: str, role_id: str, resource_id: Optional[str] = None) -> int:
        with self._lock:
            before = len(self.group_roles)
            self.group_roles = [
                g for g in self.group_roles
                if not (g.group_id == group_id and g.role_id == role_id and g.resource_id == resource_id)
            ]
            return before - len(self.group_roles)

    def add_user_to_group(self, user_id: str, group_id: str, member_role: str = "member") -> UserGroupMembership:
        membership = UserGroupMembership(user_id=user_id, group_id=group_id, member_role=member_role)
        with self._lock:
            self.memberships[(user_id, group_id)] = membership
        return membership

    def remove_user_from_group(self, user_id: str, group_id: str) -> bool:
        with self._lock:
            return self.memberships.pop((user_id, group_id), None) is not None

    # EntityStore contract

    async def get_effective_user_roles(self, user_id: str) -> List[UserRole]:
        now = self.clock()
        with self._lock:
            return [replace(g) for g in self.user_roles if g.user_id == user_id and g.is_effective(now)]

    async def get_active_groups_for_user(self, user_id: str) -> List[UserGroup]:
        with self._lock:
            group_ids = [
                m.group_id for m in self.memberships.values()
                if m.user_id == user_id and m.is_active
            ]
            return [
                replace(self.groups[gid]) for gid in sorted(group_ids)
                if gid in self.groups and self.groups[gid].is_active
            ]

    async def get_effective_group_roles(self, group_id: str) -> List[GroupRole]:
        now = self.clock()
        with self._lock:
            return [replace(g) for g in self.group_roles if g.group_id == group_id and g.is_effective(now)]

    async def get_role_permissions(self, role_id: str) -> List[RolePermission]:
        with self._lock:
            role = self.roles.get(role_id)
            if role is None or not role.is_active:
                return []
            records = [b for (rid, _), b in sorted(self.bindings.items()) if rid == role_id]
            joined = [(b, self.permissions.get(b.permission_id)) for b in records]

        result = []
        for binding, permission in joined:
            if permission is None or not permission.is_active:
                continue
            # Loading boundary: effects and conditions become typed values here
            result.append(RolePermission(
                role_id=binding.role_id,
                permission=replace(permission, effect=PermissionEffect.parse(permission.effect)),
                effect=PermissionEffect.parse_override(binding.effect),
                conditions=parse_conditions(binding.conditions)
            ))
        return result

    async def get_resource_parent(self, resource_id: str) -> Optional[str]:
        with self._lock:
            resource = self.resources.get(resource_id)
            return resource.parent_resource_id if resource else None

    async def get_role_parent(self, role_id: str) -> Optional[str]:
        with self._lock:
            role = self.roles.get(role_id)
            return role.parent_role_id if role else None

    async def get_group_parent(self, group_id: str) -> Optional[str]:
        with self._lock:
            group = self.groups.get(group_id)
            return group.parent_group_id if group else None
