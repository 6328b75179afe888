"""
RBAC data models for the Permissions Service.
"""

from typing import Dict, Any, Optional, List, Tuple, Union
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from shared.errors import DataIntegrityError, ErrorResponse


WILDCARD = "*"


def enum_value(value: Any) -> str:
    """Plain string form of an enum member or string."""
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def utc_now() -> datetime:
    """Current time, timezone-aware."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def permission_key(resource_type: Any, resource_id: Optional[str], action: Any) -> str:
    """Build the ``{resourceType}:{resourceIDOrWildcard}:{action}`` key."""
    return f"{enum_value(resource_type)}:{resource_id or WILDCARD}:{enum_value(action)}"


class PermissionEffect(str, Enum):
    """Polarity of a permission or binding override."""
    ALLOW = "allow"
    DENY = "deny"

    @classmethod
    def parse(cls, raw: Any) -> "PermissionEffect":
        """Load an effect from store data, rejecting anything but allow/deny."""
        if isinstance(raw, cls):
            return raw
        if isinstance(raw, str):
            normalized = raw.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
        raise DataIntegrityError(
            f"Invalid permission effect {raw!r}",
            {"effect": repr(raw)}
        )

    @classmethod
    def parse_override(cls, raw: Any) -> Optional["PermissionEffect"]:
        """Load an optional override; empty means inherit."""
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            return None
        return cls.parse(raw)


class ResourceType(str, Enum):
    """Well-known resource types."""
    SYSTEM = "system"
    ORGANIZATION = "organization"
    PROJECT = "project"
    WORKSPACE = "workspace"
    SESSION = "session"
    TASK = "task"
    USER = "user"


class ActionType(str, Enum):
    """Well-known actions."""
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    WRITE = "write"
    DELETE = "delete"
    EXECUTE = "execute"
    MANAGE = "manage"


class DecisionSource(str, Enum):
    """Where a decision came from."""
    DIRECT = "direct"
    GROUP = "group"
    DEFAULT = "default"
    FAIL_CLOSED = "fail_closed"


class HierarchyKind(str, Enum):
    """The three parent-pointer trees."""
    RESOURCE = "resource"
    ROLE = "role"
    GROUP = "group"


class ConditionOperator(str, Enum):
    """Binding condition operators."""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


@dataclass(frozen=True)
class BindingCondition:
    """Condition restricting when a role-permission binding applies."""
    field: str
    operator: ConditionOperator
    value: Union[str, int, float, bool, Tuple[Any, ...]]
    description: Optional[str] = None


# Entity records, as read from the entity store


@dataclass
class Role:
    """Role. Seniority (parent/level) is informational only."""
    role_id: str
    name: str
    level: int = 0
    parent_role_id: Optional[str] = None
    is_system: bool = False
    is_active: bool = True
    description: Optional[str] = None


@dataclass
class Permission:
    """Type-scoped policy statement."""
    permission_id: str
    name: str
    resource_type: str
    action: str
    effect: PermissionEffect = PermissionEffect.ALLOW
    is_active: bool = True
    description: Optional[str] = None


@dataclass
class Resource:
    """Protected resource; forms a containment tree."""
    resource_id: str
    resource_type: str
    identifier: str
    parent_resource_id: Optional[str] = None
    name: Optional[str] = None
    is_active: bool = True


@dataclass
class UserGroup:
    """User group; its tree is used for reporting only."""
    group_id: str
    name: str
    parent_group_id: Optional[str] = None
    group_type: str = "team"
    is_active: bool = True


@dataclass
class RolePermission:
    """Binding of a permission to a role, optionally overriding its effect."""
    role_id: str
    permission: Permission
    effect: Optional[PermissionEffect] = None
    conditions: Tuple[BindingCondition, ...] = ()

    @property
    def permission_id(self) -> str:
        return self.permission.permission_id

    @property
    def effective_effect(self) -> PermissionEffect:
        return self.effect or self.permission.effect


@dataclass
class UserRole:
    """Scoped grant of a role to a user. ``resource_id`` None means global."""
    user_id: str
    role_id: str
    resource_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    assigned_by: Optional[str] = None

    def is_effective(self, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or as_utc(self.expires_at) > now)


@dataclass
class GroupRole:
    """Scoped grant of a role to every active member of a group."""
    group_id: str
    role_id: str
    resource_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    is_active: bool = True
    assigned_by: Optional[str] = None

    def is_effective(self, now: datetime) -> bool:
        return self.is_active and (self.expires_at is None or as_utc(self.expires_at) > now)


@dataclass
class UserGroupMembership:
    """Membership edge between a user and a group."""
    user_id: str
    group_id: str
    is_active: bool = True
    member_role: str = "member"
    joined_at: datetime = field(default_factory=utc_now)


# Decisions and responses


class PermissionDecision(BaseModel):
    """A single allow/deny decision with its provenance."""

    model_config = ConfigDict(frozen=True)

    resource_type: str
    resource_id: str
    action: str
    effect: PermissionEffect
    source: DecisionSource
    source_role_id: Optional[str] = None
    source_permission_id: Optional[str] = None
    source_group_id: Optional[str] = None
    scope_resource_id: Optional[str] = None
    reason: str = ""
    conditions: List[Dict[str, Any]] = Field(default_factory=list)
    # The grant set behind the decision changes no later than this
    valid_until: Optional[datetime] = None

    @property
    def allowed(self) -> bool:
        return self.effect == PermissionEffect.ALLOW

    def is_current(self, now: datetime) -> bool:
        return self.valid_until is None or as_utc(self.valid_until) > now

    @property
    def sort_key(self) -> Tuple[str, ...]:
        """Total order used to pick witnesses independent of input order."""
        return (
            self.source_role_id or "",
            self.source_permission_id or "",
            self.source_group_id or "",
            self.scope_resource_id or "",
            self.source.value,
        )


class CheckPermissionRequest(BaseModel):
    """Request model for a permission check."""
    user_id: str = Field(..., min_length=1, description="Subject ID")
    resource_type: str = Field(..., min_length=1, description="Resource type")
    resource_id: str = Field(..., min_length=1, description="Resource ID or '*'")
    action: str = Field(..., min_length=1, description="Action to perform")
    attributes: Dict[str, Any] = Field(default_factory=dict, description="Condition attributes")


class CheckPermissionResponse(BaseModel):
    """Response model for a permission check."""
    allowed: bool = Field(..., description="Whether the action is allowed")
    decision: PermissionDecision
    evaluation: List[str] = Field(default_factory=list, description="Resolution trace")
    cache_hit: bool = False
    error: Optional[ErrorResponse] = Field(None, description="Set when the decision is undetermined")

    @property
    def undetermined(self) -> bool:
        return self.error is not None


class UserPermissionMatrix(BaseModel):
    """Reporting view of everything a user can do."""
    user_id: str
    direct_roles: List[str] = Field(default_factory=list)
    inherited_roles: List[str] = Field(default_factory=list)
    group_roles: List[str] = Field(default_factory=list)
    groups: List[str] = Field(default_factory=list)
    final_permissions: Dict[str, PermissionDecision] = Field(default_factory=dict)
    computed_at: datetime = Field(default_factory=utc_now)
