"""
Policy-change events and the cache invalidation each one requires.

The administrative layer commits a mutation, then calls
``apply_policy_change`` before reporting the mutation as complete.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from shared.errors import ValidationError
from shared.logging import get_logger
from .rbac.models import utc_now

if TYPE_CHECKING:
    from .main import PermissionService


logger = get_logger("permissions.events")


class PolicyChangeType(str, Enum):
    """Mutations that can change a resolved decision."""
    USER_ROLE_ASSIGNED = "user_role.assigned"
    USER_ROLE_REVOKED = "user_role.revoked"
    GROUP_ROLE_ASSIGNED = "group_role.assigned"
    GROUP_ROLE_REVOKED = "group_role.revoked"
    GROUP_MEMBER_ADDED = "group_member.added"
    GROUP_MEMBER_REMOVED = "group_member.removed"
    ROLE_PERMISSION_CHANGED = "role_permission.changed"


@dataclass
class PolicyChange:
    """A committed policy mutation."""
    change_type: PolicyChangeType
    user_id: Optional[str] = None
    group_id: Optional[str] = None
    role_id: Optional[str] = None
    resource_id: Optional[str] = None
    actor: Optional[str] = None
    occurred_at: datetime = field(default_factory=utc_now)


def _require(change: PolicyChange, attr: str) -> str:
    value = getattr(change, attr)
    if not value:
        raise ValidationError(
            f"{change.change_type.value} requires {attr}",
            {"change_type": change.change_type.value, "missing": attr}
        )
    return value


async def apply_policy_change(service: "PermissionService", change: PolicyChange) -> int:
    """Run the invalidation a change requires.

    User-scoped changes invalidate the user; group role changes invalidate
    every member the cache knows about; binding changes invalidate every
    holder of the role. Returns what the invalidation reported.
    """
    change_type = PolicyChangeType(change.change_type)
    change.change_type = change_type

    if change_type in (
        PolicyChangeType.USER_ROLE_ASSIGNED,
        PolicyChangeType.USER_ROLE_REVOKED,
        PolicyChangeType.GROUP_MEMBER_ADDED,
        PolicyChangeType.GROUP_MEMBER_REMOVED,
    ):
        result = await service.invalidate_user(_require(change, "user_id"))
    elif change_type in (PolicyChangeType.GROUP_ROLE_ASSIGNED, PolicyChangeType.GROUP_ROLE_REVOKED):
        result = await service.invalidate_group(_require(change, "group_id"))
    else:
        result = await service.invalidate_role(_require(change, "role_id"))

    logger.info(
        "Applied policy change",
        change_type=change_type.value,
        user_id=change.user_id,
        group_id=change.group_id,
        role_id=change.role_id,
        actor=change.actor,
        invalidated=result
    )
    return result
