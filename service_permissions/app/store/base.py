"""
Entity store contract and the guarded wrapper used by the resolution core.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from shared.circuit_breaker import CircuitBreaker
from shared.errors import AccessLayerException, StoreUnavailableError, StoreTimeoutError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from ..rbac.models import UserRole, UserGroup, GroupRole, RolePermission


class EntityStore(ABC):
    """Read-only view of roles, permissions, resources and groups.

    Implementations own their persistence and locking. Unknown users,
    groups, roles or resources are not errors: they yield empty results.
    """

    @abstractmethod
    async def get_effective_user_roles(self, user_id: str) -> List[UserRole]:
        """Active, unexpired role assignments of a user."""

    @abstractmethod
    async def get_active_groups_for_user(self, user_id: str) -> List[UserGroup]:
        """Active groups the user is an active member of."""

    @abstractmethod
    async def get_effective_group_roles(self, group_id: str) -> List[GroupRole]:
        """Active, unexpired role assignments of a group."""

    @abstractmethod
    async def get_role_permissions(self, role_id: str) -> List[RolePermission]:
        """Bindings of an active role to active permissions, joined with the permission."""

    @abstractmethod
    async def get_resource_parent(self, resource_id: str) -> Optional[str]:
        """Parent resource ID, or None at the root or for unknown resources."""

    @abstractmethod
    async def get_role_parent(self, role_id: str) -> Optional[str]:
        """Parent role ID (reporting only)."""

    @abstractmethod
    async def get_group_parent(self, group_id: str) -> Optional[str]:
        """Parent group ID (reporting only)."""

    async def health_check(self) -> bool:
        """Check store health."""
        return True


class GuardedEntityStore(EntityStore):
    """Applies a timeout and a circuit breaker to every store call.

    This is the single place where store failures are classified: timeouts
    become ``StoreTimeoutError``, any other non-domain exception becomes
    ``StoreUnavailableError``. Domain errors (e.g. ``DataIntegrityError``)
    pass through and do not trip the breaker.

    Only ``timeout`` expiries count towards the breaker. A shorter
    ``caller_timeout`` is enforced outside it and never counts as a failure.
    """

    def __init__(self, store: EntityStore, timeout: float,
                 breaker: Optional[CircuitBreaker] = None,
                 metrics: Optional[MetricsCollector] = None,
                 caller_timeout: Optional[float] = None):
        self.store = store
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker(
            expected_exception=StoreUnavailableError,
            name="entity_store"
        )
        self.metrics = metrics
        self.caller_timeout = caller_timeout
        self.logger = get_logger("permissions.store.guard")

    def with_timeout(self, timeout: Optional[float]) -> "GuardedEntityStore":
        """View of this store with a caller-supplied timeout, sharing the breaker."""
        if timeout is None or timeout == self.timeout:
            return self
        if timeout < self.timeout:
            return GuardedEntityStore(self.store, self.timeout, self.breaker, self.metrics, caller_timeout=timeout)
        return GuardedEntityStore(self.store, timeout, self.breaker, self.metrics)

    async def _call(self, operation: str, *args: Any) -> Any:
        try:
            return await self._guarded(operation, *args)
        except StoreUnavailableError as e:
            self.logger.error("Entity store call failed", operation=operation, code=e.code, error=e.message)
            if self.metrics:
                self.metrics.record_store_error(e.code)
            raise

    async def _guarded(self, operation: str, *args: Any) -> Any:
        if self.caller_timeout is None:
            return await self.breaker.call(self._invoke, operation, *args)
        try:
            return await asyncio.wait_for(
                self.breaker.call(self._invoke, operation, *args), timeout=self.caller_timeout
            )
        except asyncio.TimeoutError:
            raise StoreTimeoutError(operation, self.caller_timeout)

    async def _invoke(self, operation: str, *args: Any) -> Any:
        method = getattr(self.store, operation)
        try:
            return await asyncio.wait_for(method(*args), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise StoreTimeoutError(operation, self.timeout)
        except AccessLayerException:
            raise
        except Exception as e:
            raise StoreUnavailableError(
                f"Entity store call '{operation}' failed",
                {"operation": operation, "error": str(e)}
            ) from e

    async def get_effective_user_roles(self, user_id: str) -> List[UserRole]:
        return await self._call("get_effective_user_roles", user_id)

    async def get_active_groups_for_user(self, user_id: str) -> List[UserGroup]:
        return await self._call("get_active_groups_for_user", user_id)

    async def get_effective_group_roles(self, group_id: str) -> List[GroupRole]:
        return await self._call("get_effective_group_roles", group_id)

    async def get_role_permissions(self, role_id: str) -> List[RolePermission]:
        return await self._call("get_role_permissions", role_id)

    async def get_resource_parent(self, resource_id: str) -> Optional[str]:
        return await self._call("get_resource_parent", resource_id)

    async def get_role_parent(self, role_id: str) -> Optional[str]:
        return await self._call("get_role_parent", role_id)

    async def get_group_parent(self, group_id: str) -> Optional[str]:
        return await self._call("get_group_parent", group_id)

    async def health_check(self) -> bool:
        try:
            return await self._call("health_check")
        except StoreUnavailableError:
            return False
