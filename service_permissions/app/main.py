"""
Permissions service: the resolution facade.

Orchestrates cache lookup, grant aggregation and conflict resolution, and
defines the failure policy: a permission check never raises for
infrastructure or data errors, it denies and reports the error.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from opentelemetry import trace
from pydantic import ValidationError as PydanticValidationError

from shared.circuit_breaker import CircuitBreaker
from shared.config import AuthzConfig, get_config
from shared.errors import (
    AccessLayerException, CacheUnavailableError, StoreUnavailableError, ValidationError
)
from shared.logging import configure_logging, get_logger, check_context
from shared.metrics import MetricsCollector, get_metrics_collector

from .cache.base import CacheKey, CacheToken, NullPermissionCache, PermissionCache
from .cache.memory_cache import InMemoryPermissionCache
from .cache.redis_cache import RedisPermissionCache
from .rbac.aggregator import PermissionAggregator
from .rbac.conditions import ConditionEvaluator
from .rbac.hierarchy import HierarchyResolver, ScopeMatcher
from .rbac.models import (
    CheckPermissionRequest, CheckPermissionResponse, DecisionSource, HierarchyKind,
    PermissionDecision, PermissionEffect, UserPermissionMatrix, WILDCARD,
    enum_value, permission_key, utc_now
)
from .rbac.resolver import ConflictResolver
from .store.base import EntityStore, GuardedEntityStore


class PermissionService:
    """Permission resolution engine."""

    def __init__(self, store: EntityStore, cache: Optional[PermissionCache] = None,
                 config: Optional[AuthzConfig] = None, metrics: Optional[MetricsCollector] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.config = config or get_config()
        self.logger = get_logger("permissions.service")
        self.metrics = metrics or get_metrics_collector(self.config.service_name)
        self.tracer = trace.get_tracer(__name__)
        self.clock = clock

        if isinstance(store, GuardedEntityStore):
            self.store = store
        else:
            breaker = CircuitBreaker(
                failure_threshold=self.config.breaker_failure_threshold,
                recovery_timeout=self.config.breaker_recovery_seconds,
                expected_exception=StoreUnavailableError,
                name="entity_store"
            )
            self.store = GuardedEntityStore(store, self.config.store_timeout_seconds, breaker, self.metrics)

        self.cache = cache if cache is not None else InMemoryPermissionCache(self.config.cache_ttl_seconds)
        self.evaluator = ConditionEvaluator()
        self.resolver = ConflictResolver()

    async def start(self):
        """Start service components."""
        await self.cache.start()
        self.logger.info("Permission service started", cache=type(self.cache).__name__)

    async def stop(self):
        """Stop service components."""
        await self.cache.stop()
        self.logger.info("Permission service stopped")

    def _aggregator(self, store: EntityStore) -> Tuple[PermissionAggregator, HierarchyResolver]:
        # Fresh per resolution: memoized hierarchy data never outlives one request
        hierarchy = HierarchyResolver(store, self.config.max_hierarchy_depth)
        aggregator = PermissionAggregator(store, ScopeMatcher(hierarchy), self.evaluator, self.clock)
        return aggregator, hierarchy

    # Permission checks

    async def check_permission(self, user_id: str, resource_type: Any, resource_id: str, action: Any, *,
                               attributes: Optional[Mapping[str, Any]] = None,
                               timeout: Optional[float] = None) -> CheckPermissionResponse:
        """Decide whether ``user_id`` may perform ``action`` on a resource.

        Never raises for store, cache, data-integrity or validation errors:
        the response is then a deny with ``error`` set, so callers can tell
        "denied" from "undetermined". Cancellation propagates.
        """
        start_time = time.time()

        with check_context(user_id), self.tracer.start_as_current_span("permissions.check_permission") as span:
            try:
                request = self._validate_request(user_id, resource_type, resource_id, action, attributes)
                span.set_attribute("permissions.resource_type", request.resource_type)
                span.set_attribute("permissions.action", request.action)
                response = await self._check(request, timeout)
            except AccessLayerException as e:
                response = self._fail_closed(user_id, resource_type, resource_id, action, e)

            span.set_attribute("permissions.allowed", response.allowed)

        if response.error is not None:
            outcome = "error"
        else:
            outcome = response.decision.effect.value
        self.metrics.record_permission_check(outcome, time.time() - start_time)
        return response

    def _validate_request(self, user_id: str, resource_type: Any, resource_id: str, action: Any,
                          attributes: Optional[Mapping[str, Any]]) -> CheckPermissionRequest:
        try:
            return CheckPermissionRequest(
                user_id=user_id,
                resource_type=enum_value(resource_type) if resource_type is not None else "",
                resource_id=resource_id,
                action=enum_value(action) if action is not None else "",
                attributes=dict(attributes or {})
            )
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid permission check request",
                {"errors": [err["msg"] for err in e.errors()]}
            )

    async def _check(self, request: CheckPermissionRequest, timeout: Optional[float]) -> CheckPermissionResponse:
        key = CacheKey.for_request(
            request.user_id, request.resource_type, request.resource_id, request.action, request.attributes
        )

        cached = await self._cache_get(key, timeout)
        if cached is not None:
            self.logger.debug("Permission cache hit", user_id=request.user_id, key=key.to_str())
            return CheckPermissionResponse(
                allowed=cached.allowed,
                decision=cached,
                evaluation=["cache hit", f"{cached.effect.value}: {cached.reason}"],
                cache_hit=True
            )

        # Taken before any store read so a concurrent invalidation voids the write
        token = await self._cache_snapshot(request.user_id, timeout)

        store = self.store.with_timeout(timeout)
        aggregator, _ = self._aggregator(store)
        decisions = await aggregator.collect(
            request.user_id, request.resource_type, request.resource_id, request.action, request.attributes
        )
        subject = await aggregator.subject_grants(request.user_id)
        decision = self._bounded(
            self.resolver.resolve(decisions, request.resource_type, request.resource_id, request.action),
            subject.valid_until
        )

        if token is not None:
            await self._cache_put(key, decision, token, subject.role_ids, subject.group_ids, timeout)

        self.logger.debug(
            "Permission check resolved",
            user_id=request.user_id,
            resource_type=request.resource_type,
            resource_id=request.resource_id,
            action=request.action,
            effect=decision.effect.value,
            candidates=len(decisions)
        )
        return CheckPermissionResponse(
            allowed=decision.allowed,
            decision=decision,
            evaluation=[
                f"{len(subject.grants)} effective grant(s), {len(subject.group_ids)} group(s)",
                f"{len(decisions)} applicable decision(s)",
                f"{decision.effect.value}: {decision.reason}"
            ]
        )

    def _fail_closed(self, user_id: Any, resource_type: Any, resource_id: Any, action: Any,
                     error: AccessLayerException) -> CheckPermissionResponse:
        if isinstance(error, ValidationError):
            self.logger.warning("Rejected permission check", error=error.message, details=error.details)
        else:
            self.logger.error(
                "Permission check undetermined, denying",
                user_id=user_id,
                code=error.code,
                error=error.message
            )

        decision = PermissionDecision(
            resource_type=enum_value(resource_type) if resource_type is not None else "",
            resource_id=str(resource_id or ""),
            action=enum_value(action) if action is not None else "",
            effect=PermissionEffect.DENY,
            source=DecisionSource.FAIL_CLOSED,
            reason=f"undetermined ({error.code}): {error.message}"
        )
        return CheckPermissionResponse(
            allowed=False,
            decision=decision,
            evaluation=[f"failed closed: {error.code}"],
            error=error.to_response()
        )

    # Cache access during resolution degrades to a miss or a skipped write

    def _cache_timeout(self, timeout: Optional[float]) -> float:
        if timeout is None:
            return self.config.cache_timeout_seconds
        return min(timeout, self.config.cache_timeout_seconds)

    @staticmethod
    def _bounded(decision: PermissionDecision, valid_until: Optional[datetime]) -> PermissionDecision:
        if valid_until is None:
            return decision
        return decision.model_copy(update={"valid_until": valid_until})

    async def _cache_get(self, key: CacheKey, timeout: Optional[float] = None) -> Optional[PermissionDecision]:
        try:
            cached = await asyncio.wait_for(self.cache.get(key), timeout=self._cache_timeout(timeout))
        except (CacheUnavailableError, asyncio.TimeoutError) as e:
            self.logger.warning("Permission cache read failed, treating as miss", error=str(e))
            self.metrics.record_cache_lookup("error")
            return None

        if cached is not None and not cached.is_current(self.clock()):
            # A grant behind it expired; the store no longer returns that grant
            self.logger.debug("Cached decision outlived a grant", user_id=key.user_id, key=key.to_str())
            cached = None

        self.metrics.record_cache_lookup("hit" if cached is not None else "miss")
        return cached

    async def _cache_snapshot(self, user_id: str, timeout: Optional[float] = None) -> Optional[CacheToken]:
        try:
            return await asyncio.wait_for(self.cache.snapshot(user_id), timeout=self._cache_timeout(timeout))
        except (CacheUnavailableError, asyncio.TimeoutError) as e:
            self.logger.warning("Permission cache snapshot failed, skipping write", user_id=user_id, error=str(e))
            return None

    async def _cache_put(self, key: CacheKey, decision: PermissionDecision, token: CacheToken,
                         role_ids: List[str], group_ids: List[str], timeout: Optional[float] = None):
        max_ttl = None
        if decision.valid_until is not None:
            max_ttl = (decision.valid_until - self.clock()).total_seconds()
        try:
            await asyncio.wait_for(
                self.cache.put(key, decision, token, role_ids, group_ids, max_ttl_seconds=max_ttl),
                timeout=self._cache_timeout(timeout)
            )
        except (CacheUnavailableError, asyncio.TimeoutError) as e:
            self.logger.warning("Permission cache write failed", user_id=key.user_id, error=str(e))

    # Reporting

    async def compute_user_permission_matrix(self, user_id: str, *,
                                             timeout: Optional[float] = None) -> UserPermissionMatrix:
        """Everything ``user_id`` holds, with a decision per permission key.

        Final permissions are produced by the same collect/resolve path as
        ``check_permission``, one key per (resource type, grant scope or
        ``*``, action) implied by the user's grants. Raises on failure.
        """
        self._require_id(user_id, "user_id")
        start_time = time.time()

        with self.tracer.start_as_current_span("permissions.compute_user_permission_matrix"):
            store = self.store.with_timeout(timeout)
            aggregator, hierarchy = self._aggregator(store)

            subject = await aggregator.subject_grants(user_id)
            role_ids = subject.role_ids

            binding_lists, ancestor_lists = await asyncio.gather(
                asyncio.gather(*(aggregator.role_bindings(role_id) for role_id in role_ids)),
                asyncio.gather(*(hierarchy.ancestors(role_id, HierarchyKind.ROLE) for role_id in role_ids))
            )
            bindings_by_role = dict(zip(role_ids, binding_lists))

            targets = sorted({
                (enum_value(b.permission.resource_type), grant.resource_id or WILDCARD, enum_value(b.permission.action))
                for grant in subject.grants
                for b in bindings_by_role[grant.role_id]
            })
            decision_sets = await asyncio.gather(
                *(aggregator.collect(user_id, rt, rid, act) for rt, rid, act in targets)
            )

            final_permissions: Dict[str, PermissionDecision] = {}
            for (rt, rid, act), decisions in zip(targets, decision_sets):
                final_permissions[permission_key(rt, rid, act)] = self._bounded(
                    self.resolver.resolve(decisions, rt, rid, act), subject.valid_until
                )

            held = set(role_ids)
            inherited = sorted({a for ancestors in ancestor_lists for a in ancestors} - held)

        self.logger.info(
            "Computed user permission matrix",
            user_id=user_id,
            roles=len(role_ids),
            permissions=len(final_permissions),
            duration_ms=round((time.time() - start_time) * 1000, 2)
        )
        return UserPermissionMatrix(
            user_id=user_id,
            direct_roles=subject.direct_role_ids,
            inherited_roles=inherited,
            group_roles=subject.group_role_ids,
            groups=subject.group_ids,
            final_permissions=final_permissions,
            computed_at=self.clock()
        )

    async def get_user_effective_permissions(self, user_id: str, *,
                                             timeout: Optional[float] = None) -> List[PermissionDecision]:
        """Flattened final permissions, ordered by permission key."""
        matrix = await self.compute_user_permission_matrix(user_id, timeout=timeout)
        return [matrix.final_permissions[k] for k in sorted(matrix.final_permissions)]

    async def group_effective_permissions(self, user_id: str, *,
                                          timeout: Optional[float] = None) -> Dict[str, List[PermissionDecision]]:
        """Effective permissions grouped by resource type, sorted by action."""
        grouped: Dict[str, List[PermissionDecision]] = {}
        for decision in await self.get_user_effective_permissions(user_id, timeout=timeout):
            grouped.setdefault(decision.resource_type, []).append(decision)
        for decisions in grouped.values():
            decisions.sort(key=lambda d: (d.action, d.resource_id))
        return grouped

    async def get_effective_roles(self, user_id: str, *, timeout: Optional[float] = None) -> List[str]:
        """Direct, group and inherited role IDs (audit view)."""
        matrix = await self.compute_user_permission_matrix(user_id, timeout=timeout)
        return sorted(set(matrix.direct_roles) | set(matrix.group_roles) | set(matrix.inherited_roles))

    # Invalidation

    async def invalidate_user(self, user_id: str) -> int:
        """Invalidate a user's cached decisions. Raises CacheUnavailableError."""
        self._require_id(user_id, "user_id")
        return await self._invalidate("user", user_id, self.cache.invalidate_user(user_id))

    async def invalidate_group(self, group_id: str) -> int:
        """Invalidate every user whose decisions went through ``group_id``."""
        self._require_id(group_id, "group_id")
        return await self._invalidate("group", group_id, self.cache.invalidate_group(group_id))

    async def invalidate_role(self, role_id: str) -> int:
        """Invalidate every user whose decisions depended on ``role_id``."""
        self._require_id(role_id, "role_id")
        return await self._invalidate("role", role_id, self.cache.invalidate_role(role_id))

    async def _invalidate(self, scope: str, scope_id: str, operation) -> int:
        try:
            result = await asyncio.wait_for(operation, timeout=self.config.cache_timeout_seconds)
        except asyncio.TimeoutError:
            self.logger.error("Cache invalidation timed out", scope=scope, scope_id=scope_id)
            raise CacheUnavailableError(
                f"Invalidation of {scope} '{scope_id}' timed out",
                {"scope": scope, "scope_id": scope_id, "timeout_seconds": self.config.cache_timeout_seconds}
            )
        self.metrics.record_invalidation(scope)
        return result

    async def clear_cache(self) -> int:
        """Drop every cached decision. Raises CacheUnavailableError."""
        return await self._invalidate("all", "*", self.cache.clear_cache())

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Cache backend statistics. Raises CacheUnavailableError."""
        try:
            return await asyncio.wait_for(self.cache.get_cache_stats(), timeout=self.config.cache_timeout_seconds)
        except asyncio.TimeoutError:
            raise CacheUnavailableError(
                "Cache statistics timed out", {"timeout_seconds": self.config.cache_timeout_seconds}
            )

    def _require_id(self, value: Optional[str], name: str):
        if not value:
            raise ValidationError(f"{name} is required", {"field": name})

    async def health_check(self) -> Dict[str, Any]:
        """Check service dependencies."""
        store_ok = await self.store.health_check()
        cache_ok = await self.cache.health_check()
        return {
            "status": "healthy" if store_ok and cache_ok else "degraded",
            "dependencies": {
                "store": "ok" if store_ok else "error",
                "cache": "ok" if cache_ok else "error"
            },
            "circuit_breaker": self.store.breaker.get_state(),
            "timestamp": utc_now().isoformat()
        }


def create_cache(config: AuthzConfig) -> PermissionCache:
    """Build the configured cache backend."""
    if config.cache_backend == "redis":
        return RedisPermissionCache(config.redis_url, config.cache_key_prefix, config.cache_ttl_seconds)
    if config.cache_backend == "none":
        return NullPermissionCache()
    return InMemoryPermissionCache(config.cache_ttl_seconds)


def create_service(store: EntityStore, config: Optional[AuthzConfig] = None,
                   metrics: Optional[MetricsCollector] = None) -> PermissionService:
    """Create a permission service configured from ``config`` (or the environment)."""
    config = config or get_config()
    configure_logging(config.service_name, config.log_level)
    return PermissionService(store, cache=create_cache(config), config=config, metrics=metrics)
