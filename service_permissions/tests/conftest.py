"""
Shared fixtures for Permissions Service tests.

The scenario store models one organization with two projects:

    system
    org-1
    ├── proj-p
    │   ├── ws-w
    │   │   └── task-t
    │   └── ws-x
    └── proj-q
        └── ws-q

Roles (parent shown in brackets, informational only):

    admin               system:manage, workspace:delete
    team-lead [admin]   project:manage, workspace:read, workspace:write
    viewer [team-lead]  workspace:read
    allow-role          workspace:delete
    deny-role           workspace:delete (overridden to deny)
"""

import pytest

from shared.config import AuthzConfig
from shared.metrics import MetricsCollector
from service_permissions.app.cache.memory_cache import InMemoryPermissionCache
from service_permissions.app.main import PermissionService
from service_permissions.app.rbac.models import Permission, Resource, Role, UserGroup
from service_permissions.app.store.memory import InMemoryEntityStore


def build_scenario_store() -> InMemoryEntityStore:
    """Create the scenario store described in the module docstring."""
    store = InMemoryEntityStore()

    for resource in [
        Resource("system", "system", "system"),
        Resource("org-1", "organization", "org-1"),
        Resource("proj-p", "project", "proj-p", parent_resource_id="org-1"),
        Resource("ws-w", "workspace", "ws-w", parent_resource_id="proj-p"),
        Resource("task-t", "task", "task-t", parent_resource_id="ws-w"),
        Resource("ws-x", "workspace", "ws-x", parent_resource_id="proj-p"),
        Resource("proj-q", "project", "proj-q", parent_resource_id="org-1"),
        Resource("ws-q", "workspace", "ws-q", parent_resource_id="proj-q"),
    ]:
        store.add_resource(resource)

    for permission in [
        Permission("system-manage", "system:manage", "system", "manage"),
        Permission("project-manage", "project:manage", "project", "manage"),
        Permission("workspace-read", "workspace:read", "workspace", "read"),
        Permission("workspace-write", "workspace:write", "workspace", "write"),
        Permission("workspace-delete", "workspace:delete", "workspace", "delete"),
    ]:
        store.add_permission(permission)

    store.add_role(Role("admin", "Administrator", level=100, is_system=True))
    store.add_role(Role("team-lead", "Team Lead", level=50, parent_role_id="admin"))
    store.add_role(Role("viewer", "Viewer", level=10, parent_role_id="team-lead"))
    store.add_role(Role("allow-role", "Deleter"))
    store.add_role(Role("deny-role", "Delete Blocker"))

    store.bind_permission("admin", "system-manage")
    store.bind_permission("admin", "workspace-delete")
    store.bind_permission("team-lead", "project-manage")
    store.bind_permission("team-lead", "workspace-read")
    store.bind_permission("team-lead", "workspace-write")
    store.bind_permission("viewer", "workspace-read")
    store.bind_permission("allow-role", "workspace-delete")
    store.bind_permission("deny-role", "workspace-delete", effect="deny")

    store.add_group(UserGroup("grp-eng", "Engineering"))
    store.add_group(UserGroup("grp-platform", "Platform", parent_group_id="grp-eng"))
    store.assign_role_to_group("grp-eng", "viewer", resource_id="proj-q")
    store.add_user_to_group("u-member", "grp-eng")

    store.assign_role_to_user("u-lead", "team-lead", resource_id="proj-p")
    store.assign_role_to_user("u1", "allow-role", resource_id="ws-w")
    store.assign_role_to_user("u1", "deny-role", resource_id="ws-w")
    return store


@pytest.fixture
def store():
    """Scenario entity store."""
    return build_scenario_store()


@pytest.fixture
def config():
    """Configuration with short timeouts."""
    return AuthzConfig(
        store_timeout_seconds=0.5,
        cache_timeout_seconds=0.5,
        breaker_failure_threshold=3,
        breaker_recovery_seconds=60.0
    )


@pytest.fixture
def metrics():
    """Unregistered metrics collector."""
    return MetricsCollector("permissions-test")


@pytest.fixture
def cache():
    """In-memory permission cache."""
    return InMemoryPermissionCache(ttl_seconds=300)


@pytest.fixture
def service(store, cache, config, metrics):
    """Permission service over the scenario store."""
    return PermissionService(store, cache=cache, config=config, metrics=metrics)


@pytest.fixture(scope="session")
def scenario_factory():
    """Factory for fresh scenario stores (for tests that need several)."""
    return build_scenario_store
