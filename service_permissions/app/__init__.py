"""
Permissions Service package for the Access Layer.

This package decides whether a subject may perform an action on a
protected resource, from role and group policy assignments. It provides:

- app.main: PermissionService facade (check, matrix, invalidation).
- app.rbac: Data model, hierarchy traversal, grant aggregation and
  conflict resolution.
- app.store: Entity store contract, guarded wrapper and in-memory store.
- app.cache: Decision caches (null, in-memory, Redis).
- app.events: Mapping of policy mutations to cache invalidation.

Guidelines:
- Any uncertainty resolves to deny; infrastructure errors are reported
  separately from ordinary denials.
- Role seniority is reporting-only. Resource containment is the only
  inherited dimension.
- The cache is an optimization; results must not depend on it.
"""
