"""
RBAC resolution package.

Turns role, group and resource-scope assignments into a single
deterministic allow/deny decision with provenance.

Modules of interest:
- models: Entity records, effects, decisions and response models.
- conditions: Parsing and fail-closed evaluation of binding conditions.
- hierarchy: Ancestor traversal with cycle detection and scope matching.
- aggregator: Collection of every grant applicable to a request.
- resolver: Deny-overrides-allow conflict resolution.

Role seniority and group nesting are reported but never expand the
permission set; resource containment is the only inherited dimension.
"""
