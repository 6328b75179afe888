"""
Cache package for the Permissions Service.

Provides the permission cache contract plus three implementations: a
no-op cache, an in-process cache for single-node deployments, and a
Redis-backed cache shared across service instances. Every cache tracks
which users' decisions depend on which roles and groups so that policy
changes can invalidate exactly the affected users.
"""
