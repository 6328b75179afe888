"""
Entity store package.

The resolution core only reads through ``EntityStore``. Every call made by
the core goes through ``GuardedEntityStore``, which bounds it with a timeout
and a circuit breaker. ``InMemoryEntityStore`` is the bundled implementation.
"""

