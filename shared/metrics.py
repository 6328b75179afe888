"""
Shared metrics configuration for the permission services.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Info, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for services.

    Metrics are only exported when a ``registry`` is supplied, so several
    collectors can coexist in one process (tests, embedded services).
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""
        
        # Service info
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })
        
        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )
        
        self._setup_permission_metrics()

    def _setup_permission_metrics(self):
        """Set up permission-resolution metrics."""
        self._metrics["permission_checks_total"] = Counter(
            "permission_checks_total",
            "Total permission checks",
            ["decision"],
            registry=self.registry
        )
        
        self._metrics["permission_check_duration_seconds"] = Histogram(
            "permission_check_duration_seconds",
            "Permission check duration in seconds",
            registry=self.registry
        )
        
        self._metrics["permission_cache_requests_total"] = Counter(
            "permission_cache_requests_total",
            "Permission cache lookups",
            ["result"],
            registry=self.registry
        )
        
        self._metrics["store_errors_total"] = Counter(
            "store_errors_total",
            "Entity store failures",
            ["error_type"],
            registry=self.registry
        )
        
        self._metrics["cache_invalidations_total"] = Counter(
            "cache_invalidations_total",
            "Permission cache invalidations",
            ["scope"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_permission_check(self, decision: str, duration: float):
        """Record the outcome and latency of one permission check."""
        self._metrics["permission_checks_total"].labels(decision=decision).inc()
        self._metrics["permission_check_duration_seconds"].observe(duration)

    def record_cache_lookup(self, result: str):
        """Record a cache hit, miss or error."""
        self._metrics["permission_cache_requests_total"].labels(result=result).inc()

    def record_store_error(self, error_type: str):
        """Record an entity store failure."""
        self._metrics["store_errors_total"].labels(error_type=error_type).inc()
        self.record_error(error_type)

    def record_invalidation(self, scope: str):
        """Record a cache invalidation (user, group or role)."""
        self._metrics["cache_invalidations_total"].labels(scope=scope).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
