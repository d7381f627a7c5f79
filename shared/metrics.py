"""
Shared metrics configuration for the backlog privilege services.
"""

from typing import Dict, Any, Optional
import threading

from prometheus_client import Counter, Histogram, Info, CollectorRegistry, REGISTRY


class MetricsCollector:
    """Centralized metrics collector for services."""
    
    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or REGISTRY
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()
    
    def _setup_metrics(self):
        """Set up common metrics for the service."""
        
        # Service info
        self._metrics["service_info"] = Info(
            "service",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })
        
        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )
        
        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )
        
        # Health check metrics
        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )
        
        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )
        
        if self.service_name == "privileges":
            self._setup_privileges_metrics()
    
    def _setup_privileges_metrics(self):
        """Set up privilege-specific metrics."""
        self._metrics["privilege_checks_total"] = Counter(
            "privilege_checks_total",
            "Total access gate checks",
            ["decision", "reason"],
            registry=self.registry
        )
        
        self._metrics["privilege_resolutions_total"] = Counter(
            "privilege_resolutions_total",
            "Total privilege resolutions by deciding scope",
            ["source"],
            registry=self.registry
        )
        
        self._metrics["privilege_resolution_duration_seconds"] = Histogram(
            "privilege_resolution_duration_seconds",
            "Privilege resolution duration in seconds",
            ["resource_kind"],
            registry=self.registry
        )
        
        self._metrics["grant_mutations_total"] = Counter(
            "grant_mutations_total",
            "Total grant and scope mutations",
            ["scope", "operation"],
            registry=self.registry
        )
        
        self._metrics["privilege_cache_events_total"] = Counter(
            "privilege_cache_events_total",
            "Privilege cache hits, misses and invalidations",
            ["event"],
            registry=self.registry
        )
    
    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()
        
        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)
    
    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()
    
    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()
    
    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).observe(value)


_collectors: Dict[str, MetricsCollector] = {}
_collectors_lock = threading.Lock()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service.

    Collectors bound to the default registry are shared per service name,
    since prometheus_client refuses to register the same series twice.
    """
    if registry is not None:
        return MetricsCollector(service_name, registry)
    
    with _collectors_lock:
        collector = _collectors.get(service_name)
        if collector is None:
            collector = MetricsCollector(service_name)
            _collectors[service_name] = collector
        return collector
