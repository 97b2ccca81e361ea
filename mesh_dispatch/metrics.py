from typing import Any, Dict, List, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest


class MetricsCollector:
    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        # Prometheus metrics
        self.request_count = Counter(
            'mesh_dispatch_requests_total',
            'Total logical calls made by the dispatcher',
            ['service', 'method', 'status', 'target_service'],
            registry=self.registry,
        )

        self.request_duration = Histogram(
            'mesh_dispatch_request_duration_seconds',
            'Logical call duration in seconds, retries included',
            ['service', 'method', 'target_service'],
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
            registry=self.registry,
        )

        self.requests_in_flight = Gauge(
            'mesh_dispatch_requests_in_flight',
            'Logical calls started and not yet finished',
            ['service', 'method', 'target_service'],
            registry=self.registry,
        )

        self.retries_total = Counter(
            'mesh_dispatch_retries_total',
            'Total retry attempts',
            ['service', 'target_service'],
            registry=self.registry,
        )

        self.route_bootstraps = Counter(
            'mesh_dispatch_route_bootstraps_total',
            'Routing table fetches from the registry',
            ['service', 'outcome'],
            registry=self.registry,
        )

        self.markup_bodies = Counter(
            'mesh_dispatch_markup_bodies_total',
            'Error responses whose body was an HTML page',
            ['service'],
            registry=self.registry,
        )

        self._metrics: Dict[str, Any] = {}
        self._latencies: List[float] = []
        self.reset()

    def record_request(self, target_service: str, method: str = "POST"):
        """Record a logical call being started"""
        self._metrics["requests_total"] += 1
        self.requests_in_flight.labels(
            service=self.service_name,
            method=method,
            target_service=target_service
        ).inc()

    def record_success(self, target_service: str, latency: float, method: str = "POST"):
        self._metrics["requests_success"] += 1
        self._finish(target_service, method)
        self._record_latency(latency)

        self.request_count.labels(
            service=self.service_name,
            method=method,
            status="success",
            target_service=target_service
        ).inc()

        self.request_duration.labels(
            service=self.service_name,
            method=method,
            target_service=target_service
        ).observe(latency)

    def record_failure(self, target_service: str, error: str, latency: float, method: str = "POST"):
        self._metrics["requests_failed"] += 1
        self._metrics["last_error"] = error
        self._finish(target_service, method)

        self.request_count.labels(
            service=self.service_name,
            method=method,
            status="failure",
            target_service=target_service
        ).inc()

        self.request_duration.labels(
            service=self.service_name,
            method=method,
            target_service=target_service
        ).observe(latency)

    def record_retry(self, target_service: str):
        self._metrics["retries_total"] += 1

        self.retries_total.labels(
            service=self.service_name,
            target_service=target_service
        ).inc()

    def record_bootstrap(self, outcome: str):
        """Record a routing table fetch, ``success`` or ``failure``"""
        self._metrics["route_bootstraps"] += 1
        self.route_bootstraps.labels(service=self.service_name, outcome=outcome).inc()

    def record_markup_body(self, body: str = None):
        self._metrics["markup_bodies"] += 1
        self.markup_bodies.labels(service=self.service_name).inc()

    def _finish(self, target_service: str, method: str):
        self.requests_in_flight.labels(
            service=self.service_name,
            method=method,
            target_service=target_service
        ).dec()

    def _record_latency(self, latency: float):
        self._latencies.append(latency)
        # Keep only last 1000 latencies for percentile calculation
        if len(self._latencies) > 1000:
            self._latencies.pop(0)

    def get_metrics(self) -> Dict[str, Any]:
        """Get current metrics snapshot"""
        latencies = sorted(self._latencies)
        total_requests = self._metrics["requests_total"]

        metrics = self._metrics.copy()

        if latencies:
            metrics.update({
                "latency_p50": latencies[int(len(latencies) * 0.5)],
                "latency_p95": latencies[int(len(latencies) * 0.95)],
                "latency_p99": latencies[int(len(latencies) * 0.99)],
                "latency_avg": sum(latencies) / len(latencies),
            })

        if total_requests > 0:
            metrics.update({
                "success_rate": self._metrics["requests_success"] / total_requests,
                "error_rate": self._metrics["requests_failed"] / total_requests,
            })

        return metrics

    def get_prometheus_metrics(self) -> str:
        """Get metrics in Prometheus text format"""
        return generate_latest(self.registry).decode("utf-8")

    def reset(self):
        """Reset the snapshot counters; Prometheus series are cumulative"""
        self._latencies.clear()
        self._metrics.clear()
        self._metrics.update({
            "requests_total": 0,
            "requests_success": 0,
            "requests_failed": 0,
            "retries_total": 0,
            "route_bootstraps": 0,
            "markup_bodies": 0,
            "last_error": None,
        })
