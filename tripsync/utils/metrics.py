"""Prometheus metrics for reconciliation fetches and mutations."""

from prometheus_client import Counter, Histogram

sync_fetch_latency_ms = Histogram(
    "sync_fetch_latency_ms",
    "Reconciliation fetch latency in milliseconds",
    ["resource", "outcome"],
    buckets=[10, 50, 100, 200, 500, 1000, 2000, 4000, 8000],
)

sync_fetch_errors_total = Counter(
    "sync_fetch_errors_total",
    "Total failed reconciliation fetch attempts",
    ["resource", "category"],
)

sync_mutations_total = Counter(
    "sync_mutations_total",
    "Total settled mutations",
    ["resource", "kind", "outcome"],
)

sync_rollbacks_total = Counter(
    "sync_rollbacks_total",
    "Total optimistic patches rolled back",
    ["resource", "kind"],
)


class SyncMetrics:
    """Interface for sync metrics."""

    def record_fetch(self, resource: str, outcome: str, latency_ms: float) -> None:
        """Record reconciliation fetch latency."""
        pass

    def inc_fetch_error(self, resource: str, category: str) -> None:
        """Increment failed fetch counter."""
        pass

    def inc_mutation(self, resource: str, kind: str, outcome: str) -> None:
        """Increment settled mutation counter."""
        pass

    def inc_rollback(self, resource: str, kind: str) -> None:
        """Increment rollback counter."""
        pass


class PrometheusSyncMetrics(SyncMetrics):
    """Prometheus-based sync metrics implementation."""

    def record_fetch(self, resource: str, outcome: str, latency_ms: float) -> None:
        """Record reconciliation fetch latency."""
        sync_fetch_latency_ms.labels(resource=resource, outcome=outcome).observe(latency_ms)

    def inc_fetch_error(self, resource: str, category: str) -> None:
        """Increment failed fetch counter."""
        sync_fetch_errors_total.labels(resource=resource, category=category).inc()

    def inc_mutation(self, resource: str, kind: str, outcome: str) -> None:
        """Increment settled mutation counter."""
        sync_mutations_total.labels(resource=resource, kind=kind, outcome=outcome).inc()

    def inc_rollback(self, resource: str, kind: str) -> None:
        """Increment rollback counter."""
        sync_rollbacks_total.labels(resource=resource, kind=kind).inc()
