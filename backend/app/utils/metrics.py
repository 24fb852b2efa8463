"""Prometheus metrics for the policy retrieval pipeline."""

from prometheus_client import Counter, Histogram

pipeline_latency_ms = Histogram(
    "policy_pipeline_latency_ms",
    "Policy pipeline stage latency in milliseconds",
    ["stage"],
    buckets=[10, 50, 100, 200, 500, 1000, 2000, 4000, 8000, 16000],
)

embedding_errors_total = Counter(
    "embedding_errors_total",
    "Total embedding provider errors",
    ["reason"],
)

search_requests_total = Counter(
    "policy_search_requests_total",
    "Total policy searches by retrieval method",
    ["method"],
)

ingest_total = Counter(
    "policy_ingest_total",
    "Total policy ingestions by outcome",
    ["operation", "outcome"],
)


class PrometheusPipelineMetrics:
    """Prometheus-based pipeline metrics implementation."""

    def record_latency(self, stage: str, latency_ms: float) -> None:
        """Record stage latency."""
        pipeline_latency_ms.labels(stage=stage).observe(latency_ms)

    def inc_embedding_error(self, reason: str) -> None:
        """Increment embedding error counter."""
        embedding_errors_total.labels(reason=reason).inc()

    def inc_search(self, method: str) -> None:
        """Increment search counter for the retrieval method used."""
        search_requests_total.labels(method=method).inc()

    def inc_ingest(self, operation: str, outcome: str) -> None:
        """Increment ingest/reingest outcome counter."""
        ingest_total.labels(operation=operation, outcome=outcome).inc()
