from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

_REQ_COUNT = Counter(
    "etcdcluster_http_requests_total",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
_REQ_LATENCY = Histogram(
    "etcdcluster_http_request_duration_seconds",
    "HTTP request latency seconds",
    labelnames=("method", "path"),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.3, 0.5, 1.0, 2.5, 5.0, 10.0),
)
_RECONCILE_PASSES = Counter(
    "etcdcluster_reconcile_passes_total",
    "Status reconciliation passes by resulting state",
    labelnames=("state",),
)
_HEALTH_PROBES = Counter(
    "etcdcluster_health_probes_total",
    "etcd member health probes",
    labelnames=("variant", "result"),
)
_HEALTH_PROBE_LATENCY = Histogram(
    "etcdcluster_health_probe_duration_seconds",
    "etcd member health probe latency seconds",
    labelnames=("variant",),
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.3, 0.5, 1.0, 2.5, 5.0, 10.0),
)


def observe_http_request(*, method: str, path: str, status: int, duration_seconds: float) -> None:
    _REQ_COUNT.labels(method=method, path=path, status=str(status)).inc()
    _REQ_LATENCY.labels(method=method, path=path).observe(duration_seconds)


def record_reconcile_pass(*, state: str) -> None:
    _RECONCILE_PASSES.labels(state=state).inc()


def record_health_probe(*, variant: str, result: str, duration_seconds: float) -> None:
    _HEALTH_PROBES.labels(variant=variant, result=result).inc()
    _HEALTH_PROBE_LATENCY.labels(variant=variant).observe(duration_seconds)


def render_metrics() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
