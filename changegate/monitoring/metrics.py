"""
Prometheus metrics for changegate.
"""

from prometheus_client import Counter, Histogram, start_http_server

_metrics_started = False

rest_requests_total = Counter(
    "changegate_rest_requests_total",
    "Total REST requests",
    ["method", "path", "status"]
)

rest_request_latency_seconds = Histogram(
    "changegate_rest_request_latency_seconds",
    "REST request latency in seconds",
    ["method", "path"]
)

rest_errors_total = Counter(
    "changegate_rest_errors_total",
    "Total REST errors",
    ["method", "path", "error_type"]
)

changes_submitted_total = Counter(
    "changegate_changes_submitted_total",
    "Changes submitted for approval",
    ["kind"]
)

votes_total = Counter(
    "changegate_votes_total",
    "Approval votes recorded",
    ["decision"]
)

apply_outcomes_total = Counter(
    "changegate_apply_outcomes_total",
    "Apply attempts by outcome",
    ["outcome"]
)

rollback_outcomes_total = Counter(
    "changegate_rollback_outcomes_total",
    "Rollback attempts by outcome",
    ["outcome"]
)

changes_expired_total = Counter(
    "changegate_changes_expired_total",
    "Pending changes expired by the sweeper"
)


def start_metrics_server(port: int = 9090, addr: str = "0.0.0.0"):
    """Start Prometheus metrics server if not already running."""
    global _metrics_started

    if _metrics_started:
        return

    start_http_server(port, addr=addr)
    _metrics_started = True


def track_rest_request(method: str, path: str, status: str):
    """Track REST request count by method, path, and status."""
    rest_requests_total.labels(method=method, path=path, status=status).inc()


def track_rest_latency(method: str, path: str, duration_seconds: float):
    """Track REST request latency."""
    rest_request_latency_seconds.labels(method=method, path=path).observe(duration_seconds)


def track_rest_error(method: str, path: str, error_type: str):
    """Track REST errors by type."""
    rest_errors_total.labels(method=method, path=path, error_type=error_type).inc()


def track_change_submitted(kind: str):
    """Track a submitted change by kind."""
    changes_submitted_total.labels(kind=kind).inc()


def track_vote(decision: str):
    """Track a recorded vote by decision."""
    votes_total.labels(decision=decision).inc()


def track_apply_outcome(outcome: str):
    """Track an apply outcome (applied, retry, failed)."""
    apply_outcomes_total.labels(outcome=outcome).inc()


def track_rollback_outcome(outcome: str):
    """Track a rollback outcome (requested, rolled_back, failed)."""
    rollback_outcomes_total.labels(outcome=outcome).inc()


def track_expired(count: int = 1):
    """Track expired changes."""
    changes_expired_total.inc(count)
