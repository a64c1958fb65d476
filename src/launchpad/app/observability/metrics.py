"""Prometheus metrics for launchpad.

Metric naming follows Prometheus conventions. Stage metrics are recorded
per attempt by the stage executors; session metrics by the orchestrator.

Usage::

    from launchpad.app.observability.metrics import SESSIONS_STARTED_TOTAL

    SESSIONS_STARTED_TOTAL.inc()
"""

from __future__ import annotations

from prometheus_client import (
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "launchpad_http_requests_total",
    "Total HTTP requests by method, path pattern, and status code.",
    labelnames=["method", "path", "status"],
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Session metrics
# ---------------------------------------------------------------------------

SESSIONS_STARTED_TOTAL = Counter(
    "launchpad_sessions_started_total",
    "Provisioning sessions handed to the orchestrator.",
    registry=REGISTRY,
)

SESSIONS_FINISHED_TOTAL = Counter(
    "launchpad_sessions_finished_total",
    "Provisioning sessions reaching a terminal status.",
    labelnames=["status", "error_code"],
    registry=REGISTRY,
)

SESSIONS_IN_FLIGHT = Gauge(
    "launchpad_sessions_in_flight",
    "Provisioning sessions currently being orchestrated.",
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Stage metrics
# ---------------------------------------------------------------------------

STAGE_ATTEMPTS_TOTAL = Counter(
    "launchpad_stage_attempts_total",
    "Stage executor attempts by stage and outcome.",
    labelnames=["stage", "outcome"],
    registry=REGISTRY,
)

STAGE_ATTEMPT_DURATION_SECONDS = Histogram(
    "launchpad_stage_attempt_duration_seconds",
    "Wall-clock duration of a single stage attempt.",
    labelnames=["stage"],
    buckets=(0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 900.0),
    registry=REGISTRY,
)

STALE_SESSIONS_REPAIRED_TOTAL = Counter(
    "launchpad_stale_sessions_repaired_total",
    "Orphaned sessions failed by the stale-session sweep.",
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
