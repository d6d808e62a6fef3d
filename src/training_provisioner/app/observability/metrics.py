"""Prometheus metrics for the provisioner.

Usage::

    from training_provisioner.app.observability.metrics import REQUEST_TRANSITIONS_TOTAL

    REQUEST_TRANSITIONS_TOTAL.labels(
        from_state="requested", to_state="allocated", source="platform",
    ).inc()
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    generate_latest,
)

# ---------------------------------------------------------------------------
# Request lifecycle
# ---------------------------------------------------------------------------

REQUEST_TRANSITIONS_TOTAL = Counter(
    "provisioner_request_transitions_total",
    "Provisioning request state transitions.",
    labelnames=["from_state", "to_state", "source"],
    registry=REGISTRY,
)

REQUESTS_BY_STATE = Gauge(
    "provisioner_requests",
    "Provisioning requests by state, as of the last reconcile tick.",
    labelnames=["state"],
    registry=REGISTRY,
)

STATIC_POOL_IN_USE = Gauge(
    "provisioner_static_pool_in_use",
    "Static pool handles held by live or recently failed requests.",
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Loops and collaborators
# ---------------------------------------------------------------------------

STORE_ERRORS_TOTAL = Counter(
    "provisioner_store_errors_total",
    "Declarative store failures absorbed by a loop.",
    labelnames=["loop"],
    registry=REGISTRY,
)

PROPAGATIONS_TOTAL = Counter(
    "provisioner_propagations_total",
    "Bridge propagation attempts by outcome.",
    labelnames=["outcome"],
    registry=REGISTRY,
)

LOOP_RESTARTS_TOTAL = Counter(
    "provisioner_loop_restarts_total",
    "Reconciliation loop crashes followed by a supervised restart.",
    labelnames=["loop"],
    registry=REGISTRY,
)

GC_DELETIONS_TOTAL = Counter(
    "provisioner_gc_deletions_total",
    "Records deleted or failed by garbage collection.",
    labelnames=["kind"],
    registry=REGISTRY,
)


def metrics_text() -> tuple[bytes, str]:
    """Generate Prometheus exposition text and content-type header."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
