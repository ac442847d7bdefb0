# ==== PROMETHEUS METRICS ==== #

"""
Prometheus metrics for monitoring the reverse-logistics engine.

This module provides counters and histograms for every workflow component
(NDR pipeline, RTO lifecycle, dispositions, return orders, refunds and the
deadline monitor) together with collaborator and database health indicators.
"""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY
)


# ==== NDR PIPELINE METRICS ==== #

ndr_events_detected_total = Counter(
    "reverse_logistics_ndr_events_detected_total",
    "NDR events created from failed delivery attempts",
    ["company"]
)

ndr_attempts_recorded_total = Counter(
    "reverse_logistics_ndr_attempts_recorded_total",
    "Additional failed attempts appended to open NDR events",
    ["company"]
)

ndr_classified_total = Counter(
    "reverse_logistics_ndr_classified_total",
    "NDR events classified by canonical type",
    ["ndr_type"]
)

ndr_actions_executed_total = Counter(
    "reverse_logistics_ndr_actions_executed_total",
    "Workflow actions executed for NDR events",
    ["action", "status"]
)

ndr_outcomes_total = Counter(
    "reverse_logistics_ndr_outcomes_total",
    "NDR events reaching resolved, escalated or rto_triggered",
    ["outcome", "ndr_type"]
)


# ==== RTO AND DISPOSITION METRICS ==== #

rto_triggered_total = Counter(
    "reverse_logistics_rto_triggered_total",
    "RTO events created by trigger type and reason",
    ["trigger", "reason"]
)

rto_rejections_total = Counter(
    "reverse_logistics_rto_rejections_total",
    "RTO trigger attempts rejected before creation",
    ["reason"]  # conflict, rate_limited, upstream
)

rto_status_transitions_total = Counter(
    "reverse_logistics_rto_status_transitions_total",
    "RTO return status transitions",
    ["from_status", "to_status"]
)

qc_results_total = Counter(
    "reverse_logistics_qc_results_total",
    "QC results recorded by entity kind and result",
    ["entity", "result"]
)

dispositions_total = Counter(
    "reverse_logistics_dispositions_total",
    "Dispositions executed for RTO events",
    ["action", "override"]
)


# ==== RETURN ORDER METRICS ==== #

returns_created_total = Counter(
    "reverse_logistics_returns_created_total",
    "Return orders created by reason",
    ["reason"]
)

return_status_transitions_total = Counter(
    "reverse_logistics_return_status_transitions_total",
    "Return order status transitions",
    ["from_status", "to_status"]
)

refunds_total = Counter(
    "reverse_logistics_refunds_total",
    "Refund processing outcomes",
    ["status"]
)

refund_amount_cents = Histogram(
    "reverse_logistics_refund_amount_cents",
    "Completed refund amounts in minor currency units",
    buckets=[1_000, 10_000, 50_000, 100_000, 500_000, 1_000_000, 5_000_000]
)


# ==== DEADLINE MONITOR METRICS ==== #

sla_breach_count = Counter(
    "reverse_logistics_sla_breach_count",
    "SLA breaches flagged by the deadline monitor",
    ["entity", "stage"]
)

sla_sweep_claims_total = Counter(
    "reverse_logistics_sla_sweep_claims_total",
    "Entities claimed by a sweep, by sweep kind and claim outcome",
    ["kind", "outcome"]  # outcome: won, lost
)

sla_sweep_failures_total = Counter(
    "reverse_logistics_sla_sweep_failures_total",
    "Per-entity failures isolated during a sweep",
    ["kind", "error_type"]
)

sla_sweep_duration_seconds = Histogram(
    "reverse_logistics_sla_sweep_duration_seconds",
    "Deadline monitor sweep duration in seconds"
)


# ==== COLLABORATOR AND INFRASTRUCTURE METRICS ==== #

collaborator_requests_total = Counter(
    "reverse_logistics_collaborator_requests_total",
    "Requests sent to external collaborators",
    ["service", "operation", "status"]
)

collaborator_latency_seconds = Histogram(
    "reverse_logistics_collaborator_latency_seconds",
    "External collaborator call latency in seconds",
    ["service", "operation"]
)

rate_limited_total = Counter(
    "reverse_logistics_rate_limited_total",
    "Requests rejected by a rate limiter",
    ["scope"]
)

db_connections_active = Gauge(
    "reverse_logistics_db_connections_active",
    "Number of active database sessions"
)

app_info = Gauge(
    "reverse_logistics_app_info",
    "Application information",
    ["version", "environment", "service_name"]
)


def init_metrics(app) -> None:
    """Initialize metrics collection.

    Args:
        app: FastAPI application instance
    """
    from reverse_logistics.settings import settings
    app_info.labels(
        version="0.1.0",
        environment=settings.APP_ENV,
        service_name=settings.SERVICE_NAME
    ).set(1)


# Metrics router for Prometheus scraping
metrics_router = APIRouter()


@metrics_router.get("/metrics")
def get_metrics() -> PlainTextResponse:
    """Expose Prometheus metrics for scraping.

    Returns:
        Prometheus metrics in text format
    """
    return PlainTextResponse(
        generate_latest(REGISTRY).decode("utf-8"),
        media_type="text/plain"
    )
