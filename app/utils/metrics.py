"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
stk_push_requests_total = Counter(
    "stk_push_requests_total",
    "Total STK push initiations",
    ["status"],  # accepted, rejected, error
)

mpesa_callbacks_total = Counter(
    "mpesa_callbacks_total",
    "Total M-Pesa callbacks processed",
    ["result"],  # completed, failed, duplicate, in_flight, not_found, malformed, rejected
)

purchases_created_total = Counter(
    "purchases_created_total",
    "Total purchase (entitlement) records created",
)

mpesa_requests_total = Counter(
    "mpesa_requests_total",
    "Total Daraja API requests",
    ["endpoint", "status"],
)

pending_reconciled_total = Counter(
    "pending_reconciled_total",
    "Pending transactions resolved by the reconciliation task",
    ["outcome"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
mpesa_request_duration_seconds = Histogram(
    "mpesa_request_duration_seconds",
    "Daraja API request duration",
    ["endpoint"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
