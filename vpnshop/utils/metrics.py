"""
Prometheus-based metrics for production monitoring.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
payments_created_total = Counter(
    "payments_created_total",
    "Total number of payment intents created",
    ["type", "gateway"],
)

payments_succeeded_total = Counter(
    "payments_succeeded_total",
    "Total number of payments fulfilled",
    ["type", "gateway"],
)

payments_failed_total = Counter(
    "payments_failed_total",
    "Total number of payments that ended in FAILED",
    ["type", "gateway", "error_code"],
)

wallet_operations_total = Counter(
    "wallet_operations_total",
    "Total wallet ledger operations",
    ["operation"],  # CHARGE, PURCHASE, ADMIN_ADJUST, AFFILIATE_REWARD, REFUND
)

wallet_rejected_total = Counter(
    "wallet_rejected_total",
    "Total debits rejected for insufficient balance",
)

promo_redemptions_total = Counter(
    "promo_redemptions_total",
    "Total promo code redemptions",
)

hosted_callbacks_total = Counter(
    "hosted_callbacks_total",
    "Hosted gateway callbacks by outcome",
    ["result"],
)

compensation_failures_total = Counter(
    "compensation_failures_total",
    "Remote side effects that could not be undone",
)

telegram_requests_total = Counter(
    "telegram_requests_total",
    "Total Telegram API requests",
    ["method", "status"],
)

upstream_requests_total = Counter(
    "upstream_requests_total",
    "Total panel / hosted gateway requests",
    ["upstream", "status"],
)

circuit_breaker_state = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open)",
    ["name"],
)

# Histograms
upstream_request_duration_seconds = Histogram(
    "upstream_request_duration_seconds",
    "Panel / hosted gateway request duration",
    ["upstream"],
    buckets=[0.1, 0.5, 1, 2, 5, 10, 20],
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
