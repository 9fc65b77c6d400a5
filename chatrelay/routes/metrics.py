"""
Prometheus metrics endpoint.

Exposes system metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Session Metrics
# ============================================

sessions_by_status = Gauge(
    'chat_sessions',
    'Live sessions per status',
    ['status']
)

session_transitions = Counter(
    'chat_session_transitions_total',
    'Total session status transitions',
    ['status']
)

session_reconnects = Counter(
    'chat_session_reconnects_total',
    'Total reconnect attempts scheduled'
)

# ============================================
# Event Metrics
# ============================================

messages_received = Counter(
    'chat_messages_received_total',
    'Total inbound messages routed',
    ['message_type']
)

events_failed = Counter(
    'chat_events_failed_total',
    'Protocol events whose persistence or publish step failed',
    ['event']
)

websocket_connections = Gauge(
    'websocket_connections',
    'Currently connected live-push clients'
)

# ============================================
# Rate Limiting Metrics
# ============================================

rate_limit_exceeded = Counter(
    'rate_limit_exceeded_total',
    'Total requests blocked by rate limiting',
    ['owner_id']
)

# ============================================
# Webhook Metrics
# ============================================

webhook_deliveries = Counter(
    'webhook_deliveries_total',
    'Webhook delivery attempts by outcome',
    ['outcome']
)

webhook_retries = Counter(
    'webhook_retries_total',
    'Total webhook retries scheduled'
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def update_session_counts(counts: dict[str, int]):
    """Set the per-status session gauge from a registry snapshot."""
    for status, count in counts.items():
        sessions_by_status.labels(status=status).set(count)


def track_session_transition(status: str):
    session_transitions.labels(status=status).inc()


def track_reconnect():
    session_reconnects.inc()


def track_message_received(message_type: str):
    messages_received.labels(message_type=message_type).inc()


def track_event_failed(event: str):
    events_failed.labels(event=event).inc()


def update_websocket_connections(count: int):
    websocket_connections.set(count)


def track_rate_limit_exceeded(owner_id: str):
    """Record a rate limit block."""
    rate_limit_exceeded.labels(owner_id=owner_id).inc()


def track_webhook_delivery(outcome: str):
    """Record one delivery attempt: success, failed or retrying."""
    webhook_deliveries.labels(outcome=outcome).inc()


def track_webhook_retry():
    webhook_retries.inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
