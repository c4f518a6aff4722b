"""Prometheus metric definitions shared across services."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Verified webhook events by type and processing outcome",
    ["service", "vertical", "event_type", "outcome"],
)
webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook requests rejected before decoding",
    ["service", "vertical", "reason"],
)
event_decode_total = Counter(
    "event_decode_total",
    "Decoded webhook payloads by the decoder that produced them",
    ["service", "decoder"],
)
correlation_miss_total = Counter(
    "correlation_miss_total",
    "Events whose identifiers matched no stored record",
    ["service", "vertical", "event_type"],
)
status_transitions_total = Counter(
    "status_transitions_total",
    "Applied record status changes",
    ["service", "kind", "from_status", "to_status"],
)
sync_outcomes_total = Counter(
    "sync_outcomes_total",
    "Cross-record sync results",
    ["service", "vertical", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Redelivered webhook events skipped",
    ["service", "vertical"],
)
provider_refresh_seconds = Histogram(
    "provider_refresh_seconds",
    "Latency of real-time provider status lookups",
    ["service", "provider"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
