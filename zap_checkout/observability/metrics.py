"""
Prometheus metrics for order reconciliation monitoring.

Tracks:
- Receipt outcomes (applied, duplicate, incomplete, stale)
- Spoofed receipts, kept apart from routine rejections
- Paid amounts
- Invoice requests and their latency
- Orders published to relays
- Active receipt subscriptions
"""
from prometheus_client import Counter, Gauge, Histogram

# Receipt metrics
receipts_processed_total = Counter(
    "zap_receipts_processed_total",
    "Total zap receipts processed",
    ["outcome"],  # applied, duplicate, incomplete, stale, spoofed
)

spoofed_receipts_total = Counter(
    "zap_spoofed_receipts_total",
    "Receipts rejected as spoofed (wrong author or bad signature)",
    ["reason"],  # wrong_author, invalid_signature
)

receipt_amount_sats = Histogram(
    "zap_receipt_amount_sats",
    "Paid amounts of applied receipts in sats",
    buckets=(10, 100, 500, 1000, 5000, 10000, 50000, 100000, 1000000),
)

orders_settled_total = Counter(
    "zap_orders_settled_total",
    "Orders whose pending amount reached zero or below",
)

# Invoice metrics
invoice_requests_total = Counter(
    "zap_invoice_requests_total",
    "Total invoice requests sent to the LNURL service",
    ["status"],  # success, failed
)

invoice_request_duration_seconds = Histogram(
    "zap_invoice_request_duration_seconds",
    "Invoice request duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 10.0),
)

# Relay metrics
orders_published_total = Counter(
    "zap_orders_published_total",
    "Total orders published to relays",
    ["status"],  # success, failed
)

active_subscriptions = Gauge(
    "zap_active_subscriptions",
    "Number of open receipt subscriptions",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_receipt(outcome: str, amount_msat: int = 0) -> None:
        """Record a processed receipt."""
        receipts_processed_total.labels(outcome=outcome).inc()
        if amount_msat > 0:
            receipt_amount_sats.observe(amount_msat / 1000)

    @staticmethod
    def record_spoofed_receipt(reason: str) -> None:
        """Record a receipt rejected for security reasons."""
        receipts_processed_total.labels(outcome="spoofed").inc()
        spoofed_receipts_total.labels(reason=reason).inc()

    @staticmethod
    def record_order_settled() -> None:
        """Record an order reaching its target amount."""
        orders_settled_total.inc()

    @staticmethod
    def record_invoice_request(status: str, duration_seconds: float) -> None:
        """Record an invoice request."""
        invoice_requests_total.labels(status=status).inc()
        invoice_request_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_order_published(status: str) -> None:
        """Record an order publish attempt."""
        orders_published_total.labels(status=status).inc()

    @staticmethod
    def subscription_opened() -> None:
        """Track a new receipt subscription."""
        active_subscriptions.inc()

    @staticmethod
    def subscription_closed() -> None:
        """Track a closed receipt subscription."""
        active_subscriptions.dec()


# Export singleton instance
metrics = MetricsCollector()
