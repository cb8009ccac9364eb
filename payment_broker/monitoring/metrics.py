"""
Prometheus metrics for the payment broker.

Tracks:
- Account selections per rotation window
- Payment request outcomes and amounts
- Stripe API calls and errors per account
- Webhook reconciliations and signature failures
- Order creation calls
"""
from prometheus_client import Counter, Histogram

# Rotation metrics
account_selections_total = Counter(
    "account_selections_total",
    "Total account selections by the rotation selector",
    ["account_label"],
)

rotation_no_eligible_account_total = Counter(
    "rotation_no_eligible_account_total",
    "Selections that failed because no account was eligible",
)

# Payment request metrics
payment_requests_total = Counter(
    "payment_requests_total",
    "Total payment requests",
    ["outcome", "currency"],  # created, updated, race_lost, rejected, failed
)

payment_amount_cents = Histogram(
    "payment_amount_cents",
    "Payment amounts in cents",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

payment_request_duration_seconds = Histogram(
    "payment_request_duration_seconds",
    "Duration of ensure_payment_request in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Stripe API metrics
stripe_api_requests_total = Counter(
    "stripe_api_requests_total",
    "Total Stripe API requests",
    ["account_label", "operation", "status"],
)

stripe_api_errors_total = Counter(
    "stripe_api_errors_total",
    "Total Stripe API errors",
    ["account_label", "error_type"],  # transient, permanent
)

stripe_api_duration_seconds = Histogram(
    "stripe_api_duration_seconds",
    "Stripe API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook deliveries by outcome",
    ["event_type", "status"],  # processed, already_processed, ignored, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries no configured account could authenticate",
)

# Order metrics
order_creation_total = Counter(
    "order_creation_total",
    "Order creation calls to the commerce platform",
    ["status"],  # success, failed
)

order_creation_duration_seconds = Histogram(
    "order_creation_duration_seconds",
    "Order creation duration in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_account_selection(account_label: str) -> None:
        """Record one account selection."""
        account_selections_total.labels(account_label=account_label).inc()

    @staticmethod
    def record_no_eligible_account() -> None:
        """Record a selection with an empty eligible set."""
        rotation_no_eligible_account_total.inc()

    @staticmethod
    def record_payment_request(
        outcome: str, currency: str, amount_cents: int, duration_seconds: float
    ) -> None:
        """Record a payment request."""
        payment_requests_total.labels(outcome=outcome, currency=currency).inc()
        payment_amount_cents.observe(amount_cents)
        payment_request_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_provider_call(
        account_label: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record Stripe API call."""
        stripe_api_requests_total.labels(
            account_label=account_label, operation=operation, status=status
        ).inc()
        stripe_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_provider_error(account_label: str, error_type: str) -> None:
        """Record Stripe API error."""
        stripe_api_errors_total.labels(account_label=account_label, error_type=error_type).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_signature_failure() -> None:
        """Record a webhook no account could authenticate."""
        webhook_signature_failures_total.inc()

    @staticmethod
    def record_order_creation(status: str, duration_seconds: float) -> None:
        """Record an order creation call."""
        order_creation_total.labels(status=status).inc()
        order_creation_duration_seconds.observe(duration_seconds)


# Export singleton instance
metrics = MetricsCollector()
