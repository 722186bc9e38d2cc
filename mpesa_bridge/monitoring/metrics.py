"""
Prometheus metrics for the payment bridge.

Tracks:
- STK push initiations by outcome
- Confirmation callbacks by outcome (including reconciliation misses)
- Shopify order creations
- Daraja / Shopify API call durations
- Status polls by returned view
- Retention evictions and live transactions
"""
from prometheus_client import Counter, Gauge, Histogram

# STK push metrics
stk_push_requests_total = Counter(
    "stk_push_requests_total",
    "Total STK push initiation attempts",
    ["status"],  # initiated, rejected, invalid
)

stk_push_amount_kes = Histogram(
    "stk_push_amount_kes",
    "Initiated payment amounts in KES",
    buckets=(10, 50, 100, 500, 1000, 5000, 10000, 50000, 150000, 500000),
)

# Confirmation metrics
confirmations_total = Counter(
    "mpesa_confirmations_total",
    "Total M-Pesa confirmation callbacks",
    ["outcome"],  # success, failed, order_failed, unknown, duplicate, rejected, invalid
)

confirmation_processing_duration_seconds = Histogram(
    "mpesa_confirmation_processing_duration_seconds",
    "Confirmation callback processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Fulfillment metrics
shopify_orders_total = Counter(
    "shopify_orders_total",
    "Total Shopify order creation attempts",
    ["status"],  # created, failed
)

# Outbound API metrics
external_api_requests_total = Counter(
    "external_api_requests_total",
    "Total outbound API requests",
    ["service", "operation", "status"],
)

external_api_duration_seconds = Histogram(
    "external_api_duration_seconds",
    "Outbound API call duration in seconds",
    ["service", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

# Status polling metrics
status_queries_total = Counter(
    "payment_status_queries_total",
    "Total payment status polls",
    ["view"],  # completed, failed, order_error, processing, pending, not_found
)

# Retention metrics
transactions_evicted_total = Counter(
    "transactions_evicted_total",
    "Transactions evicted by the retention sweep",
    ["state"],
)

transactions_live = Gauge(
    "transactions_live",
    "Transactions currently held in the correlation table",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_stk_push(status: str, amount: int = 0) -> None:
        """Record an STK push initiation attempt."""
        stk_push_requests_total.labels(status=status).inc()
        if amount > 0:
            stk_push_amount_kes.observe(amount)

    @staticmethod
    def record_confirmation(outcome: str, duration_seconds: float = 0) -> None:
        """Record a confirmation callback outcome."""
        confirmations_total.labels(outcome=outcome).inc()
        if duration_seconds > 0:
            confirmation_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_order_creation(status: str) -> None:
        """Record Shopify order creation."""
        shopify_orders_total.labels(status=status).inc()

    @staticmethod
    def record_api_call(
        service: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record an outbound API call."""
        external_api_requests_total.labels(
            service=service, operation=operation, status=status
        ).inc()
        external_api_duration_seconds.labels(service=service, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_status_query(view: str) -> None:
        """Record which view a status poll returned."""
        status_queries_total.labels(view=view).inc()

    @staticmethod
    def record_eviction(state: str) -> None:
        """Record a retention eviction."""
        transactions_evicted_total.labels(state=state).inc()

    @staticmethod
    def set_live_transactions(count: int) -> None:
        """Set the number of live transactions."""
        transactions_live.set(count)


# Export singleton instance
metrics = MetricsCollector()
