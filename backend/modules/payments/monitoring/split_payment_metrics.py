# backend/modules/payments/monitoring/split_payment_metrics.py

from prometheus_client import Counter, Histogram, Gauge

# Split Payment Metrics

# Counters
split_payment_created_total = Counter(
    "split_payment_created_total",
    "Total number of split payments created",
    ["split_type", "currency"],
)

split_payment_completion_total = Counter(
    "split_payment_completion_total",
    "Split payment status transitions decided by completion evaluation",
    ["status"],
)

individual_payment_charge_total = Counter(
    "individual_payment_charge_total",
    "Charge attempts on individual payments",
    ["outcome"],
)

individual_payment_outcome_total = Counter(
    "individual_payment_outcome_total",
    "Processor callbacks applied to individual payments",
    ["status"],
)

split_payment_reminder_total = Counter(
    "split_payment_reminder_total", "Reminders sent to participants", ["trigger"]
)

split_payment_refund_total = Counter(
    "split_payment_refund_total", "Refund requests processed", ["status", "reason"]
)

split_payment_refunded_amount_total = Counter(
    "split_payment_refunded_amount_total",
    "Amount refunded in minor units",
    ["currency"],
)

split_payment_dispute_total = Counter(
    "split_payment_dispute_total",
    "Dispute webhooks applied, by resulting status",
    ["status", "reason"],
)

# Histograms
split_payment_amount_histogram = Histogram(
    "split_payment_amount_histogram",
    "Distribution of split payment totals in minor units",
    ["currency"],
    buckets=(1000, 2500, 5000, 10000, 20000, 50000, 100000, 200000, 500000),
)

split_payment_participant_count_histogram = Histogram(
    "split_payment_participant_count_histogram",
    "Distribution of participant counts",
    ["split_type"],
    buckets=(2, 3, 4, 5, 6, 8, 10, 15, 20),
)

split_payment_gateway_latency_seconds = Histogram(
    "split_payment_gateway_latency_seconds",
    "Latency of payment processor calls",
    ["operation"],
)

# Gauges
split_payment_open_count = Gauge(
    "split_payment_open_count", "Split payments not yet in a terminal status"
)


class SplitPaymentMetrics:
    """Helper class for recording split payment metrics"""

    @staticmethod
    def record_split_created(split_type: str, currency: str, total_amount: int, participant_count: int):
        """Record a new split payment creation"""
        split_payment_created_total.labels(split_type=split_type, currency=currency).inc()
        split_payment_amount_histogram.labels(currency=currency).observe(total_amount)
        split_payment_participant_count_histogram.labels(split_type=split_type).observe(
            participant_count
        )

    @staticmethod
    def record_completion(status: str):
        """Record an aggregate status transition"""
        split_payment_completion_total.labels(status=status).inc()

    @staticmethod
    def record_charge(outcome: str):
        """Record a charge attempt: created, rejected or failed"""
        individual_payment_charge_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_payment_outcome(status: str):
        individual_payment_outcome_total.labels(status=status).inc()

    @staticmethod
    def record_reminder(trigger: str = "manual"):
        split_payment_reminder_total.labels(trigger=trigger).inc()

    @staticmethod
    def record_refund(status: str, reason: str, amount: int = 0, currency: str = "usd"):
        """Record a processed refund request"""
        split_payment_refund_total.labels(status=status, reason=reason).inc()
        if amount:
            split_payment_refunded_amount_total.labels(currency=currency).inc(amount)

    @staticmethod
    def record_dispute(status: str, reason: str):
        split_payment_dispute_total.labels(status=status, reason=reason).inc()

    @staticmethod
    def record_gateway_latency(operation: str, seconds: float):
        split_payment_gateway_latency_seconds.labels(operation=operation).observe(
            seconds
        )

    @staticmethod
    def set_open_splits(count: int):
        """Set current number of open split payments"""
        split_payment_open_count.set(count)


# Metrics endpoint setup
def setup_metrics_endpoint(app):
    """Setup Prometheus metrics endpoint for FastAPI"""
    from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
    from fastapi import Response

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        """Prometheus metrics endpoint"""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
