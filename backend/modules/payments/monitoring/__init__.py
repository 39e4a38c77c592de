# backend/modules/payments/monitoring/__init__.py

from .split_payment_metrics import SplitPaymentMetrics, setup_metrics_endpoint

__all__ = ["SplitPaymentMetrics", "setup_metrics_endpoint"]
