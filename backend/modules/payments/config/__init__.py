# backend/modules/payments/config/__init__.py

from .payment_config import (
    SplitPaymentConfig,
    PaymentEnvironment,
    split_payment_config,
)

__all__ = [
    "SplitPaymentConfig",
    "PaymentEnvironment",
    "split_payment_config",
]
