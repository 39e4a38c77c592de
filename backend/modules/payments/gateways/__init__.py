# backend/modules/payments/gateways/__init__.py

from .base import (
    PaymentGatewayInterface,
    PaymentRequest,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
    GatewayPaymentStatus,
    GatewayRefundStatus,
)
from .stripe_gateway import StripeGateway

__all__ = [
    # Base classes
    "PaymentGatewayInterface",
    "PaymentRequest",
    "PaymentResponse",
    "RefundRequest",
    "RefundResponse",
    "GatewayPaymentStatus",
    "GatewayRefundStatus",
    # Gateway implementations
    "StripeGateway",
]
