# backend/modules/payments/models/__init__.py

from .split_payment_models import (
    SplitType,
    FeeHandling,
    SplitPaymentStatus,
    IndividualPaymentStatus,
    TERMINAL_SPLIT_STATUSES,
    INDIVIDUAL_PAYMENT_TRANSITIONS,
    SplitPayment,
    IndividualPayment,
    PaymentWebhookEvent,
)

from .refund_models import (
    RefundReasonCategory,
    RefundAmountType,
    RefundRequestStatus,
    PaymentRefundStatus,
    PROCESSABLE_REFUND_STATUSES,
    RefundRequest,
    PaymentRefund,
    DisputeStatus,
    CLOSED_DISPUTE_STATUSES,
    PaymentDispute,
)

__all__ = [
    # Split payment models
    "SplitType",
    "FeeHandling",
    "SplitPaymentStatus",
    "IndividualPaymentStatus",
    "TERMINAL_SPLIT_STATUSES",
    "INDIVIDUAL_PAYMENT_TRANSITIONS",
    "SplitPayment",
    "IndividualPayment",
    "PaymentWebhookEvent",
    # Refund models
    "RefundReasonCategory",
    "RefundAmountType",
    "RefundRequestStatus",
    "PaymentRefundStatus",
    "PROCESSABLE_REFUND_STATUSES",
    "RefundRequest",
    "PaymentRefund",
    "DisputeStatus",
    "CLOSED_DISPUTE_STATUSES",
    "PaymentDispute",
]
