# backend/modules/payments/schemas/__init__.py

from .split_payment_schemas import (
    SplitPaymentRecord,
    IndividualPaymentRecord,
    PaymentStats,
    CompletionDecision,
    ChargeHandle,
    SplitPaymentCreate,
    IndividualPaymentResponse,
    SplitPaymentDetails,
    ReminderResponse,
    ConvertedShare,
    ConvertedSplitAmounts,
)
from .refund_schemas import (
    RefundRequestRecord,
    PaymentRefundRecord,
    RefundOutcome,
    PolicyEligibility,
    RefundAmounts,
    RefundStatistics,
    RefundRequestCreate,
    RefundReviewRequest,
    RefundRequestResponse,
    RefundPolicyQuote,
    PaymentDisputeRecord,
    PaymentDisputeResponse,
)

__all__ = [
    "SplitPaymentRecord",
    "IndividualPaymentRecord",
    "PaymentStats",
    "CompletionDecision",
    "ChargeHandle",
    "SplitPaymentCreate",
    "IndividualPaymentResponse",
    "SplitPaymentDetails",
    "ReminderResponse",
    "ConvertedShare",
    "ConvertedSplitAmounts",
    "RefundRequestRecord",
    "PaymentRefundRecord",
    "RefundOutcome",
    "PolicyEligibility",
    "RefundAmounts",
    "RefundStatistics",
    "RefundRequestCreate",
    "RefundReviewRequest",
    "RefundRequestResponse",
    "RefundPolicyQuote",
    "PaymentDisputeRecord",
    "PaymentDisputeResponse",
]
