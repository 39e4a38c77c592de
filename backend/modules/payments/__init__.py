# backend/modules/payments/__init__.py

from .api import payment_router
from .models import (
    SplitPayment,
    IndividualPayment,
    PaymentWebhookEvent,
    RefundRequest,
    PaymentRefund,
    SplitPaymentStatus,
    IndividualPaymentStatus,
    RefundRequestStatus,
)
from .services import (
    split_payment_service,
    individual_payment_service,
    refund_service,
    retry_service,
    webhook_service,
    initialize_split_payment_services,
)

__all__ = [
    # API
    'payment_router',
    
    # Models
    'SplitPayment',
    'IndividualPayment',
    'PaymentWebhookEvent',
    'RefundRequest',
    'PaymentRefund',
    'SplitPaymentStatus',
    'IndividualPaymentStatus',
    'RefundRequestStatus',
    
    # Services
    'split_payment_service',
    'individual_payment_service',
    'refund_service',
    'retry_service',
    'webhook_service',
    'initialize_split_payment_services'
]
