# backend/modules/payments/services/__init__.py

import logging
from typing import Optional

from ..config.payment_config import split_payment_config
from ..gateways import PaymentGatewayInterface, StripeGateway
from .notification_dispatcher import (
    NotificationDispatcher,
    LoggingNotificationDispatcher,
    RealtimeNotificationDispatcher,
    dispatch_safely,
    notification_dispatcher,
)
from .refund_service import RefundService, refund_service, compute_refund_eligibility
from .dispute_service import DisputeService, dispute_service, get_evidence_requirements
from .split_payment_service import (
    SplitPaymentService,
    split_payment_service,
    compute_shares,
    calculate_payment_stats,
    decide_completion,
)
from .individual_payment_service import (
    IndividualPaymentService,
    individual_payment_service,
)
from .retry_service import RetryService, retry_service
from .webhook_service import WebhookService, webhook_service

logger = logging.getLogger(__name__)


def initialize_split_payment_services(
    gateway: Optional[PaymentGatewayInterface] = None,
) -> Optional[PaymentGatewayInterface]:
    """
    Attach the payment gateway to the service singletons. Without an
    explicit gateway, Stripe is used when a secret key is configured.
    """
    if gateway is None:
        stripe_settings = split_payment_config.get_stripe_settings()
        if not stripe_settings.get("secret_key"):
            logger.warning("Stripe is not configured; charges and refunds are disabled")
            return None
        gateway = StripeGateway(
            stripe_settings, test_mode=not split_payment_config.is_production()
        )

    for service in (refund_service, individual_payment_service, webhook_service):
        service.set_gateway(gateway)

    logger.info(f"Split payment services using {type(gateway).__name__}")
    return gateway


__all__ = [
    # Notifications
    "NotificationDispatcher",
    "LoggingNotificationDispatcher",
    "RealtimeNotificationDispatcher",
    "dispatch_safely",
    "notification_dispatcher",
    # Refunds
    "RefundService",
    "refund_service",
    "compute_refund_eligibility",
    # Disputes
    "DisputeService",
    "dispute_service",
    "get_evidence_requirements",
    # Split payments
    "SplitPaymentService",
    "split_payment_service",
    "compute_shares",
    "calculate_payment_stats",
    "decide_completion",
    # Individual payments
    "IndividualPaymentService",
    "individual_payment_service",
    # Retry
    "RetryService",
    "retry_service",
    # Webhooks
    "WebhookService",
    "webhook_service",
    "initialize_split_payment_services",
]
