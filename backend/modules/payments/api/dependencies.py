# backend/modules/payments/api/dependencies.py

from core.exceptions import APIError
from ..gateways.base import PaymentGatewayInterface
from ..services import (
    SplitPaymentService,
    IndividualPaymentService,
    RefundService,
    RetryService,
    WebhookService,
    DisputeService,
    split_payment_service,
    individual_payment_service,
    refund_service,
    retry_service,
    webhook_service,
    dispute_service,
)


def get_split_payment_service() -> SplitPaymentService:
    return split_payment_service


def get_individual_payment_service() -> IndividualPaymentService:
    return individual_payment_service


def get_refund_service() -> RefundService:
    return refund_service


def get_retry_service() -> RetryService:
    return retry_service


def get_webhook_service() -> WebhookService:
    return webhook_service


def get_dispute_service() -> DisputeService:
    return dispute_service


def get_payment_gateway() -> PaymentGatewayInterface:
    """The configured gateway; 503 when payments are not set up"""
    gateway = individual_payment_service.gateway
    if gateway is None:
        raise APIError(
            status_code=503,
            detail="Payment gateway is not configured",
            error_code="GATEWAY_UNAVAILABLE",
        )
    return gateway
