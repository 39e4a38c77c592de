# backend/modules/payments/gateways/stripe_gateway.py

import asyncio
import stripe
import logging
from typing import Dict, Any, Optional, Tuple
from datetime import datetime

from .base import (
    PaymentGatewayInterface,
    PaymentRequest,
    PaymentResponse,
    RefundRequest,
    RefundResponse,
    GatewayPaymentStatus,
    GatewayRefundStatus,
)


logger = logging.getLogger(__name__)

INTENT_STATUSES = {
    "requires_payment_method": GatewayPaymentStatus.PENDING,
    "requires_confirmation": GatewayPaymentStatus.PENDING,
    "requires_action": GatewayPaymentStatus.REQUIRES_ACTION,
    "processing": GatewayPaymentStatus.PROCESSING,
    "requires_capture": GatewayPaymentStatus.PROCESSING,
    "canceled": GatewayPaymentStatus.CANCELLED,
    "succeeded": GatewayPaymentStatus.SUCCEEDED,
}

REFUND_STATUSES = {
    "pending": GatewayRefundStatus.PENDING,
    "requires_action": GatewayRefundStatus.PENDING,
    "succeeded": GatewayRefundStatus.SUCCEEDED,
    "failed": GatewayRefundStatus.FAILED,
    "canceled": GatewayRefundStatus.CANCELLED,
}

# Stripe only accepts these three refund reasons
REFUND_REASONS = {
    "duplicate_payment": "duplicate",
    "fraud": "fraudulent",
}


def _timestamp(created: Optional[int]) -> Optional[datetime]:
    return datetime.utcfromtimestamp(created) if created else None


def _stripe_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Stripe metadata values must be strings"""
    return {
        key: str(value) for key, value in (metadata or {}).items() if value is not None
    }


class StripeGateway(PaymentGatewayInterface):
    """
    Stripe PaymentIntents and Refunds

    The SDK is synchronous, so each API call runs in a worker thread to
    keep the event loop free while Stripe answers.

    Every mutating call forwards the caller's idempotency key, so a
    retried charge or refund is answered from Stripe's idempotency cache
    instead of moving money twice.
    """

    def __init__(self, config: Dict[str, Any], test_mode: bool = True):
        super().__init__(config, test_mode)

        stripe.api_key = config.get("secret_key")
        stripe.api_version = "2023-10-16"
        stripe.max_network_retries = 2

        self.webhook_secret = config.get("webhook_secret")

    def _intent_response(self, intent) -> PaymentResponse:
        return PaymentResponse(
            success=True,
            gateway_payment_id=intent.id,
            client_secret=getattr(intent, "client_secret", None),
            status=INTENT_STATUSES.get(intent.status, GatewayPaymentStatus.PENDING),
            amount=intent.amount,
            currency=intent.currency,
            processed_at=_timestamp(getattr(intent, "created", None)),
            raw_response=intent.to_dict(),
        )

    def _payment_failure(self, action: str, error: stripe.StripeError) -> PaymentResponse:
        # Card errors carry a message that is safe to show the payer
        message = getattr(error, "user_message", None) or str(error)
        logger.warning(f"Stripe {action} failed: {error}")
        return PaymentResponse(
            success=False,
            status=GatewayPaymentStatus.FAILED,
            error_code=error.code or f"{action}_error",
            error_message=message,
        )

    async def create_payment(self, request: PaymentRequest) -> PaymentResponse:
        params = {
            "amount": request.amount,
            "currency": request.currency.lower(),
            "description": request.description,
            "metadata": _stripe_metadata(request.metadata),
            # Participants confirm client-side with the client secret
            "automatic_payment_methods": {"enabled": True},
        }
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                **params,
                idempotency_key=request.idempotency_key,
            )
        except stripe.StripeError as e:
            return self._payment_failure("payment", e)

        return self._intent_response(intent)

    async def confirm_payment(self, payment_id: str) -> PaymentResponse:
        try:
            intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, payment_id)
        except stripe.StripeError as e:
            return self._payment_failure("confirm", e)
        return self._intent_response(intent)

    async def create_refund(self, request: RefundRequest) -> RefundResponse:
        params = {
            "payment_intent": request.payment_id,
            "reason": REFUND_REASONS.get(request.reason or "", "requested_by_customer"),
            "metadata": _stripe_metadata(request.metadata),
        }
        if request.amount:
            params["amount"] = request.amount

        try:
            refund = await asyncio.to_thread(
                stripe.Refund.create, **params, idempotency_key=request.idempotency_key
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe refund of {request.payment_id} failed: {e}")
            return RefundResponse(
                success=False,
                status=GatewayRefundStatus.FAILED,
                error_code=e.code or "refund_error",
                error_message=str(e),
            )

        status = REFUND_STATUSES.get(refund.status, GatewayRefundStatus.PENDING)
        return RefundResponse(
            success=status != GatewayRefundStatus.FAILED,
            gateway_refund_id=refund.id,
            status=status,
            amount=refund.amount,
            currency=refund.currency,
            processed_at=_timestamp(getattr(refund, "created", None)),
            error_message=getattr(refund, "failure_reason", None),
            raw_response=refund.to_dict(),
        )

    async def verify_webhook(
        self, headers: Dict[str, str], body: bytes
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        signature = headers.get("stripe-signature")
        if not signature or not self.webhook_secret:
            return False, None

        try:
            event = stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Rejected Stripe webhook: {e}")
            return False, None

        return True, event.to_dict()

    def get_public_config(self) -> Dict[str, Any]:
        return {
            "publishable_key": self.config.get("publishable_key"),
            "test_mode": self.test_mode,
        }
