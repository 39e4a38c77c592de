# backend/modules/payments/services/webhook_service.py

import logging
from typing import Dict, Any, Optional
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import NotFoundError, ValidationError
from ..exceptions import ProcessorError
from ..gateways.base import PaymentGatewayInterface
from ..models.split_payment_models import PaymentWebhookEvent
from ..repositories.split_payment_repository import (
    SplitPaymentRepository,
    split_payment_repository,
)
from .dispute_service import DisputeService, dispute_service, processor_object_id
from .individual_payment_service import (
    IndividualPaymentService,
    individual_payment_service,
)


logger = logging.getLogger(__name__)

SUCCESS_EVENTS = {"payment_intent.succeeded"}
FAILURE_EVENTS = {"payment_intent.payment_failed", "payment_intent.canceled"}
DISPUTE_EVENTS = {
    "charge.dispute.created",
    "charge.dispute.updated",
    "charge.dispute.closed",
    "charge.dispute.funds_withdrawn",
    "charge.dispute.funds_reinstated",
}


class WebhookService:
    """
    Service for handling payment gateway webhooks
    """

    def __init__(
        self,
        gateway: Optional[PaymentGatewayInterface] = None,
        payments: IndividualPaymentService = individual_payment_service,
        repository: SplitPaymentRepository = split_payment_repository,
        disputes: DisputeService = dispute_service,
    ):
        self.gateway = gateway
        self.payments = payments
        self.repository = repository
        self.disputes = disputes

    def set_gateway(self, gateway: PaymentGatewayInterface):
        self.gateway = gateway

    async def process_webhook(
        self,
        db: AsyncSession,
        headers: Dict[str, str],
        body: bytes,
    ) -> Dict[str, Any]:
        """
        Process incoming webhook from the payment gateway

        Args:
            db: Database session
            headers: Webhook request headers, lower-cased
            body: Raw webhook body

        Returns:
            Response data
        """
        if self.gateway is None:
            raise ProcessorError("Payment gateway is not configured")

        # Verify webhook signature
        is_valid, payload = await self.gateway.verify_webhook(headers, body)
        if not is_valid or not payload:
            logger.warning("Invalid webhook signature")
            raise ValidationError(
                "Invalid webhook signature", error_code="INVALID_SIGNATURE"
            )

        event_id = payload.get("id")
        event_type = payload.get("type", "")

        # Check for duplicate webhook
        if event_id and await self.repository.webhook_event_seen(db, event_id):
            logger.info(f"Duplicate webhook {event_id}")
            return {"status": "success", "message": "Already processed"}

        intent = payload.get("data", {}).get("object", {}) or {}
        intent_id = intent.get("id")

        if event_type in DISPUTE_EVENTS:
            # The event object is the dispute; it points at the disputed intent
            intent_id = processor_object_id(intent.get("payment_intent"))
            result = await self._record_dispute(db, intent)
        elif event_type in SUCCESS_EVENTS:
            result = await self._record_outcome(db, intent_id, succeeded=True)
        elif event_type in FAILURE_EVENTS:
            error = intent.get("last_payment_error") or {}
            reason = error.get("message") or (
                "Payment was canceled"
                if event_type == "payment_intent.canceled"
                else "Payment failed"
            )
            result = await self._record_outcome(
                db, intent_id, succeeded=False, failure_reason=reason
            )
        else:
            logger.info(f"Unhandled webhook event type: {event_type}")
            result = {"status": "success", "message": "Event ignored"}

        if event_id:
            try:
                await self.repository.add_webhook_event(
                    db,
                    PaymentWebhookEvent(
                        event_id=event_id,
                        event_type=event_type,
                        processor_intent_id=intent_id,
                        processed_at=datetime.utcnow(),
                        payload=payload,
                    ),
                )
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.error(f"Failed to record webhook event {event_id}: {e}")
                raise

        return result

    async def _record_outcome(
        self,
        db: AsyncSession,
        intent_id: Optional[str],
        succeeded: bool,
        failure_reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not intent_id:
            logger.warning("Webhook event without a payment intent id")
            return {"status": "success", "message": "No payment intent"}

        try:
            status = await self.payments.record_charge_outcome(
                db, intent_id, succeeded, failure_reason
            )
        except NotFoundError:
            # Intents created outside split payments
            logger.info(f"No split payment for intent {intent_id}")
            return {"status": "success", "message": "Unknown payment intent"}

        return {"status": "success", "payment_status": status.value}

    async def _record_dispute(
        self, db: AsyncSession, dispute: Dict[str, Any]
    ) -> Dict[str, Any]:
        record = await self.disputes.record_dispute(db, dispute)
        if record is None:
            return {"status": "success", "message": "Dispute not applied"}
        return {"status": "success", "dispute_status": record.status.value}


webhook_service = WebhookService()
