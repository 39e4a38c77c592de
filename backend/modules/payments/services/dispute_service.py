# backend/modules/payments/services/dispute_service.py

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..models.refund_models import (
    PaymentDispute,
    DisputeStatus,
    CLOSED_DISPUTE_STATUSES,
)
from ..monitoring.split_payment_metrics import SplitPaymentMetrics
from ..repositories.split_payment_repository import (
    SplitPaymentRepository,
    split_payment_repository,
)
from ..schemas.refund_schemas import PaymentDisputeRecord, PaymentDisputeResponse
from .notification_dispatcher import (
    NotificationDispatcher,
    dispatch_safely,
    notification_dispatcher,
)

logger = logging.getLogger(__name__)

# Evidence Stripe asks for, keyed by dispute reason
EVIDENCE_REQUIREMENTS: Dict[str, List[str]] = {
    "duplicate": [
        "receipt",
        "customer_communication",
        "duplicate_charge_documentation",
    ],
    "fraudulent": [
        "receipt",
        "shipping_documentation",
        "customer_signature",
        "customer_communication",
        "uncategorized_file",
    ],
    "subscription_canceled": [
        "cancellation_policy",
        "customer_communication",
        "uncategorized_file",
    ],
    "product_unacceptable": [
        "receipt",
        "product_description",
        "shipping_documentation",
        "customer_communication",
    ],
    "product_not_received": [
        "receipt",
        "shipping_documentation",
        "customer_communication",
        "service_documentation",
    ],
    "unrecognized": ["receipt", "customer_communication", "billing_agreement"],
    "credit_not_processed": ["receipt", "refund_policy", "customer_communication"],
    "general": ["receipt", "customer_communication", "uncategorized_file"],
}


def get_evidence_requirements(reason: Optional[str]) -> List[str]:
    return list(
        EVIDENCE_REQUIREMENTS.get(reason or "", EVIDENCE_REQUIREMENTS["general"])
    )


def processor_object_id(value: Any) -> Optional[str]:
    """Stripe sends either an id or the expanded object"""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _evidence_due_by(dispute: Dict[str, Any]) -> Optional[datetime]:
    due_by = (dispute.get("evidence_details") or {}).get("due_by")
    return datetime.utcfromtimestamp(due_by) if due_by else None


class DisputeService:
    """
    Chargebacks reported by the processor

    Disputes are never opened from this side. Each dispute webhook creates
    the row on first sight and updates it afterwards; a closed dispute
    keeps its final status even if an older update arrives late.
    """

    def __init__(
        self,
        repository: SplitPaymentRepository = split_payment_repository,
        dispatcher: NotificationDispatcher = notification_dispatcher,
    ):
        self.repository = repository
        self.dispatcher = dispatcher

    async def record_dispute(
        self,
        db: AsyncSession,
        dispute: Dict[str, Any],
        now: Optional[datetime] = None,
    ) -> Optional[PaymentDisputeRecord]:
        """
        Apply a processor dispute object. Returns None when the object has
        no id or an unknown status.
        """
        processor_dispute_id = dispute.get("id")
        try:
            status = DisputeStatus(dispute.get("status"))
        except ValueError:
            logger.warning(
                f"Dispute {processor_dispute_id} has unknown status "
                f"{dispute.get('status')!r}"
            )
            return None
        if not processor_dispute_id:
            logger.warning("Dispute webhook without a dispute id")
            return None

        now = now or datetime.utcnow()
        closed_at = now if status in CLOSED_DISPUTE_STATUSES else None

        try:
            existing = await self.repository.get_dispute_by_processor_id(
                db, processor_dispute_id
            )
            if existing is None:
                previous_status = None
                record = await self._add_dispute(
                    db, processor_dispute_id, dispute, status, closed_at
                )
            else:
                previous_status = existing.status
                if (
                    previous_status in CLOSED_DISPUTE_STATUSES
                    and status not in CLOSED_DISPUTE_STATUSES
                ):
                    logger.info(
                        f"Ignoring stale {status.value} update for closed dispute "
                        f"{existing.id}"
                    )
                    return existing

                values: Dict[str, Any] = {
                    "status": status,
                    "amount": int(dispute.get("amount") or existing.amount),
                    "evidence_due_by": _evidence_due_by(dispute)
                    or existing.evidence_due_by,
                }
                if closed_at and existing.closed_at is None:
                    values["closed_at"] = closed_at
                record = await self.repository.update_dispute(db, existing.id, **values)

            await db.commit()

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to record dispute {processor_dispute_id}: {e}")
            raise

        if status == previous_status:
            return record

        logger.info(
            f"Dispute {record.id} ({processor_dispute_id}) is now {status.value}"
        )
        SplitPaymentMetrics.record_dispute(status.value, record.reason)
        await dispatch_safely(
            self.dispatcher.notify_dispute_status_change(
                record.split_payment_id, record.id, status
            ),
            f"dispute {record.id} status",
        )
        return record

    async def _add_dispute(
        self,
        db: AsyncSession,
        processor_dispute_id: str,
        dispute: Dict[str, Any],
        status: DisputeStatus,
        closed_at: Optional[datetime],
    ) -> PaymentDisputeRecord:
        intent_id = processor_object_id(dispute.get("payment_intent"))
        payment = (
            await self.repository.get_payment_by_intent(db, intent_id)
            if intent_id
            else None
        )
        if payment is None:
            logger.info(f"Dispute {processor_dispute_id} is not for a split payment")

        return await self.repository.add_dispute(
            db,
            PaymentDispute(
                processor_dispute_id=processor_dispute_id,
                processor_charge_id=processor_object_id(dispute.get("charge")),
                processor_intent_id=intent_id,
                individual_payment_id=payment.id if payment else None,
                split_payment_id=payment.split_payment_id if payment else None,
                amount=int(dispute.get("amount") or 0),
                currency=(dispute.get("currency") or "usd").lower(),
                reason=dispute.get("reason") or "general",
                status=status,
                evidence_due_by=_evidence_due_by(dispute),
                closed_at=closed_at,
                extra_data={
                    "network_reason_code": dispute.get("network_reason_code"),
                    "is_charge_refundable": dispute.get("is_charge_refundable"),
                },
            ),
        )

    async def get_dispute(
        self, db: AsyncSession, dispute_id: str
    ) -> PaymentDisputeResponse:
        record = await self.repository.get_dispute(db, dispute_id)
        return PaymentDisputeResponse(
            **record.model_dump(),
            evidence_requirements=get_evidence_requirements(record.reason),
        )

    async def list_disputes(
        self,
        db: AsyncSession,
        split_payment_id: Optional[str] = None,
        status: Optional[DisputeStatus] = None,
    ) -> List[PaymentDisputeResponse]:
        records = await self.repository.list_disputes(
            db, split_payment_id=split_payment_id, status=status
        )
        return [
            PaymentDisputeResponse(
                **record.model_dump(),
                evidence_requirements=get_evidence_requirements(record.reason),
            )
            for record in records
        ]


dispute_service = DisputeService()
