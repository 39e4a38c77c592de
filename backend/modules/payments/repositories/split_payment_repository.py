# backend/modules/payments/repositories/split_payment_repository.py

"""
Store access for split payments, individual payments, refunds and
disputes.

Every read is decoded into a pydantic record before it leaves this
module. Status writes are compare-and-swap updates: the row is only
changed if it still carries the status the caller observed, and the
caller learns whether its write won.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import NotFoundError
from ..exceptions import PaymentStateConflictError, StoreError
from ..models.split_payment_models import (
    SplitPayment,
    IndividualPayment,
    PaymentWebhookEvent,
    SplitPaymentStatus,
    IndividualPaymentStatus,
    TERMINAL_SPLIT_STATUSES,
    INDIVIDUAL_PAYMENT_TRANSITIONS,
)
from ..models.refund_models import (
    RefundRequest,
    PaymentRefund,
    RefundRequestStatus,
    PaymentDispute,
    DisputeStatus,
)
from ..schemas.split_payment_schemas import SplitPaymentRecord, IndividualPaymentRecord
from ..schemas.refund_schemas import (
    RefundRequestRecord,
    PaymentRefundRecord,
    PaymentDisputeRecord,
)

logger = logging.getLogger(__name__)


def _store_error(action: str, error: SQLAlchemyError) -> StoreError:
    logger.error(f"Store error while {action}: {error}")
    return StoreError(f"Failed {action}: {error}")


class SplitPaymentRepository:
    """Typed access to the payment record store"""

    # Split payments

    async def add_split_payment(
        self,
        db: AsyncSession,
        split: SplitPayment,
        payments: Sequence[IndividualPayment],
    ) -> None:
        try:
            db.add(split)
            await db.flush()
            for payment in payments:
                payment.split_payment_id = split.id
                db.add(payment)
            await db.flush()
        except SQLAlchemyError as e:
            raise _store_error("creating split payment", e) from e

    async def get_split_payment(
        self, db: AsyncSession, split_payment_id: str
    ) -> SplitPaymentRecord:
        try:
            result = await db.execute(
                select(SplitPayment)
                .where(SplitPayment.id == split_payment_id)
                .execution_options(populate_existing=True)
            )
            split = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise _store_error("loading split payment", e) from e

        if not split:
            raise NotFoundError(f"Split payment {split_payment_id} not found")
        return SplitPaymentRecord.model_validate(split)

    async def list_split_payments_for_user(
        self, db: AsyncSession, user_id: str
    ) -> List[SplitPaymentRecord]:
        participant_splits = select(IndividualPayment.split_payment_id).where(
            IndividualPayment.user_id == user_id
        )
        try:
            result = await db.execute(
                select(SplitPayment)
                .where(
                    (SplitPayment.organizer_id == user_id)
                    | (SplitPayment.id.in_(participant_splits))
                )
                .order_by(SplitPayment.created_at.desc())
                .execution_options(populate_existing=True)
            )
            return [SplitPaymentRecord.model_validate(s) for s in result.scalars()]
        except SQLAlchemyError as e:
            raise _store_error("listing split payments", e) from e

    async def list_open_split_payments(
        self, db: AsyncSession, deadline_before: Optional[datetime] = None
    ) -> List[SplitPaymentRecord]:
        """Non-terminal splits, optionally only those past ``deadline_before``"""
        query = select(SplitPayment).where(
            SplitPayment.status.notin_(list(TERMINAL_SPLIT_STATUSES))
        )
        if deadline_before is not None:
            query = query.where(SplitPayment.payment_deadline <= deadline_before)
        try:
            result = await db.execute(
                query.order_by(SplitPayment.payment_deadline).execution_options(
                    populate_existing=True
                )
            )
            return [SplitPaymentRecord.model_validate(s) for s in result.scalars()]
        except SQLAlchemyError as e:
            raise _store_error("listing open split payments", e) from e

    async def transition_split_status(
        self,
        db: AsyncSession,
        split_payment_id: str,
        expected: SplitPaymentStatus,
        new_status: SplitPaymentStatus,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        values: Dict[str, Any] = {"status": new_status, "updated_at": datetime.utcnow()}
        if completed_at is not None:
            values["completed_at"] = completed_at
        try:
            result = await db.execute(
                update(SplitPayment)
                .where(
                    SplitPayment.id == split_payment_id,
                    SplitPayment.status == expected,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise _store_error("updating split payment status", e) from e
        return result.rowcount == 1

    # Individual payments

    async def get_payment(
        self, db: AsyncSession, payment_id: str
    ) -> IndividualPaymentRecord:
        try:
            result = await db.execute(
                select(IndividualPayment)
                .where(IndividualPayment.id == payment_id)
                .execution_options(populate_existing=True)
            )
            payment = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise _store_error("loading individual payment", e) from e

        if not payment:
            raise NotFoundError(f"Individual payment {payment_id} not found")
        return IndividualPaymentRecord.model_validate(payment)

    async def get_payment_by_intent(
        self, db: AsyncSession, intent_id: str
    ) -> Optional[IndividualPaymentRecord]:
        try:
            result = await db.execute(
                select(IndividualPayment)
                .where(IndividualPayment.processor_intent_id == intent_id)
                .execution_options(populate_existing=True)
            )
            payment = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise _store_error("loading payment by intent", e) from e
        return IndividualPaymentRecord.model_validate(payment) if payment else None

    async def list_payments(
        self, db: AsyncSession, split_payment_id: str
    ) -> List[IndividualPaymentRecord]:
        """Individual payments in share order"""
        try:
            result = await db.execute(
                select(IndividualPayment)
                .where(IndividualPayment.split_payment_id == split_payment_id)
                .order_by(IndividualPayment.position)
                .execution_options(populate_existing=True)
            )
            return [
                IndividualPaymentRecord.model_validate(p) for p in result.scalars()
            ]
        except SQLAlchemyError as e:
            raise _store_error("listing individual payments", e) from e

    async def transition_payment_status(
        self,
        db: AsyncSession,
        payment_id: str,
        expected: IndividualPaymentStatus,
        new_status: IndividualPaymentStatus,
        **values: Any,
    ) -> bool:
        """
        Move a payment from ``expected`` to ``new_status``. Extra column
        values are written in the same statement. Returns False when the
        row was no longer in ``expected``.
        """
        if new_status not in INDIVIDUAL_PAYMENT_TRANSITIONS[expected]:
            raise PaymentStateConflictError(
                f"Payment {payment_id} cannot move from {expected.value} to {new_status.value}"
            )
        values.update({"status": new_status, "updated_at": datetime.utcnow()})
        try:
            result = await db.execute(
                update(IndividualPayment)
                .where(
                    IndividualPayment.id == payment_id,
                    IndividualPayment.status == expected,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise _store_error("updating individual payment status", e) from e
        return result.rowcount == 1

    async def claim_for_charge(self, db: AsyncSession, payment_id: str) -> bool:
        """pending -> processing, bumping the attempt counter"""
        return await self.transition_payment_status(
            db,
            payment_id,
            IndividualPaymentStatus.PENDING,
            IndividualPaymentStatus.PROCESSING,
            charge_attempts=IndividualPayment.charge_attempts + 1,
            failure_reason=None,
        )

    async def update_payment_fields(
        self, db: AsyncSession, payment_id: str, **values: Any
    ) -> None:
        """Write non-status columns"""
        values["updated_at"] = datetime.utcnow()
        try:
            await db.execute(
                update(IndividualPayment)
                .where(IndividualPayment.id == payment_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise _store_error("updating individual payment", e) from e

    async def record_reminder(
        self,
        db: AsyncSession,
        payment_id: str,
        sent_at: datetime,
        max_reminders: int,
        window_hours: Optional[int] = None,
    ) -> bool:
        """
        Count a reminder, only while the payment is pending and under the
        reminder cap. Returns False if either condition no longer holds.
        """
        values: Dict[str, Any] = {
            "reminder_count": IndividualPayment.reminder_count + 1,
            "last_reminder_at": sent_at,
            "updated_at": datetime.utcnow(),
        }
        if window_hours is not None:
            values["last_reminder_window"] = window_hours
        try:
            result = await db.execute(
                update(IndividualPayment)
                .where(
                    IndividualPayment.id == payment_id,
                    IndividualPayment.status == IndividualPaymentStatus.PENDING,
                    IndividualPayment.reminder_count < max_reminders,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise _store_error("recording reminder", e) from e
        return result.rowcount == 1

    # Refund requests

    async def add_refund_request(
        self, db: AsyncSession, refund_request: RefundRequest
    ) -> RefundRequestRecord:
        try:
            db.add(refund_request)
            await db.flush()
            await db.refresh(refund_request)
        except SQLAlchemyError as e:
            raise _store_error("creating refund request", e) from e
        return RefundRequestRecord.model_validate(refund_request)

    async def get_refund_request(
        self, db: AsyncSession, refund_request_id: str
    ) -> RefundRequestRecord:
        try:
            result = await db.execute(
                select(RefundRequest)
                .where(RefundRequest.id == refund_request_id)
                .execution_options(populate_existing=True)
            )
            refund_request = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise _store_error("loading refund request", e) from e

        if not refund_request:
            raise NotFoundError(f"Refund request {refund_request_id} not found")
        return RefundRequestRecord.model_validate(refund_request)

    async def list_refund_requests(
        self,
        db: AsyncSession,
        split_payment_id: Optional[str] = None,
        status: Optional[RefundRequestStatus] = None,
        requester_id: Optional[str] = None,
    ) -> List[RefundRequestRecord]:
        query = select(RefundRequest)
        if split_payment_id:
            query = query.where(RefundRequest.split_payment_id == split_payment_id)
        if status:
            query = query.where(RefundRequest.status == status)
        if requester_id:
            query = query.where(RefundRequest.requester_id == requester_id)
        try:
            result = await db.execute(
                query.order_by(RefundRequest.created_at.desc()).execution_options(
                    populate_existing=True
                )
            )
            return [RefundRequestRecord.model_validate(r) for r in result.scalars()]
        except SQLAlchemyError as e:
            raise _store_error("listing refund requests", e) from e

    async def transition_refund_status(
        self,
        db: AsyncSession,
        refund_request_id: str,
        expected: Sequence[RefundRequestStatus],
        new_status: RefundRequestStatus,
        **values: Any,
    ) -> bool:
        values.update({"status": new_status, "updated_at": datetime.utcnow()})
        try:
            result = await db.execute(
                update(RefundRequest)
                .where(
                    RefundRequest.id == refund_request_id,
                    RefundRequest.status.in_(list(expected)),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise _store_error("updating refund request status", e) from e
        return result.rowcount == 1

    async def count_refund_requests_by(
        self, db: AsyncSession, column
    ) -> Dict[str, int]:
        try:
            result = await db.execute(
                select(column, func.count(RefundRequest.id)).group_by(column)
            )
        except SQLAlchemyError as e:
            raise _store_error("counting refund requests", e) from e
        return {
            (key.value if hasattr(key, "value") else str(key)): count
            for key, count in result.all()
        }

    # Refund ledger

    async def add_payment_refund(
        self, db: AsyncSession, payment_refund: PaymentRefund
    ) -> PaymentRefundRecord:
        try:
            db.add(payment_refund)
            await db.flush()
            await db.refresh(payment_refund)
        except SQLAlchemyError as e:
            raise _store_error("recording payment refund", e) from e
        return PaymentRefundRecord.model_validate(payment_refund)

    async def list_payment_refunds(
        self,
        db: AsyncSession,
        refund_request_id: Optional[str] = None,
        individual_payment_id: Optional[str] = None,
    ) -> List[PaymentRefundRecord]:
        query = select(PaymentRefund)
        if refund_request_id:
            query = query.where(PaymentRefund.refund_request_id == refund_request_id)
        if individual_payment_id:
            query = query.where(
                PaymentRefund.individual_payment_id == individual_payment_id
            )
        try:
            result = await db.execute(query.order_by(PaymentRefund.created_at))
            return [PaymentRefundRecord.model_validate(r) for r in result.scalars()]
        except SQLAlchemyError as e:
            raise _store_error("listing payment refunds", e) from e

    async def total_refunded(self, db: AsyncSession) -> int:
        try:
            result = await db.execute(
                select(func.coalesce(func.sum(PaymentRefund.amount), 0))
            )
        except SQLAlchemyError as e:
            raise _store_error("summing refunds", e) from e
        return int(result.scalar_one())

    # Disputes

    async def get_dispute_by_processor_id(
        self, db: AsyncSession, processor_dispute_id: str
    ) -> Optional[PaymentDisputeRecord]:
        try:
            result = await db.execute(
                select(PaymentDispute)
                .where(PaymentDispute.processor_dispute_id == processor_dispute_id)
                .execution_options(populate_existing=True)
            )
            dispute = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise _store_error("loading dispute", e) from e
        return PaymentDisputeRecord.model_validate(dispute) if dispute else None

    async def get_dispute(
        self, db: AsyncSession, dispute_id: str
    ) -> PaymentDisputeRecord:
        try:
            result = await db.execute(
                select(PaymentDispute)
                .where(PaymentDispute.id == dispute_id)
                .execution_options(populate_existing=True)
            )
            dispute = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise _store_error("loading dispute", e) from e

        if not dispute:
            raise NotFoundError(f"Dispute {dispute_id} not found")
        return PaymentDisputeRecord.model_validate(dispute)

    async def add_dispute(
        self, db: AsyncSession, dispute: PaymentDispute
    ) -> PaymentDisputeRecord:
        try:
            db.add(dispute)
            await db.flush()
            await db.refresh(dispute)
        except SQLAlchemyError as e:
            raise _store_error("recording dispute", e) from e
        return PaymentDisputeRecord.model_validate(dispute)

    async def update_dispute(
        self, db: AsyncSession, dispute_id: str, **values: Any
    ) -> PaymentDisputeRecord:
        values["updated_at"] = datetime.utcnow()
        try:
            await db.execute(
                update(PaymentDispute)
                .where(PaymentDispute.id == dispute_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            raise _store_error("updating dispute", e) from e
        return await self.get_dispute(db, dispute_id)

    async def list_disputes(
        self,
        db: AsyncSession,
        split_payment_id: Optional[str] = None,
        status: Optional[DisputeStatus] = None,
    ) -> List[PaymentDisputeRecord]:
        query = select(PaymentDispute)
        if split_payment_id:
            query = query.where(PaymentDispute.split_payment_id == split_payment_id)
        if status:
            query = query.where(PaymentDispute.status == status)
        try:
            result = await db.execute(
                query.order_by(PaymentDispute.created_at.desc()).execution_options(
                    populate_existing=True
                )
            )
            return [PaymentDisputeRecord.model_validate(d) for d in result.scalars()]
        except SQLAlchemyError as e:
            raise _store_error("listing disputes", e) from e

    # Webhook events

    async def webhook_event_seen(self, db: AsyncSession, event_id: str) -> bool:
        try:
            result = await db.execute(
                select(PaymentWebhookEvent.id).where(
                    PaymentWebhookEvent.event_id == event_id
                )
            )
        except SQLAlchemyError as e:
            raise _store_error("checking webhook event", e) from e
        return result.scalar_one_or_none() is not None

    async def add_webhook_event(
        self, db: AsyncSession, event: PaymentWebhookEvent
    ) -> None:
        try:
            db.add(event)
            await db.flush()
        except SQLAlchemyError as e:
            raise _store_error("recording webhook event", e) from e


split_payment_repository = SplitPaymentRepository()
