# backend/modules/payments/services/refund_service.py

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import NotFoundError, PermissionError
from ..config.payment_config import SplitPaymentConfig, split_payment_config
from ..exceptions import (
    InvalidAmountError,
    NothingToRefundError,
    PaymentStateConflictError,
    ProcessorError,
    UnauthorizedPayerError,
)
from ..gateways.base import (
    PaymentGatewayInterface,
    GatewayRefundStatus,
    RefundRequest as GatewayRefundRequest,
    RefundResponse,
)
from ..models.split_payment_models import IndividualPaymentStatus
from ..models.refund_models import (
    RefundRequest,
    PaymentRefund,
    RefundAmountType,
    RefundReasonCategory,
    RefundRequestStatus,
    PaymentRefundStatus,
    PROCESSABLE_REFUND_STATUSES,
)
from ..monitoring.split_payment_metrics import SplitPaymentMetrics
from ..repositories.split_payment_repository import (
    SplitPaymentRepository,
    split_payment_repository,
)
from ..schemas.split_payment_schemas import IndividualPaymentRecord, SplitPaymentRecord
from ..schemas.refund_schemas import (
    RefundRequestRecord,
    RefundRequestCreate,
    RefundOutcome,
    PolicyEligibility,
    RefundAmounts,
    RefundStatistics,
)
from ..utils.currency import calculate_processing_fee
from .notification_dispatcher import (
    NotificationDispatcher,
    dispatch_safely,
    notification_dispatcher,
)

logger = logging.getLogger(__name__)

SYSTEM_REQUESTER_ID = "system"


def compute_refund_eligibility(
    refund_request: RefundRequestRecord,
    payments: Sequence[IndividualPaymentRecord],
    cancellation_fee_percent: float = 0.0,
    refunded_by_request: Optional[Dict[str, int]] = None,
) -> int:
    """
    Amount a refund request may return, in minor units.

    Payments already refunded by this same request still count toward the
    collected amount so a retried request computes the same target.
    """
    refunded_by_request = refunded_by_request or {}
    in_scope = [
        p for p in payments
        if refund_request.individual_payment_id is None
        or p.id == refund_request.individual_payment_id
    ]
    collected = [
        p for p in in_scope
        if p.status == IndividualPaymentStatus.PAID or p.id in refunded_by_request
    ]
    if not collected:
        raise NothingToRefundError(
            f"No paid payments to refund for split payment {refund_request.split_payment_id}"
        )

    paid_total = sum(p.amount_paid for p in collected)
    amount_type = refund_request.requested_amount_type
    custom_amount = refund_request.custom_amount

    if amount_type == RefundAmountType.FULL:
        return paid_total

    if amount_type == RefundAmountType.PARTIAL and custom_amount is None:
        fee = Decimal(paid_total) * Decimal(str(cancellation_fee_percent)) / Decimal(100)
        withheld = int(fee.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        return max(paid_total - withheld, 0)

    if custom_amount is None:
        raise InvalidAmountError("Custom refunds require an amount")

    # Never refund more than was collected
    return min(custom_amount, paid_total)


class RefundService:
    """
    Refund workflow: request, review and processor-side refunds for
    split payments
    """

    def __init__(
        self,
        gateway: Optional[PaymentGatewayInterface] = None,
        repository: SplitPaymentRepository = split_payment_repository,
        dispatcher: NotificationDispatcher = notification_dispatcher,
        config: SplitPaymentConfig = split_payment_config,
    ):
        self.gateway = gateway
        self.repository = repository
        self.dispatcher = dispatcher
        self.config = config

    def set_gateway(self, gateway: PaymentGatewayInterface):
        self.gateway = gateway

    def _require_gateway(self) -> PaymentGatewayInterface:
        if self.gateway is None:
            raise ProcessorError("Payment gateway is not configured")
        return self.gateway

    async def create_refund_request(
        self,
        db: AsyncSession,
        requester_id: str,
        data: RefundRequestCreate,
    ) -> RefundRequestRecord:
        """
        Create a refund request in pending_review

        The organizer may request refunds for the whole split or any one
        participant; a participant only for their own payment.
        """
        try:
            split = await self.repository.get_split_payment(db, data.split_payment_id)
            payments = await self.repository.list_payments(db, split.id)

            is_organizer = split.organizer_id == requester_id
            own_payment = next((p for p in payments if p.user_id == requester_id), None)
            if not is_organizer and own_payment is None:
                raise PermissionError(
                    "Only the organizer or participants can request refunds"
                )

            scope_id = data.individual_payment_id
            if scope_id:
                target = next((p for p in payments if p.id == scope_id), None)
                if target is None:
                    raise NotFoundError(
                        f"Individual payment {scope_id} is not part of split payment {split.id}"
                    )
                if not is_organizer and target.user_id != requester_id:
                    raise UnauthorizedPayerError(
                        "Participants can only request refunds of their own payment"
                    )
            elif not is_organizer:
                scope_id = own_payment.id

            if data.custom_amount is not None and data.custom_amount <= 0:
                raise InvalidAmountError("Refund amount must be positive")
            if (
                data.requested_amount_type == RefundAmountType.CUSTOM
                and data.custom_amount is None
            ):
                raise InvalidAmountError("Custom refunds require an amount")

            refund_request = RefundRequest(
                split_payment_id=split.id,
                booking_id=split.booking_id,
                individual_payment_id=scope_id,
                requester_id=requester_id,
                reason_category=data.reason_category,
                reason_description=data.reason_description,
                requested_amount_type=data.requested_amount_type,
                custom_amount=data.custom_amount,
                status=RefundRequestStatus.PENDING_REVIEW,
            )
            record = await self.repository.add_refund_request(db, refund_request)

            # Reject requests with nothing behind them before they reach review
            compute_refund_eligibility(
                record, payments, self.config.REFUND_CANCELLATION_FEE_PERCENT
            )

            await db.commit()

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to create refund request: {e}")
            raise

        logger.info(
            f"Refund request {record.id} created for split payment {split.id} "
            f"by {requester_id}"
        )
        await dispatch_safely(
            self.dispatcher.notify_refund_status_change(
                split.id, record.id, record.status
            ),
            f"refund request {record.id} status",
        )
        return record

    async def ensure_system_refund(
        self,
        db: AsyncSession,
        split: SplitPaymentRecord,
        payment: IndividualPaymentRecord,
    ) -> Optional[str]:
        """
        Queue a full refund of one paid payment on behalf of the system.
        Does not commit. Returns the new request id, or None when the
        payment already has a system refund request.
        """
        existing = await self.repository.list_refund_requests(
            db, split_payment_id=split.id
        )
        if any(r.is_system and r.individual_payment_id == payment.id for r in existing):
            return None

        record = await self.repository.add_refund_request(
            db,
            RefundRequest(
                split_payment_id=split.id,
                booking_id=split.booking_id,
                individual_payment_id=payment.id,
                requester_id=SYSTEM_REQUESTER_ID,
                is_system=True,
                reason_category=RefundReasonCategory.INSUFFICIENT_GROUP_PAYMENTS,
                reason_description="Minimum payment threshold not met by the deadline",
                requested_amount_type=RefundAmountType.FULL,
                status=RefundRequestStatus.PENDING_REVIEW,
            ),
        )
        logger.info(
            f"Queued refund {record.id} for payment {payment.id} of cancelled "
            f"split payment {split.id}"
        )
        return record.id

    async def process_queued_refunds(
        self, db: AsyncSession, refund_request_ids: Sequence[str]
    ) -> List[RefundOutcome]:
        """
        Process system refunds after the transaction that queued them has
        committed. A processor failure leaves that request in
        processing_failed for a later retry.
        """
        outcomes = []
        for refund_request_id in refund_request_ids:
            try:
                outcomes.append(await self.process_refund(db, refund_request_id))
            except (ProcessorError, PaymentStateConflictError) as e:
                logger.warning(
                    f"Queued refund {refund_request_id} not settled: {e.detail}"
                )
        return outcomes

    async def refund_late_payment(
        self, db: AsyncSession, split_payment_id: str, individual_payment_id: str
    ) -> Optional[RefundOutcome]:
        """Refund a payment that settled after its split was cancelled"""
        try:
            split = await self.repository.get_split_payment(db, split_payment_id)
            payment = await self.repository.get_payment(db, individual_payment_id)
            refund_request_id = await self.ensure_system_refund(db, split, payment)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(
                f"Failed to queue refund for late payment {individual_payment_id}: {e}"
            )
            raise

        if refund_request_id is None:
            return None
        outcomes = await self.process_queued_refunds(db, [refund_request_id])
        return outcomes[0] if outcomes else None

    async def evaluate_refund_eligibility(
        self, db: AsyncSession, refund_request: RefundRequestRecord
    ) -> int:
        """Eligible refund amount for a request, in minor units"""
        payments = await self.repository.list_payments(db, refund_request.split_payment_id)
        refunded_by_request = await self._refunded_by_request(db, refund_request.id)
        return compute_refund_eligibility(
            refund_request,
            payments,
            self.config.REFUND_CANCELLATION_FEE_PERCENT,
            refunded_by_request,
        )

    async def _refunded_by_request(
        self, db: AsyncSession, refund_request_id: str
    ) -> Dict[str, int]:
        ledger = await self.repository.list_payment_refunds(
            db, refund_request_id=refund_request_id
        )
        refunded: Dict[str, int] = defaultdict(int)
        for entry in ledger:
            refunded[entry.individual_payment_id] += entry.amount
        return dict(refunded)

    async def check_reviewer(
        self,
        db: AsyncSession,
        refund_request_id: str,
        reviewer_id: str,
        is_admin: bool = False,
    ) -> RefundRequestRecord:
        """The request, if the reviewer organizes its split or is an admin"""
        refund_request = await self.repository.get_refund_request(db, refund_request_id)
        if is_admin:
            return refund_request
        split = await self.repository.get_split_payment(
            db, refund_request.split_payment_id
        )
        if split.organizer_id != reviewer_id:
            raise PermissionError("Only the organizer can review refund requests")
        return refund_request

    async def start_review(
        self, db: AsyncSession, refund_request_id: str, reviewer_id: str
    ) -> RefundRequestRecord:
        """pending_review -> under_review"""
        return await self._review_transition(
            db,
            refund_request_id,
            [RefundRequestStatus.PENDING_REVIEW],
            RefundRequestStatus.UNDER_REVIEW,
            reviewer_id=reviewer_id,
        )

    async def deny_refund_request(
        self,
        db: AsyncSession,
        refund_request_id: str,
        reviewer_id: str,
        notes: Optional[str] = None,
    ) -> RefundRequestRecord:
        """pending_review | under_review -> denied"""
        return await self._review_transition(
            db,
            refund_request_id,
            [RefundRequestStatus.PENDING_REVIEW, RefundRequestStatus.UNDER_REVIEW],
            RefundRequestStatus.DENIED,
            reviewer_id=reviewer_id,
            reviewer_notes=notes,
        )

    async def _review_transition(
        self,
        db: AsyncSession,
        refund_request_id: str,
        expected: Sequence[RefundRequestStatus],
        new_status: RefundRequestStatus,
        **values,
    ) -> RefundRequestRecord:
        try:
            current = await self.repository.get_refund_request(db, refund_request_id)
            won = await self.repository.transition_refund_status(
                db,
                refund_request_id,
                expected,
                new_status,
                reviewed_at=datetime.utcnow(),
                **values,
            )
            if not won:
                raise PaymentStateConflictError(
                    f"Refund request {refund_request_id} is {current.status.value}, "
                    f"cannot move to {new_status.value}"
                )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to update refund request {refund_request_id}: {e}")
            raise

        record = await self.repository.get_refund_request(db, refund_request_id)
        await dispatch_safely(
            self.dispatcher.notify_refund_status_change(
                record.split_payment_id, record.id, record.status
            ),
            f"refund request {record.id} status",
        )
        return record

    async def process_refund(
        self,
        db: AsyncSession,
        refund_request_id: str,
        reviewer_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RefundOutcome:
        """
        Issue processor refunds for a request and settle it

        The request is claimed (-> processing) and committed before the
        first processor call, so overlapping runs for the same request
        cannot both move money; the loser gets a state conflict. The
        eligible amount is allocated across paid payments in share order.
        Payments already refunded under this request are skipped, so a
        retry after processing_failed never refunds twice. Calling this on
        an approved_processed request is a no-op success.
        """
        now = now or datetime.utcnow()
        try:
            refund_request = await self.repository.get_refund_request(
                db, refund_request_id
            )
            if refund_request.status == RefundRequestStatus.APPROVED_PROCESSED:
                return await self._outcome(db, refund_request, processor_calls=0)

            if refund_request.status not in PROCESSABLE_REFUND_STATUSES:
                raise PaymentStateConflictError(
                    f"Refund request {refund_request_id} is "
                    f"{refund_request.status.value} and cannot be processed"
                )

            split = await self.repository.get_split_payment(
                db, refund_request.split_payment_id
            )
            payments = await self.repository.list_payments(db, split.id)
            refunded_by_request = await self._refunded_by_request(db, refund_request_id)
            target = compute_refund_eligibility(
                refund_request,
                payments,
                self.config.REFUND_CANCELLATION_FEE_PERCENT,
                refunded_by_request,
            )

            claimed = await self.repository.transition_refund_status(
                db,
                refund_request_id,
                PROCESSABLE_REFUND_STATUSES,
                RefundRequestStatus.PROCESSING,
                failure_reason=None,
            )
            if not claimed:
                await db.rollback()
                current = await self.repository.get_refund_request(db, refund_request_id)
                if current.status == RefundRequestStatus.APPROVED_PROCESSED:
                    return await self._outcome(db, current, processor_calls=0)
                raise PaymentStateConflictError(
                    f"Refund request {refund_request_id} is already being processed"
                )
            await db.commit()

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to prepare refund request {refund_request_id}: {e}")
            raise

        remaining = target - sum(refunded_by_request.values())
        processor_calls = 0

        for payment in payments:
            if remaining <= 0:
                break
            if payment.status != IndividualPaymentStatus.PAID:
                continue
            if payment.id in refunded_by_request:
                continue
            if (
                refund_request.individual_payment_id is not None
                and payment.id != refund_request.individual_payment_id
            ):
                continue

            amount = min(remaining, payment.amount_paid)
            processor_calls += 1
            response = await self._refund_payment(refund_request, payment, amount)

            if not response.success:
                message = response.error_message or "Refund was declined"
                await self._mark_processing_failed(
                    db, refund_request, f"Payment {payment.id}: {message}"
                )
                raise ProcessorError(
                    f"Refund of payment {payment.id} failed: {message}",
                    processor_code=response.error_code,
                )

            refunded = await self._record_payment_refund(
                db, refund_request, payment, amount, response, now
            )
            if not refunded:
                # Another request refunded this payment first; stop before
                # allocating the same amount to the next share
                message = f"Payment {payment.id} changed while it was being refunded"
                await self._mark_processing_failed(db, refund_request, message)
                raise PaymentStateConflictError(message)
            remaining -= amount

        try:
            won = await self.repository.transition_refund_status(
                db,
                refund_request_id,
                [RefundRequestStatus.PROCESSING],
                RefundRequestStatus.APPROVED_PROCESSED,
                approved_amount=target,
                processed_at=now,
                failure_reason=None,
                reviewer_id=reviewer_id or refund_request.reviewer_id,
                reviewed_at=refund_request.reviewed_at or now,
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to settle refund request {refund_request_id}: {e}")
            raise

        settled = await self.repository.get_refund_request(db, refund_request_id)
        if not won:
            raise PaymentStateConflictError(
                f"Refund request {refund_request_id} changed to "
                f"{settled.status.value} while processing"
            )

        logger.info(
            f"Refund request {refund_request_id} processed: {target} "
            f"{split.currency} over {processor_calls} processor calls"
        )
        SplitPaymentMetrics.record_refund(
            RefundRequestStatus.APPROVED_PROCESSED.value,
            settled.reason_category.value,
            target,
            split.currency,
        )
        await dispatch_safely(
            self.dispatcher.notify_refund_status_change(
                split.id, settled.id, settled.status
            ),
            f"refund request {settled.id} status",
        )

        return await self._outcome(db, settled, processor_calls=processor_calls)

    async def _refund_payment(
        self,
        refund_request: RefundRequestRecord,
        payment: IndividualPaymentRecord,
        amount: int,
    ) -> RefundResponse:
        gateway = self._require_gateway()
        if not payment.processor_intent_id:
            return RefundResponse(
                success=False,
                status=GatewayRefundStatus.FAILED,
                error_code="missing_intent",
                error_message=f"Payment {payment.id} has no processor intent",
            )

        request = GatewayRefundRequest(
            payment_id=payment.processor_intent_id,
            amount=amount,
            reason=refund_request.reason_category.value,
            metadata={
                "refund_request_id": refund_request.id,
                "individual_payment_id": payment.id,
                "split_payment_id": refund_request.split_payment_id,
            },
            idempotency_key=f"refund-{refund_request.id}-{payment.id}",
        )
        try:
            return await gateway.create_refund(request)
        except Exception as e:
            logger.error(f"Gateway raised while refunding payment {payment.id}: {e}")
            return RefundResponse(
                success=False,
                status=GatewayRefundStatus.FAILED,
                error_code="gateway_exception",
                error_message=str(e),
            )

    async def _record_payment_refund(
        self,
        db: AsyncSession,
        refund_request: RefundRequestRecord,
        payment: IndividualPaymentRecord,
        amount: int,
        response: RefundResponse,
        now: datetime,
    ) -> bool:
        """paid -> refunded plus a ledger row, in one transaction"""
        try:
            won = await self.repository.transition_payment_status(
                db,
                payment.id,
                IndividualPaymentStatus.PAID,
                IndividualPaymentStatus.REFUNDED,
                amount_refunded=amount,
                refunded_at=now,
            )
            if not won:
                await db.rollback()
                logger.warning(
                    f"Payment {payment.id} was no longer paid when refund "
                    f"{refund_request.id} completed"
                )
                return False

            await self.repository.add_payment_refund(
                db,
                PaymentRefund(
                    refund_request_id=refund_request.id,
                    individual_payment_id=payment.id,
                    split_payment_id=refund_request.split_payment_id,
                    processor_refund_id=response.gateway_refund_id,
                    amount=amount,
                    status=(
                        PaymentRefundStatus.SUCCEEDED
                        if response.status == GatewayRefundStatus.SUCCEEDED
                        else PaymentRefundStatus.PENDING
                    ),
                ),
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to record refund of payment {payment.id}: {e}")
            raise

        await dispatch_safely(
            self.dispatcher.notify_payment_status_change(
                refund_request.split_payment_id,
                payment.id,
                IndividualPaymentStatus.REFUNDED,
            ),
            f"payment {payment.id} status",
        )
        return True

    async def _mark_processing_failed(
        self,
        db: AsyncSession,
        refund_request: RefundRequestRecord,
        message: str,
    ):
        try:
            await self.repository.transition_refund_status(
                db,
                refund_request.id,
                [RefundRequestStatus.PROCESSING],
                RefundRequestStatus.PROCESSING_FAILED,
                failure_reason=message,
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(
                f"Failed to mark refund request {refund_request.id} as failed: {e}"
            )
            raise

        logger.warning(f"Refund request {refund_request.id} failed: {message}")
        SplitPaymentMetrics.record_refund(
            RefundRequestStatus.PROCESSING_FAILED.value,
            refund_request.reason_category.value,
        )
        await dispatch_safely(
            self.dispatcher.notify_refund_status_change(
                refund_request.split_payment_id,
                refund_request.id,
                RefundRequestStatus.PROCESSING_FAILED,
            ),
            f"refund request {refund_request.id} status",
        )

    async def _outcome(
        self,
        db: AsyncSession,
        refund_request: RefundRequestRecord,
        processor_calls: int,
    ) -> RefundOutcome:
        ledger = await self.repository.list_payment_refunds(
            db, refund_request_id=refund_request.id
        )
        return RefundOutcome(
            refund_request_id=refund_request.id,
            status=refund_request.status,
            refunded_amount=sum(entry.amount for entry in ledger),
            refunds=ledger,
            processor_calls=processor_calls,
        )

    def evaluate_policy_eligibility(
        self, booking_start: datetime, now: Optional[datetime] = None
    ) -> PolicyEligibility:
        """Time-based cancellation policy relative to the booking start"""
        now = now or datetime.utcnow()
        hours_until_start = (booking_start - now).total_seconds() / 3600

        if hours_until_start >= self.config.FULL_REFUND_HOURS:
            return PolicyEligibility(
                eligible=True,
                refund_percentage=100,
                hours_until_start=hours_until_start,
                reason="Full refund available",
            )
        if hours_until_start >= self.config.PARTIAL_REFUND_HOURS:
            return PolicyEligibility(
                eligible=True,
                refund_percentage=self.config.PARTIAL_REFUND_PERCENT,
                hours_until_start=hours_until_start,
                reason="Partial refund available",
            )
        return PolicyEligibility(
            eligible=False,
            refund_percentage=0,
            hours_until_start=hours_until_start,
            reason=(
                f"Cancellations less than {self.config.PARTIAL_REFUND_HOURS} "
                "hours before the start are not refundable"
            ),
        )

    def calculate_refund_amounts(self, amount: int, refund_percentage: int) -> RefundAmounts:
        """Gross refund for a policy percentage, less the processing fee"""
        gross = Decimal(amount) * Decimal(refund_percentage) / Decimal(100)
        refund_amount = int(gross.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        processing_fee = calculate_processing_fee(
            refund_amount, self.config.REFUND_PROCESSING_FEE_PERCENT
        )
        return RefundAmounts(
            refund_amount=refund_amount,
            processing_fee=processing_fee,
            net_refund=refund_amount - processing_fee,
            refund_percentage=refund_percentage,
        )

    async def list_refund_requests(
        self,
        db: AsyncSession,
        split_payment_id: Optional[str] = None,
        status: Optional[RefundRequestStatus] = None,
        requester_id: Optional[str] = None,
    ) -> List[RefundRequestRecord]:
        return await self.repository.list_refund_requests(
            db, split_payment_id=split_payment_id, status=status, requester_id=requester_id
        )

    async def get_refund_statistics(self, db: AsyncSession) -> RefundStatistics:
        by_status = await self.repository.count_refund_requests_by(
            db, RefundRequest.status
        )
        by_reason = await self.repository.count_refund_requests_by(
            db, RefundRequest.reason_category
        )
        return RefundStatistics(
            total_requests=sum(by_status.values()),
            total_refunded=await self.repository.total_refunded(db),
            by_status=by_status,
            by_reason=by_reason,
        )


refund_service = RefundService()
