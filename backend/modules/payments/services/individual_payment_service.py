# backend/modules/payments/services/individual_payment_service.py

import logging
import time
from typing import Optional
from datetime import datetime
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import NotFoundError
from ..config.payment_config import SplitPaymentConfig, split_payment_config
from ..exceptions import (
    AlreadyPaidError,
    AlreadyRefundedError,
    PaymentStateConflictError,
    ProcessorError,
    UnauthorizedPayerError,
)
from ..gateways.base import (
    PaymentGatewayInterface,
    PaymentRequest,
    PaymentResponse,
    GatewayPaymentStatus,
)
from ..models.split_payment_models import SplitPaymentStatus, IndividualPaymentStatus
from ..monitoring.split_payment_metrics import SplitPaymentMetrics
from ..repositories.split_payment_repository import (
    SplitPaymentRepository,
    split_payment_repository,
)
from ..schemas.split_payment_schemas import (
    ChargeHandle,
    IndividualPaymentRecord,
    SplitPaymentRecord,
)
from .notification_dispatcher import (
    NotificationDispatcher,
    dispatch_safely,
    notification_dispatcher,
)
from .refund_service import RefundService, refund_service
from .split_payment_service import SplitPaymentService, split_payment_service

logger = logging.getLogger(__name__)


class IndividualPaymentService:
    """
    Charges one participant's share through the payment gateway and
    records the processor's outcome
    """

    def __init__(
        self,
        gateway: Optional[PaymentGatewayInterface] = None,
        coordinator: SplitPaymentService = split_payment_service,
        refunds: RefundService = refund_service,
        repository: SplitPaymentRepository = split_payment_repository,
        dispatcher: NotificationDispatcher = notification_dispatcher,
        config: SplitPaymentConfig = split_payment_config,
    ):
        self.gateway = gateway
        self.coordinator = coordinator
        self.refunds = refunds
        self.repository = repository
        self.dispatcher = dispatcher
        self.config = config

    def set_gateway(self, gateway: PaymentGatewayInterface):
        self.gateway = gateway

    def _require_gateway(self) -> PaymentGatewayInterface:
        if self.gateway is None:
            raise ProcessorError("Payment gateway is not configured")
        return self.gateway

    def _check_chargeable(
        self, payment: IndividualPaymentRecord, split: SplitPaymentRecord
    ):
        if payment.status == IndividualPaymentStatus.PAID:
            raise AlreadyPaidError(payment.id)
        if payment.status == IndividualPaymentStatus.REFUNDED:
            raise AlreadyRefundedError(payment.id)
        if payment.status == IndividualPaymentStatus.PROCESSING:
            raise PaymentStateConflictError(
                f"Payment {payment.id} already has a charge in progress"
            )
        if payment.status == IndividualPaymentStatus.FAILED:
            raise PaymentStateConflictError(
                f"Payment {payment.id} failed; retry it to charge again"
            )
        if split.status == SplitPaymentStatus.CANCELLED_INSUFFICIENT:
            raise PaymentStateConflictError(
                f"Split payment {split.id} has been cancelled"
            )

    async def get_payment_for_user(
        self, db: AsyncSession, individual_payment_id: str, user_id: str
    ) -> IndividualPaymentRecord:
        """A payment as seen by its payer or the split's organizer"""
        payment = await self.repository.get_payment(db, individual_payment_id)
        if payment.user_id != user_id:
            split = await self.repository.get_split_payment(db, payment.split_payment_id)
            if split.organizer_id != user_id:
                raise UnauthorizedPayerError()
        return payment

    async def initiate_charge(
        self,
        db: AsyncSession,
        individual_payment_id: str,
        payer_id: str,
    ) -> ChargeHandle:
        """
        Start a charge for one participant's share

        The row is claimed (pending -> processing) and committed before the
        gateway is called, so a second concurrent charge for the same
        payment fails with a state conflict instead of charging twice.
        Late payments after the deadline are accepted.

        Args:
            db: Database session
            individual_payment_id: Payment to charge
            payer_id: Authenticated caller; must own the payment

        Returns:
            ChargeHandle with the processor intent id and client secret
        """
        try:
            payment = await self.repository.get_payment(db, individual_payment_id)
            if payment.user_id != payer_id:
                raise UnauthorizedPayerError(
                    "Only the participant who owes this payment can pay it"
                )

            split = await self.repository.get_split_payment(db, payment.split_payment_id)
            self._check_chargeable(payment, split)
            self._require_gateway()

            claimed = await self.repository.claim_for_charge(db, individual_payment_id)
            if not claimed:
                await db.rollback()
                current = await self.repository.get_payment(db, individual_payment_id)
                self._check_chargeable(current, split)
                raise PaymentStateConflictError(
                    f"Payment {individual_payment_id} changed while starting a charge"
                )

            await db.commit()

        except Exception as e:
            await db.rollback()
            SplitPaymentMetrics.record_charge("rejected")
            logger.error(f"Failed to start charge for payment {individual_payment_id}: {e}")
            raise

        attempt = payment.charge_attempts + 1
        request = PaymentRequest(
            amount=payment.amount_due,
            currency=split.currency,
            description=split.description or f"Share of booking {split.booking_id}",
            metadata={
                "split_payment_id": split.id,
                "individual_payment_id": payment.id,
                "user_id": payment.user_id,
                "booking_id": split.booking_id,
            },
            idempotency_key=f"charge-{payment.id}-{attempt}",
        )

        response = await self._create_intent(request)

        if not response.success or not response.gateway_payment_id:
            message = response.error_message or "Payment processor rejected the charge"
            await self._fail_charge(db, payment, message)
            SplitPaymentMetrics.record_charge("failed")
            raise ProcessorError(
                f"Charge for payment {payment.id} failed: {message}",
                processor_code=response.error_code,
            )

        try:
            await self.repository.update_payment_fields(
                db,
                payment.id,
                processor_intent_id=response.gateway_payment_id,
                client_secret=response.client_secret,
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to store intent for payment {payment.id}: {e}")
            raise

        logger.info(
            f"Charge intent {response.gateway_payment_id} created for payment "
            f"{payment.id} (attempt {attempt})"
        )
        SplitPaymentMetrics.record_charge("created")
        await dispatch_safely(
            self.dispatcher.notify_payment_status_change(
                split.id, payment.id, IndividualPaymentStatus.PROCESSING
            ),
            f"payment {payment.id} status",
        )

        status = IndividualPaymentStatus.PROCESSING
        if response.status == GatewayPaymentStatus.SUCCEEDED:
            # Processor settled synchronously; no callback will change the outcome
            status = await self.record_charge_outcome(
                db, response.gateway_payment_id, succeeded=True
            )

        return ChargeHandle(
            individual_payment_id=payment.id,
            intent_id=response.gateway_payment_id,
            client_secret=response.client_secret,
            amount=payment.amount_due,
            currency=split.currency,
            status=status,
        )

    async def _create_intent(self, request: PaymentRequest) -> PaymentResponse:
        gateway = self._require_gateway()
        started = time.monotonic()
        try:
            return await gateway.create_payment(request)
        except Exception as e:
            logger.error(f"Gateway raised while creating a charge: {e}")
            return PaymentResponse(
                success=False,
                status=GatewayPaymentStatus.FAILED,
                error_code="gateway_exception",
                error_message=str(e),
            )
        finally:
            SplitPaymentMetrics.record_gateway_latency(
                "create_payment", time.monotonic() - started
            )

    async def _fail_charge(
        self, db: AsyncSession, payment: IndividualPaymentRecord, message: str
    ):
        try:
            await self.repository.transition_payment_status(
                db,
                payment.id,
                IndividualPaymentStatus.PROCESSING,
                IndividualPaymentStatus.FAILED,
                failure_reason=message,
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to mark payment {payment.id} as failed: {e}")
            raise

        logger.warning(f"Charge for payment {payment.id} failed: {message}")
        SplitPaymentMetrics.record_payment_outcome(IndividualPaymentStatus.FAILED.value)
        await dispatch_safely(
            self.dispatcher.notify_payment_status_change(
                payment.split_payment_id, payment.id, IndividualPaymentStatus.FAILED
            ),
            f"payment {payment.id} status",
        )

    async def confirm_charge(
        self, db: AsyncSession, individual_payment_id: str, payer_id: str
    ) -> IndividualPaymentStatus:
        """
        Ask the processor for the outcome of a charge in progress

        Used by the payer's client after confirming the intent, when the
        webhook may not have arrived yet. Payments that are not processing
        are returned unchanged.
        """
        payment = await self.repository.get_payment(db, individual_payment_id)
        if payment.user_id != payer_id:
            raise UnauthorizedPayerError(
                "Only the participant who owes this payment can confirm it"
            )
        if (
            payment.status != IndividualPaymentStatus.PROCESSING
            or not payment.processor_intent_id
        ):
            return payment.status

        gateway = self._require_gateway()
        started = time.monotonic()
        try:
            response = await gateway.confirm_payment(payment.processor_intent_id)
        except Exception as e:
            logger.error(f"Gateway raised while confirming payment {payment.id}: {e}")
            raise ProcessorError(f"Could not confirm payment {payment.id}: {e}")
        finally:
            SplitPaymentMetrics.record_gateway_latency(
                "confirm_payment", time.monotonic() - started
            )

        if not response.success:
            raise ProcessorError(
                f"Could not confirm payment {payment.id}: {response.error_message}",
                processor_code=response.error_code,
            )

        if response.status == GatewayPaymentStatus.SUCCEEDED:
            return await self.record_charge_outcome(
                db, payment.processor_intent_id, succeeded=True
            )
        if response.status in (
            GatewayPaymentStatus.FAILED,
            GatewayPaymentStatus.CANCELLED,
        ):
            return await self.record_charge_outcome(
                db,
                payment.processor_intent_id,
                succeeded=False,
                failure_reason=f"Payment {response.status.value} at processor",
            )
        return payment.status

    async def record_charge_outcome(
        self,
        db: AsyncSession,
        intent_id: str,
        succeeded: bool,
        failure_reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> IndividualPaymentStatus:
        """
        Apply the processor's verdict on a charge intent

        Only a payment still in processing is changed; repeated or late
        callbacks are ignored. A success re-evaluates the split, and a
        payment that lands after the split was cancelled is refunded.

        Returns:
            The payment's status after the callback
        """
        now = now or datetime.utcnow()
        try:
            payment = await self.repository.get_payment_by_intent(db, intent_id)
            if payment is None:
                raise NotFoundError(f"No payment found for intent {intent_id}")

            if payment.status != IndividualPaymentStatus.PROCESSING:
                logger.info(
                    f"Ignoring outcome for intent {intent_id}: payment "
                    f"{payment.id} is {payment.status.value}"
                )
                return payment.status

            if succeeded:
                new_status = IndividualPaymentStatus.PAID
                won = await self.repository.transition_payment_status(
                    db,
                    payment.id,
                    IndividualPaymentStatus.PROCESSING,
                    new_status,
                    paid_at=now,
                    amount_paid=payment.amount_due,
                    failure_reason=None,
                )
            else:
                new_status = IndividualPaymentStatus.FAILED
                won = await self.repository.transition_payment_status(
                    db,
                    payment.id,
                    IndividualPaymentStatus.PROCESSING,
                    new_status,
                    failure_reason=failure_reason or "Payment failed",
                )

            if not won:
                await db.rollback()
                current = await self.repository.get_payment(db, payment.id)
                return current.status

            await db.commit()

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to record outcome for intent {intent_id}: {e}")
            raise

        logger.info(f"Payment {payment.id} is now {new_status.value}")
        SplitPaymentMetrics.record_payment_outcome(new_status.value)
        await dispatch_safely(
            self.dispatcher.notify_payment_status_change(
                payment.split_payment_id, payment.id, new_status
            ),
            f"payment {payment.id} status",
        )

        if succeeded:
            decision = await self.coordinator.evaluate_completion(
                db, payment.split_payment_id, now
            )
            if decision.status == SplitPaymentStatus.CANCELLED_INSUFFICIENT:
                await self.refunds.refund_late_payment(
                    db, payment.split_payment_id, payment.id
                )

        current = await self.repository.get_payment(db, payment.id)
        return current.status


individual_payment_service = IndividualPaymentService()
