# backend/modules/payments/services/retry_service.py

import logging
from typing import Union
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import PermissionError, ValidationError
from ..exceptions import PaymentStateConflictError, UnauthorizedPayerError
from ..models.split_payment_models import IndividualPaymentStatus
from ..models.refund_models import RefundRequestStatus
from ..repositories.split_payment_repository import (
    SplitPaymentRepository,
    split_payment_repository,
)
from ..schemas.split_payment_schemas import ChargeHandle
from ..schemas.refund_schemas import RefundOutcome
from .individual_payment_service import (
    IndividualPaymentService,
    individual_payment_service,
)
from .refund_service import RefundService, refund_service

logger = logging.getLogger(__name__)

CHARGE_OPERATION = "charge"
REFUND_OPERATION = "refund"


class RetryService:
    """
    User-initiated retry of a failed charge or refund

    Operation ids are ``charge:<individual_payment_id>`` or
    ``refund:<refund_request_id>``. Preconditions are checked again on
    every retry; nothing here retries automatically.
    """

    def __init__(
        self,
        payments: IndividualPaymentService = individual_payment_service,
        refunds: RefundService = refund_service,
        repository: SplitPaymentRepository = split_payment_repository,
    ):
        self.payments = payments
        self.refunds = refunds
        self.repository = repository

    async def retry(
        self, db: AsyncSession, operation_id: str, actor_id: str
    ) -> Union[ChargeHandle, RefundOutcome]:
        kind, _, target_id = operation_id.partition(":")
        if not target_id:
            raise ValidationError(
                f"Malformed operation id: {operation_id}", error_code="INVALID_OPERATION"
            )

        if kind == CHARGE_OPERATION:
            return await self._retry_charge(db, target_id, actor_id)
        if kind == REFUND_OPERATION:
            return await self._retry_refund(db, target_id, actor_id)

        raise ValidationError(
            f"Unknown operation type: {kind}", error_code="INVALID_OPERATION"
        )

    async def _retry_charge(
        self, db: AsyncSession, individual_payment_id: str, actor_id: str
    ) -> ChargeHandle:
        try:
            payment = await self.repository.get_payment(db, individual_payment_id)
            if payment.user_id != actor_id:
                raise UnauthorizedPayerError(
                    "Only the participant who owes this payment can retry it"
                )
            if payment.status != IndividualPaymentStatus.FAILED:
                raise PaymentStateConflictError(
                    f"Payment {individual_payment_id} is {payment.status.value}; "
                    "only failed payments can be retried"
                )

            reset = await self.repository.transition_payment_status(
                db,
                individual_payment_id,
                IndividualPaymentStatus.FAILED,
                IndividualPaymentStatus.PENDING,
            )
            if not reset:
                raise PaymentStateConflictError(
                    f"Payment {individual_payment_id} changed before it could be retried"
                )
            await db.commit()

        except Exception as e:
            await db.rollback()
            logger.error(f"Failed to retry charge {individual_payment_id}: {e}")
            raise

        logger.info(f"Retrying charge for payment {individual_payment_id}")
        return await self.payments.initiate_charge(db, individual_payment_id, actor_id)

    async def _retry_refund(
        self, db: AsyncSession, refund_request_id: str, actor_id: str
    ) -> RefundOutcome:
        refund_request = await self.repository.get_refund_request(db, refund_request_id)
        split = await self.repository.get_split_payment(
            db, refund_request.split_payment_id
        )
        if actor_id not in (split.organizer_id, refund_request.requester_id):
            raise PermissionError(
                "Only the organizer or the requester can retry a refund"
            )
        if refund_request.status != RefundRequestStatus.PROCESSING_FAILED:
            raise PaymentStateConflictError(
                f"Refund request {refund_request_id} is "
                f"{refund_request.status.value}; only failed refunds can be retried"
            )

        logger.info(f"Retrying refund request {refund_request_id}")
        return await self.refunds.process_refund(db, refund_request_id)


retry_service = RetryService()
