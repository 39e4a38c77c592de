# backend/modules/payments/api/retry_endpoints.py

from typing import Union
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.auth import get_current_user, User
from ..schemas.split_payment_schemas import ChargeHandle
from ..schemas.refund_schemas import RefundOutcome
from ..services import RetryService
from .dependencies import get_retry_service

router = APIRouter(prefix="/retry", tags=["Retry"])


@router.post("/{operation_id}", response_model=Union[ChargeHandle, RefundOutcome])
async def retry_operation(
    operation_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: RetryService = Depends(get_retry_service),
):
    """
    Retry a failed operation

    Operation ids are ``charge:<individual_payment_id>`` for a failed
    charge and ``refund:<refund_request_id>`` for a failed refund.
    """
    return await service.retry(db, operation_id, current_user.id)
