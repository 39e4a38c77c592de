# backend/modules/payments/api/dispute_endpoints.py

from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.auth import require_roles, User
from ..models.refund_models import DisputeStatus
from ..schemas.refund_schemas import PaymentDisputeResponse
from ..services import DisputeService
from .dependencies import get_dispute_service

router = APIRouter(prefix="/disputes", tags=["Disputes"])


@router.get("", response_model=List[PaymentDisputeResponse])
async def list_disputes(
    split_payment_id: Optional[str] = Query(None),
    status: Optional[DisputeStatus] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(["admin"])),
    service: DisputeService = Depends(get_dispute_service),
):
    """Chargebacks reported by the processor, newest first; admin only"""
    return await service.list_disputes(
        db, split_payment_id=split_payment_id, status=status
    )


@router.get("/{dispute_id}", response_model=PaymentDisputeResponse)
async def get_dispute(
    dispute_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(["admin"])),
    service: DisputeService = Depends(get_dispute_service),
):
    """One dispute with the evidence its reason calls for; admin only"""
    return await service.get_dispute(db, dispute_id)
