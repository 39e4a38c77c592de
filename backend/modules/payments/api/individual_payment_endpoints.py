# backend/modules/payments/api/individual_payment_endpoints.py

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.auth import get_current_user, User
from ..schemas.split_payment_schemas import (
    ChargeHandle,
    IndividualPaymentResponse,
    ReminderResponse,
)
from ..services import IndividualPaymentService, SplitPaymentService
from .dependencies import get_individual_payment_service, get_split_payment_service

router = APIRouter(prefix="/individual", tags=["Individual Payments"])


@router.get("/{individual_payment_id}", response_model=IndividualPaymentResponse)
async def get_individual_payment(
    individual_payment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: IndividualPaymentService = Depends(get_individual_payment_service),
):
    """One payment, visible to its payer and the split's organizer"""
    payment = await service.get_payment_for_user(
        db, individual_payment_id, current_user.id
    )
    return IndividualPaymentResponse(**payment.model_dump())


@router.post("/{individual_payment_id}/charge", response_model=ChargeHandle)
async def charge_individual_payment(
    individual_payment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: IndividualPaymentService = Depends(get_individual_payment_service),
):
    """
    Start paying a share

    Returns the processor intent and client secret the frontend uses to
    confirm the payment.
    """
    return await service.initiate_charge(db, individual_payment_id, current_user.id)


@router.post("/{individual_payment_id}/confirm", response_model=IndividualPaymentResponse)
async def confirm_individual_payment(
    individual_payment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: IndividualPaymentService = Depends(get_individual_payment_service),
):
    """Sync a charge in progress with the processor; payer only"""
    await service.confirm_charge(db, individual_payment_id, current_user.id)
    payment = await service.get_payment_for_user(
        db, individual_payment_id, current_user.id
    )
    return IndividualPaymentResponse(**payment.model_dump())


@router.post("/{individual_payment_id}/remind", response_model=ReminderResponse)
async def remind_individual_payment(
    individual_payment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SplitPaymentService = Depends(get_split_payment_service),
):
    """Send a payment reminder; organizer only"""
    return await service.request_reminder(
        db, individual_payment_id, requested_by=current_user.id
    )
