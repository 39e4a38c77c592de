# backend/modules/payments/api/refund_endpoints.py

from typing import List, Optional
from datetime import datetime
from fastapi import APIRouter, Depends, Query, Body
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.auth import get_current_user, require_roles, User
from ..models.refund_models import RefundRequestStatus
from ..schemas.refund_schemas import (
    RefundRequestCreate,
    RefundRequestRecord,
    RefundRequestResponse,
    RefundReviewRequest,
    RefundOutcome,
    RefundStatistics,
    RefundPolicyQuote,
)
from ..services import RefundService, SplitPaymentService
from .dependencies import get_refund_service, get_split_payment_service

router = APIRouter(prefix="/refunds", tags=["Refunds"])


@router.post("", response_model=RefundRequestResponse, status_code=201)
async def create_refund_request(
    data: RefundRequestCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: RefundService = Depends(get_refund_service),
):
    """
    Request a refund

    Participants can only request refunds of their own payment; the
    organizer can request one for the whole split or any participant.
    """
    refund_request = await service.create_refund_request(db, current_user.id, data)
    eligible_amount = await service.evaluate_refund_eligibility(db, refund_request)
    return RefundRequestResponse(
        **refund_request.model_dump(), eligible_amount=eligible_amount
    )


@router.get("", response_model=List[RefundRequestRecord])
async def list_refund_requests(
    split_payment_id: Optional[str] = Query(None),
    status: Optional[RefundRequestStatus] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: RefundService = Depends(get_refund_service),
    splits: SplitPaymentService = Depends(get_split_payment_service),
):
    """
    Refund requests for a split the caller belongs to, or the caller's own
    requests when no split is given
    """
    requester_id = None
    if not current_user.is_admin:
        if split_payment_id:
            await splits.check_member(db, split_payment_id, current_user.id)
        else:
            requester_id = current_user.id

    return await service.list_refund_requests(
        db, split_payment_id=split_payment_id, status=status, requester_id=requester_id
    )


@router.get("/statistics", response_model=RefundStatistics)
async def get_refund_statistics(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_roles(["admin"])),
    service: RefundService = Depends(get_refund_service),
):
    """Refund totals by status and reason; admin only"""
    return await service.get_refund_statistics(db)


@router.get("/policy", response_model=RefundPolicyQuote)
async def get_refund_policy_quote(
    booking_start: datetime = Query(..., description="Booking start time (UTC)"),
    amount: Optional[int] = Query(None, gt=0, description="Paid amount in minor units"),
    current_user: User = Depends(get_current_user),
    service: RefundService = Depends(get_refund_service),
):
    """Advisory refund percentage for cancelling now"""
    if booking_start.tzinfo is not None:
        booking_start = booking_start.replace(tzinfo=None) - booking_start.utcoffset()

    eligibility = service.evaluate_policy_eligibility(booking_start)
    amounts = None
    if amount is not None:
        amounts = service.calculate_refund_amounts(amount, eligibility.refund_percentage)
    return RefundPolicyQuote(eligibility=eligibility, amounts=amounts)


@router.post("/{refund_request_id}/review", response_model=RefundRequestRecord)
async def start_refund_review(
    refund_request_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: RefundService = Depends(get_refund_service),
):
    """Move a refund request into review"""
    await service.check_reviewer(
        db, refund_request_id, current_user.id, current_user.is_admin
    )
    return await service.start_review(db, refund_request_id, current_user.id)


@router.post("/{refund_request_id}/deny", response_model=RefundRequestRecord)
async def deny_refund_request(
    refund_request_id: str,
    review: Optional[RefundReviewRequest] = Body(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: RefundService = Depends(get_refund_service),
):
    """Deny a refund request"""
    await service.check_reviewer(
        db, refund_request_id, current_user.id, current_user.is_admin
    )
    return await service.deny_refund_request(
        db, refund_request_id, current_user.id, review.notes if review else None
    )


@router.post("/{refund_request_id}/process", response_model=RefundOutcome)
async def process_refund_request(
    refund_request_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: RefundService = Depends(get_refund_service),
):
    """
    Approve a refund request and issue the processor refunds

    Safe to call again: an already processed request returns its outcome
    without refunding twice.
    """
    await service.check_reviewer(
        db, refund_request_id, current_user.id, current_user.is_admin
    )
    return await service.process_refund(
        db, refund_request_id, reviewer_id=current_user.id
    )
