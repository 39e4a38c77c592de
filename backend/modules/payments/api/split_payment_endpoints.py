# backend/modules/payments/api/split_payment_endpoints.py

import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.auth import get_current_user, verify_token, User
from core.exceptions import APIError
from ..realtime.split_payment_feed import split_payment_feed
from ..schemas.split_payment_schemas import (
    SplitPaymentCreate,
    SplitPaymentDetails,
    SplitPaymentRecord,
    CompletionDecision,
    ConvertedSplitAmounts,
)
from ..services import SplitPaymentService
from .dependencies import get_split_payment_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/splits", tags=["Split Payments"])


@router.post("", response_model=SplitPaymentDetails, status_code=201)
async def create_split_payment(
    data: SplitPaymentCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SplitPaymentService = Depends(get_split_payment_service),
):
    """
    Create a split payment

    The caller becomes the organizer and the first participant. Every
    participant gets an individual payment for their share.
    """
    return await service.create_split_payment(db, current_user.id, data)


@router.get("", response_model=List[SplitPaymentRecord])
async def list_split_payments(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SplitPaymentService = Depends(get_split_payment_service),
):
    """Split payments the caller organizes or participates in"""
    return await service.list_split_payments_for_user(db, current_user.id)


@router.get("/{split_payment_id}", response_model=SplitPaymentDetails)
async def get_split_payment(
    split_payment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SplitPaymentService = Depends(get_split_payment_service),
):
    """Split payment details; the aggregate status is re-evaluated on read"""
    viewer_id = None if current_user.is_admin else current_user.id
    return await service.get_split_payment_details(
        db, split_payment_id, viewer_id=viewer_id
    )


@router.get("/{split_payment_id}/convert", response_model=ConvertedSplitAmounts)
async def convert_split_payment(
    split_payment_id: str,
    currency: str = Query(..., description="Currency code to quote the amounts in"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SplitPaymentService = Depends(get_split_payment_service),
):
    """
    Split amounts in another currency at the current exchange rate

    Display only; payments are still charged in the split's currency.
    Returns 502 when no exchange rate is available.
    """
    viewer_id = None if current_user.is_admin else current_user.id
    return await service.convert_split_amounts(
        db, split_payment_id, currency, viewer_id=viewer_id
    )


@router.post("/{split_payment_id}/evaluate", response_model=CompletionDecision)
async def evaluate_split_payment(
    split_payment_id: str,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
    service: SplitPaymentService = Depends(get_split_payment_service),
):
    """Re-evaluate the aggregate status now"""
    if not current_user.is_admin:
        await service.check_member(db, split_payment_id, current_user.id)
    return await service.evaluate_completion(db, split_payment_id)


@router.websocket("/{split_payment_id}/ws")
async def split_payment_websocket(
    websocket: WebSocket,
    split_payment_id: str,
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    service: SplitPaymentService = Depends(get_split_payment_service),
):
    """
    Status updates for one split payment

    Query parameters:
    - token: JWT access token

    Message types:
    - split_status: aggregate status changed
    - payment_status: an individual payment changed
    - refund_status: a refund request changed
    """
    token_data = verify_token(token) if token else None
    if token_data is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Not authenticated")
        return

    if "admin" not in token_data.roles:
        try:
            await service.check_member(db, split_payment_id, token_data.user_id)
        except APIError as e:
            logger.warning(
                f"WebSocket access denied for user {token_data.user_id} "
                f"to split payment {split_payment_id}: {e.detail}"
            )
            await websocket.close(
                code=status.WS_1008_POLICY_VIOLATION, reason="Policy violation"
            )
            return

    await split_payment_feed.connect(websocket, split_payment_id, token_data.user_id)
    try:
        while True:
            # Clients only listen; incoming frames keep the connection alive
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        split_payment_feed.disconnect(websocket)
