# backend/modules/payments/api/webhook_endpoints.py

import logging
from typing import Any, Dict
from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.auth import get_current_user, User
from ..gateways.base import PaymentGatewayInterface
from ..services import WebhookService
from .dependencies import get_payment_gateway, get_webhook_service

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Payment Gateway"])


@router.post("/webhooks/stripe")
async def handle_stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: WebhookService = Depends(get_webhook_service),
) -> Dict[str, Any]:
    """
    Handle incoming webhooks from Stripe

    This endpoint is called by the processor and doesn't require
    authentication; the signature header is verified instead.
    """
    headers = dict(request.headers)
    body = await request.body()
    return await service.process_webhook(db, headers, body)


@router.get("/config")
async def get_gateway_config(
    current_user: User = Depends(get_current_user),
    gateway: PaymentGatewayInterface = Depends(get_payment_gateway),
) -> Dict[str, Any]:
    """Publishable gateway configuration for the frontend"""
    return gateway.get_public_config()
