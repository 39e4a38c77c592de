# backend/modules/payments/api/__init__.py

from fastapi import APIRouter
from .split_payment_endpoints import router as split_payment_router
from .individual_payment_endpoints import router as individual_payment_router
from .refund_endpoints import router as refund_router
from .retry_endpoints import router as retry_router
from .webhook_endpoints import router as webhook_router
from .dispute_endpoints import router as dispute_router

# Create main payment router
payment_router = APIRouter()

# Include sub-routers
payment_router.include_router(split_payment_router)
payment_router.include_router(individual_payment_router)
payment_router.include_router(refund_router)
payment_router.include_router(retry_router)
payment_router.include_router(webhook_router)
payment_router.include_router(dispute_router)

__all__ = ['payment_router']
