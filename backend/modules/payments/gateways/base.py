# backend/modules/payments/gateways/base.py

from abc import ABC, abstractmethod
from typing import Dict, Any, Optional, Tuple
from datetime import datetime
from dataclasses import dataclass
from enum import Enum

from ..utils.currency import calculate_processing_fee


class GatewayPaymentStatus(str, Enum):
    """Processor-side state of a payment intent"""
    PENDING = "pending"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class GatewayRefundStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PaymentRequest:
    """Charge intent for one share; amounts are integer minor units"""
    amount: int
    currency: str = "usd"
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None


@dataclass
class PaymentResponse:
    """
    Outcome of an intent call. ``success`` is False only when the
    processor rejected the call; an intent still awaiting confirmation is
    a success with a non-terminal ``status``.
    """
    success: bool
    gateway_payment_id: Optional[str] = None
    client_secret: Optional[str] = None
    status: GatewayPaymentStatus = GatewayPaymentStatus.PENDING
    amount: Optional[int] = None
    currency: Optional[str] = None
    processed_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None


@dataclass
class RefundRequest:
    payment_id: str  # Processor intent id
    amount: Optional[int] = None  # None refunds the whole intent
    reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    idempotency_key: Optional[str] = None


@dataclass
class RefundResponse:
    success: bool
    gateway_refund_id: Optional[str] = None
    status: GatewayRefundStatus = GatewayRefundStatus.PENDING
    amount: Optional[int] = None
    currency: Optional[str] = None
    processed_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw_response: Optional[Dict[str, Any]] = None


class PaymentGatewayInterface(ABC):
    """
    What the payment services need from a processor: intents, refunds and
    signed callbacks. Implementations return failed responses for
    processor-side rejections instead of raising.
    """

    def __init__(self, config: Dict[str, Any], test_mode: bool = True):
        self.config = config
        self.test_mode = test_mode

    @abstractmethod
    async def create_payment(self, request: PaymentRequest) -> PaymentResponse:
        """Create an intent the payer confirms client-side"""
        pass

    @abstractmethod
    async def confirm_payment(self, payment_id: str) -> PaymentResponse:
        """Current processor state of an intent; does not move money"""
        pass

    @abstractmethod
    async def create_refund(self, request: RefundRequest) -> RefundResponse:
        """
        Refund all or part of a settled intent. Repeating a call with the
        same idempotency key must not refund twice.
        """
        pass

    @abstractmethod
    async def verify_webhook(
        self, headers: Dict[str, str], body: bytes
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """
        Check a callback's signature

        Returns:
            (is_valid, event payload); the payload is None when invalid
        """
        pass

    @abstractmethod
    def get_public_config(self) -> Dict[str, Any]:
        """Publishable settings the frontend needs to confirm intents"""
        pass

    def calculate_fee(self, amount: int) -> Tuple[int, int]:
        """(fee, net) for a charge of ``amount`` minor units"""
        fee = calculate_processing_fee(
            amount,
            self.config.get("fee_percentage", 2.9),
            self.config.get("fee_fixed", 30),
        )
        return fee, amount - fee
