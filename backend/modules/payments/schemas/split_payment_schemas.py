# backend/modules/payments/schemas/split_payment_schemas.py

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime
from decimal import Decimal

from ..models.split_payment_models import (
    SplitType,
    FeeHandling,
    SplitPaymentStatus,
    IndividualPaymentStatus,
    TERMINAL_SPLIT_STATUSES,
)


# Records decoded at the store boundary

class SplitPaymentRecord(BaseModel):
    """Split payment row as seen by the services"""
    id: str
    booking_id: str
    organizer_id: str
    vendor_account_id: Optional[str] = None
    total_amount: int
    currency: str
    split_type: SplitType
    participant_count: int
    fee_handling: FeeHandling
    platform_fee: int = 0
    payment_deadline: datetime
    description: Optional[str] = None
    status: SplitPaymentStatus
    completed_at: Optional[datetime] = None
    extra_data: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SPLIT_STATUSES


class IndividualPaymentRecord(BaseModel):
    """Individual payment row as seen by the services"""
    id: str
    split_payment_id: str
    user_id: str
    position: int
    amount_due: int
    amount_paid: int = 0
    amount_refunded: int = 0
    status: IndividualPaymentStatus
    processor_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    charge_attempts: int = 0
    failure_reason: Optional[str] = None
    payment_deadline: datetime
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    reminder_count: int = 0
    last_reminder_at: Optional[datetime] = None
    last_reminder_window: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Service results

class PaymentStats(BaseModel):
    """Aggregate view over a split's individual payments"""
    total_due: int
    total_paid: int
    total_refunded: int = 0
    paid_count: int = 0
    pending_count: int = 0
    processing_count: int = 0
    failed_count: int = 0
    refunded_count: int = 0
    completion_percentage: float = 0.0
    meets_minimum_threshold: bool = False


class CompletionDecision(BaseModel):
    """Outcome of one completion evaluation"""
    split_payment_id: str
    status: SplitPaymentStatus
    previous_status: SplitPaymentStatus
    transitioned: bool = False
    stats: PaymentStats
    refund_request_ids: List[str] = Field(default_factory=list)


class ChargeHandle(BaseModel):
    """Processor intent handle returned to the payer"""
    individual_payment_id: str
    intent_id: str
    client_secret: Optional[str] = None
    amount: int
    currency: str
    status: IndividualPaymentStatus


# API schemas

class SplitPaymentCreate(BaseModel):
    """Schema for creating a split payment"""
    booking_id: str
    total_amount: int = Field(..., description="Total in minor units")
    currency: str = Field("usd", description="Currency code")
    split_type: SplitType = SplitType.EQUAL
    participant_ids: List[str] = Field(
        ..., description="Participant user ids in join order"
    )
    custom_amounts: Optional[Dict[str, int]] = Field(
        None, description="Per-participant amounts for custom splits"
    )
    payment_deadline: datetime
    fee_handling: Optional[FeeHandling] = None
    vendor_account_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(default_factory=dict)


class IndividualPaymentResponse(IndividualPaymentRecord):
    """Individual payment without the client secret"""
    client_secret: Optional[str] = Field(None, exclude=True)
    amount_due_display: Optional[str] = None


class SplitPaymentDetails(BaseModel):
    """Split payment with its individual payments and stats"""
    split_payment: SplitPaymentRecord
    payments: List[IndividualPaymentResponse]
    stats: PaymentStats
    total_display: Optional[str] = None


class ReminderResponse(BaseModel):
    individual_payment_id: str
    reminder_count: int
    last_reminder_at: datetime


class ConvertedShare(BaseModel):
    individual_payment_id: str
    user_id: str
    amount_due: int
    amount_paid: int
    amount_due_display: str


class ConvertedSplitAmounts(BaseModel):
    """
    A split's amounts quoted in another currency

    Each amount is converted and rounded on its own, so the shares can
    differ from the converted total by a minor unit. Charges always use
    the split's own currency.
    """
    split_payment_id: str
    from_currency: str
    currency: str
    rate: Decimal
    total_amount: int
    total_display: str
    shares: List[ConvertedShare]
