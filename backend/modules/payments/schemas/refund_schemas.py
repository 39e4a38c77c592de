# backend/modules/payments/schemas/refund_schemas.py

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime

from ..models.refund_models import (
    RefundReasonCategory,
    RefundAmountType,
    RefundRequestStatus,
    PaymentRefundStatus,
    DisputeStatus,
)


class RefundRequestRecord(BaseModel):
    """Refund request row as seen by the services"""
    id: str
    split_payment_id: str
    booking_id: str
    individual_payment_id: Optional[str] = None
    requester_id: str
    is_system: bool = False
    reason_category: RefundReasonCategory
    reason_description: Optional[str] = None
    requested_amount_type: RefundAmountType
    custom_amount: Optional[int] = None
    approved_amount: Optional[int] = None
    status: RefundRequestStatus
    reviewer_id: Optional[str] = None
    reviewer_notes: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentRefundRecord(BaseModel):
    """Processor refund ledger row"""
    id: str
    refund_request_id: str
    individual_payment_id: str
    split_payment_id: str
    processor_refund_id: Optional[str] = None
    amount: int
    status: PaymentRefundStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RefundOutcome(BaseModel):
    """Result of processing a refund request"""
    refund_request_id: str
    status: RefundRequestStatus
    refunded_amount: int
    refunds: List[PaymentRefundRecord] = Field(default_factory=list)
    processor_calls: int = 0


class PolicyEligibility(BaseModel):
    """Time-based refund policy result"""
    eligible: bool
    refund_percentage: int
    hours_until_start: float
    reason: str


class RefundAmounts(BaseModel):
    refund_amount: int
    processing_fee: int
    net_refund: int
    refund_percentage: int


class RefundStatistics(BaseModel):
    total_requests: int
    total_refunded: int
    by_status: Dict[str, int]
    by_reason: Dict[str, int]


# API schemas

class RefundRequestCreate(BaseModel):
    """Schema for requesting a refund"""
    split_payment_id: str
    individual_payment_id: Optional[str] = Field(
        None, description="Limit the refund to one participant's payment"
    )
    reason_category: RefundReasonCategory
    reason_description: Optional[str] = None
    requested_amount_type: RefundAmountType = RefundAmountType.FULL
    custom_amount: Optional[int] = Field(None, description="Minor units")


class RefundReviewRequest(BaseModel):
    notes: Optional[str] = None


class RefundRequestResponse(RefundRequestRecord):
    eligible_amount: Optional[int] = None


class RefundPolicyQuote(BaseModel):
    """Advisory refund quote for a cancellation at a given time"""
    eligibility: PolicyEligibility
    amounts: Optional[RefundAmounts] = None


class PaymentDisputeRecord(BaseModel):
    """Processor dispute row"""
    id: str
    processor_dispute_id: str
    processor_charge_id: Optional[str] = None
    processor_intent_id: Optional[str] = None
    individual_payment_id: Optional[str] = None
    split_payment_id: Optional[str] = None
    amount: int
    currency: str
    reason: str
    status: DisputeStatus
    evidence_due_by: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    extra_data: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentDisputeResponse(PaymentDisputeRecord):
    """Dispute with the evidence the processor expects for its reason"""
    evidence_requirements: List[str] = Field(default_factory=list)
