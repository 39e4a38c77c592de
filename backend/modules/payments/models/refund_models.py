# backend/modules/payments/models/refund_models.py

from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    Boolean,
    Text,
    DateTime,
    Enum as SQLEnum,
    Index,
    UniqueConstraint,
)
import enum

from core.database import Base
from core.mixins import TimestampMixin
from .split_payment_models import JSONType, generate_id


class RefundReasonCategory(str, enum.Enum):
    """Why a refund was requested"""

    BOOKING_CANCELLED = "booking_cancelled"
    VENDOR_REQUESTED = "vendor_requested"
    QUALITY_ISSUES = "quality_issues"
    EMERGENCY = "emergency"
    WEATHER = "weather"
    DUPLICATE_PAYMENT = "duplicate_payment"
    INSUFFICIENT_GROUP_PAYMENTS = "insufficient_group_payments"
    OTHER = "other"


class RefundAmountType(str, enum.Enum):
    """How the refund amount is determined"""

    FULL = "full"  # Everything paid in scope
    PARTIAL = "partial"  # Paid amount less the cancellation fee, or a custom cap
    CUSTOM = "custom"  # Explicit amount, capped at what was paid


class RefundRequestStatus(str, enum.Enum):
    """Refund request workflow states"""

    PENDING_REVIEW = "pending_review"
    UNDER_REVIEW = "under_review"
    PROCESSING = "processing"  # Claimed by one refund run; money may be moving
    APPROVED_PROCESSED = "approved_processed"  # Terminal
    DENIED = "denied"  # Terminal
    PROCESSING_FAILED = "processing_failed"  # Retriable


PROCESSABLE_REFUND_STATUSES = frozenset(
    {
        RefundRequestStatus.PENDING_REVIEW,
        RefundRequestStatus.UNDER_REVIEW,
        RefundRequestStatus.PROCESSING_FAILED,
    }
)


class PaymentRefundStatus(str, enum.Enum):
    """Processor-side refund for one individual payment"""

    SUCCEEDED = "succeeded"
    PENDING = "pending"


class RefundRequest(Base, TimestampMixin):
    """
    A request to return money collected by a split payment
    """

    __tablename__ = "refund_requests"

    id = Column(String(36), primary_key=True, default=generate_id)
    split_payment_id = Column(
        String(36), ForeignKey("split_payments.id"), nullable=False, index=True
    )
    booking_id = Column(String(100), nullable=False, index=True)

    # Scope: one participant's payment, or the whole split when null
    individual_payment_id = Column(
        String(36), ForeignKey("individual_payments.id"), nullable=True
    )

    requester_id = Column(String(100), nullable=False)
    is_system = Column(Boolean, nullable=False, default=False)

    reason_category = Column(SQLEnum(RefundReasonCategory), nullable=False)
    reason_description = Column(Text, nullable=True)

    requested_amount_type = Column(SQLEnum(RefundAmountType), nullable=False)
    custom_amount = Column(Integer, nullable=True)
    approved_amount = Column(Integer, nullable=True)

    status = Column(
        SQLEnum(RefundRequestStatus),
        nullable=False,
        default=RefundRequestStatus.PENDING_REVIEW,
        index=True,
    )

    # Review
    reviewer_id = Column(String(100), nullable=True)
    reviewer_notes = Column(Text, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)

    processed_at = Column(DateTime, nullable=True)
    failure_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_refund_request_split_status", "split_payment_id", "status"),
    )


class PaymentRefund(Base, TimestampMixin):
    """
    Ledger of processor refunds issued for a refund request, one row per
    individual payment touched
    """

    __tablename__ = "payment_refunds"

    id = Column(String(36), primary_key=True, default=generate_id)
    refund_request_id = Column(
        String(36), ForeignKey("refund_requests.id"), nullable=False, index=True
    )
    individual_payment_id = Column(
        String(36), ForeignKey("individual_payments.id"), nullable=False, index=True
    )
    split_payment_id = Column(
        String(36), ForeignKey("split_payments.id"), nullable=False
    )

    processor_refund_id = Column(String(255), nullable=True)
    amount = Column(Integer, nullable=False)
    status = Column(SQLEnum(PaymentRefundStatus), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "refund_request_id",
            "individual_payment_id",
            name="uq_payment_refund_request_payment",
        ),
    )


class DisputeStatus(str, enum.Enum):
    """Processor dispute (chargeback) states, as Stripe reports them"""

    WARNING_NEEDS_RESPONSE = "warning_needs_response"
    WARNING_UNDER_REVIEW = "warning_under_review"
    WARNING_CLOSED = "warning_closed"
    NEEDS_RESPONSE = "needs_response"
    UNDER_REVIEW = "under_review"
    WON = "won"
    LOST = "lost"
    PREVENTED = "prevented"


CLOSED_DISPUTE_STATUSES = frozenset(
    {
        DisputeStatus.WARNING_CLOSED,
        DisputeStatus.WON,
        DisputeStatus.LOST,
        DisputeStatus.PREVENTED,
    }
)


class PaymentDispute(Base, TimestampMixin):
    """
    A cardholder dispute against one charge. Rows are created and updated
    from processor webhooks only.
    """

    __tablename__ = "payment_disputes"

    id = Column(String(36), primary_key=True, default=generate_id)
    processor_dispute_id = Column(String(255), nullable=False, unique=True)
    processor_charge_id = Column(String(255), nullable=True)
    processor_intent_id = Column(String(255), nullable=True, index=True)

    # Unset when the charge did not come from a split payment
    individual_payment_id = Column(
        String(36), ForeignKey("individual_payments.id"), nullable=True, index=True
    )
    split_payment_id = Column(
        String(36), ForeignKey("split_payments.id"), nullable=True, index=True
    )

    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    reason = Column(String(100), nullable=False, default="general")
    status = Column(SQLEnum(DisputeStatus), nullable=False)

    evidence_due_by = Column(DateTime, nullable=True)
    closed_at = Column(DateTime, nullable=True)
    extra_data = Column("metadata", JSONType, nullable=True, default=dict)
