# backend/modules/payments/models/split_payment_models.py

from sqlalchemy import (
    Column,
    Integer,
    String,
    ForeignKey,
    Text,
    DateTime,
    JSON,
    Enum as SQLEnum,
    Index,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
import enum
import uuid

from core.database import Base
from core.mixins import TimestampMixin

JSONType = JSON().with_variant(JSONB, "postgresql")


def generate_id() -> str:
    return str(uuid.uuid4())


class SplitType(str, enum.Enum):
    """How the total is divided among participants"""
    EQUAL = "equal"  # floor(total / n), remainder to the first participants
    CUSTOM = "custom"  # Explicit per-participant amounts summing to the total


class FeeHandling(str, enum.Enum):
    """Who absorbs the processor fee"""
    ORGANIZER = "organizer"  # Deducted from the organizer's payout
    SPLIT = "split"  # Deducted from the collected total
    PARTICIPANTS = "participants"  # Added on top of each share


class SplitPaymentStatus(str, enum.Enum):
    """Aggregate status of a split payment"""
    PENDING = "pending"  # Nobody has paid yet
    PARTIALLY_PAID = "partially_paid"  # At least one participant has paid
    COMPLETED = "completed"  # Every participant has paid
    COMPLETED_PARTIAL = "completed_partial"  # Deadline passed, threshold met
    CANCELLED_INSUFFICIENT = "cancelled_insufficient"  # Deadline passed, threshold missed


TERMINAL_SPLIT_STATUSES = frozenset(
    {
        SplitPaymentStatus.COMPLETED,
        SplitPaymentStatus.COMPLETED_PARTIAL,
        SplitPaymentStatus.CANCELLED_INSUFFICIENT,
    }
)


class IndividualPaymentStatus(str, enum.Enum):
    """Charge lifecycle of one participant's share"""
    PENDING = "pending"  # No charge attempt in flight
    PROCESSING = "processing"  # Intent created, waiting for the processor
    PAID = "paid"  # Processor confirmed the charge
    FAILED = "failed"  # Last attempt failed; retry re-enters pending
    REFUNDED = "refunded"  # Money returned to the participant


# Allowed status moves for an individual payment
INDIVIDUAL_PAYMENT_TRANSITIONS = {
    IndividualPaymentStatus.PENDING: {IndividualPaymentStatus.PROCESSING},
    IndividualPaymentStatus.PROCESSING: {
        IndividualPaymentStatus.PAID,
        IndividualPaymentStatus.FAILED,
    },
    IndividualPaymentStatus.FAILED: {IndividualPaymentStatus.PENDING},
    IndividualPaymentStatus.PAID: {IndividualPaymentStatus.REFUNDED},
    IndividualPaymentStatus.REFUNDED: set(),
}


class SplitPayment(Base, TimestampMixin):
    """
    A booking's cost shared by a group. Rows are never deleted; the status
    records the outcome.
    """
    __tablename__ = "split_payments"

    id = Column(String(36), primary_key=True, default=generate_id)
    booking_id = Column(String(100), nullable=False, index=True)
    organizer_id = Column(String(100), nullable=False, index=True)
    vendor_account_id = Column(String(100), nullable=True)

    # Amounts are integer minor units
    total_amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    split_type = Column(SQLEnum(SplitType), nullable=False, default=SplitType.EQUAL)
    participant_count = Column(Integer, nullable=False)

    fee_handling = Column(
        SQLEnum(FeeHandling), nullable=False, default=FeeHandling.ORGANIZER
    )
    platform_fee = Column(Integer, nullable=False, default=0)

    payment_deadline = Column(DateTime, nullable=False)
    description = Column(Text, nullable=True)

    status = Column(
        SQLEnum(SplitPaymentStatus),
        nullable=False,
        default=SplitPaymentStatus.PENDING,
        index=True,
    )
    completed_at = Column(DateTime, nullable=True)

    extra_data = Column("metadata", JSONType, nullable=True, default=dict)

    __table_args__ = (
        Index("idx_split_payment_status_deadline", "status", "payment_deadline"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SPLIT_STATUSES


class IndividualPayment(Base, TimestampMixin):
    """
    One participant's share of a split payment
    """
    __tablename__ = "individual_payments"

    id = Column(String(36), primary_key=True, default=generate_id)
    split_payment_id = Column(
        String(36), ForeignKey("split_payments.id"), nullable=False, index=True
    )
    user_id = Column(String(100), nullable=False, index=True)

    # Share order: organizer first, then join order
    position = Column(Integer, nullable=False)

    amount_due = Column(Integer, nullable=False)
    amount_paid = Column(Integer, nullable=False, default=0)
    amount_refunded = Column(Integer, nullable=False, default=0)

    status = Column(
        SQLEnum(IndividualPaymentStatus),
        nullable=False,
        default=IndividualPaymentStatus.PENDING,
        index=True,
    )

    # Processor
    processor_intent_id = Column(String(255), nullable=True, unique=True)
    client_secret = Column(String(255), nullable=True)
    charge_attempts = Column(Integer, nullable=False, default=0)
    failure_reason = Column(Text, nullable=True)

    payment_deadline = Column(DateTime, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    # Reminders
    reminder_count = Column(Integer, nullable=False, default=0)
    last_reminder_at = Column(DateTime, nullable=True)
    last_reminder_window = Column(Integer, nullable=True)  # Hours before deadline

    __table_args__ = (
        Index("idx_individual_payment_split_status", "split_payment_id", "status"),
        UniqueConstraint(
            "split_payment_id", "user_id", name="uq_individual_payment_participant"
        ),
    )


class PaymentWebhookEvent(Base, TimestampMixin):
    """
    Processor webhook events already handled, keyed by the processor's event id
    """
    __tablename__ = "payment_webhook_events"

    id = Column(String(36), primary_key=True, default=generate_id)
    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    processor_intent_id = Column(String(255), nullable=True, index=True)
    processed_at = Column(DateTime, nullable=True)
    payload = Column(JSONType, nullable=True)
