# backend/modules/payments/config/payment_config.py

from typing import List, Optional, Dict, Any
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, model_validator
from enum import Enum


class PaymentEnvironment(str, Enum):
    """Payment system environment"""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class SplitPaymentConfig(BaseSettings):
    """Split payment policy and processor configuration"""

    # Environment
    PAYMENT_ENVIRONMENT: PaymentEnvironment = Field(
        default=PaymentEnvironment.DEVELOPMENT, description="Payment system environment"
    )

    # Completion policy
    MINIMUM_THRESHOLD: float = Field(
        default=0.8,
        description="Fraction of the total that must be paid by the deadline for the booking to proceed",
    )
    MAX_GROUP_SIZE: int = Field(
        default=20, description="Maximum participants in one split payment"
    )
    MIN_DEADLINE_HOURS: int = Field(
        default=24, description="Minimum hours between creation and payment deadline"
    )
    MAX_DEADLINE_HOURS: int = Field(
        default=168, description="Maximum hours between creation and payment deadline"
    )
    DEFAULT_CURRENCY: str = Field(default="usd", description="Default currency code")

    # Reminders
    REMINDER_SCHEDULE_HOURS: List[int] = Field(
        default=[72, 24, 2],
        description="Hours before the deadline at which automatic reminders go out",
    )
    MAX_REMINDERS: int = Field(
        default=6, description="Maximum reminders per individual payment"
    )

    # Platform fees
    PROCESSING_FEE_PERCENT: float = Field(
        default=2.9, description="Processor percentage fee"
    )
    PROCESSING_FEE_FIXED: int = Field(
        default=30, description="Processor fixed fee in minor units"
    )
    DEFAULT_FEE_HANDLING: str = Field(
        default="organizer",
        description="Who absorbs processing fees: organizer, split or participants",
    )

    # Refund policy
    REFUND_CANCELLATION_FEE_PERCENT: float = Field(
        default=0.0,
        description="Percent withheld from partial refunds without an explicit amount",
    )
    REFUND_PROCESSING_FEE_PERCENT: float = Field(
        default=2.9, description="Processing fee deducted when computing net refunds"
    )
    FULL_REFUND_HOURS: int = Field(
        default=48, description="Hours before booking start for a full refund"
    )
    PARTIAL_REFUND_HOURS: int = Field(
        default=24, description="Hours before booking start for a partial refund"
    )
    PARTIAL_REFUND_PERCENT: int = Field(
        default=50, description="Percent refunded inside the partial refund window"
    )

    # Exchange rates
    EXCHANGE_RATE_URL: str = Field(
        default="https://api.exchangerate-api.com/v4/latest",
        description="Base URL for exchange rate lookups",
    )
    EXCHANGE_RATE_TTL_SECONDS: int = Field(
        default=3600, description="Exchange rate cache TTL"
    )
    EXCHANGE_RATE_TIMEOUT_SECONDS: float = Field(
        default=5.0, description="Exchange rate HTTP timeout"
    )

    # Stripe
    STRIPE_SECRET_KEY: Optional[str] = Field(
        default=None, description="Stripe secret API key"
    )
    STRIPE_PUBLISHABLE_KEY: Optional[str] = Field(
        default=None, description="Stripe publishable key"
    )
    STRIPE_WEBHOOK_SECRET: Optional[str] = Field(
        default=None, description="Stripe webhook signing secret"
    )

    class Config:
        env_prefix = "SPLIT_PAYMENT_"
        case_sensitive = False

    @field_validator("MINIMUM_THRESHOLD", mode="after")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        """Threshold is a fraction of the total"""
        if not 0 < v <= 1:
            raise ValueError("Minimum threshold must be in (0, 1]")
        return v

    @field_validator("REMINDER_SCHEDULE_HOURS", mode="after")
    @classmethod
    def validate_reminder_schedule(cls, v: List[int]) -> List[int]:
        """Schedule must be positive hours, furthest first"""
        if any(hours <= 0 for hours in v):
            raise ValueError("Reminder schedule hours must be positive")
        if v != sorted(v, reverse=True):
            raise ValueError("Reminder schedule must be sorted in descending order")
        return v

    @field_validator("DEFAULT_FEE_HANDLING", mode="after")
    @classmethod
    def validate_fee_handling(cls, v: str) -> str:
        if v not in ("organizer", "split", "participants"):
            raise ValueError("Fee handling must be organizer, split or participants")
        return v

    @model_validator(mode="after")
    def validate_windows(self):
        """Validate deadline and refund windows"""
        if self.MIN_DEADLINE_HOURS >= self.MAX_DEADLINE_HOURS:
            raise ValueError("Minimum deadline must be shorter than maximum deadline")
        if self.PARTIAL_REFUND_HOURS > self.FULL_REFUND_HOURS:
            raise ValueError("Partial refund window cannot exceed full refund window")

        if self.PAYMENT_ENVIRONMENT == PaymentEnvironment.PRODUCTION:
            if not self.STRIPE_SECRET_KEY or not self.STRIPE_WEBHOOK_SECRET:
                raise ValueError("Stripe keys must be configured in production")

        return self

    def get_stripe_settings(self) -> Dict[str, Any]:
        """Gateway configuration dict for StripeGateway"""
        return {
            "secret_key": self.STRIPE_SECRET_KEY,
            "publishable_key": self.STRIPE_PUBLISHABLE_KEY,
            "webhook_secret": self.STRIPE_WEBHOOK_SECRET,
            "fee_percentage": self.PROCESSING_FEE_PERCENT,
            "fee_fixed": self.PROCESSING_FEE_FIXED,
        }

    def is_production(self) -> bool:
        """Check if running in production"""
        return self.PAYMENT_ENVIRONMENT == PaymentEnvironment.PRODUCTION


split_payment_config = SplitPaymentConfig()
