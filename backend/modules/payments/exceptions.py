# backend/modules/payments/exceptions.py

from core.exceptions import (
    ConflictError,
    PermissionError,
    UpstreamError,
    ValidationError,
)


class InvalidAmountError(ValidationError):
    """Amount is missing, non-positive or does not add up"""

    def __init__(self, detail: str = "Invalid amount"):
        super().__init__(detail=detail, error_code="INVALID_AMOUNT")


class InvalidParticipantsError(ValidationError):
    """Participant list is empty, too large or contains duplicates"""

    def __init__(self, detail: str = "Invalid participants"):
        super().__init__(detail=detail, error_code="INVALID_PARTICIPANTS")


class UnsupportedCurrencyError(ValidationError):
    def __init__(self, currency: str):
        super().__init__(
            detail=f"Unsupported currency: {currency}",
            error_code="UNSUPPORTED_CURRENCY",
        )


class UnauthorizedPayerError(PermissionError):
    """Caller is not the participant the payment belongs to"""

    def __init__(self, detail: str = "Caller is not authorized for this payment"):
        super().__init__(detail=detail, error_code="UNAUTHORIZED")


class AlreadyPaidError(ConflictError):
    def __init__(self, payment_id: str):
        super().__init__(
            detail=f"Payment {payment_id} is already paid", error_code="ALREADY_PAID"
        )


class AlreadyRefundedError(ConflictError):
    def __init__(self, payment_id: str):
        super().__init__(
            detail=f"Payment {payment_id} has been refunded",
            error_code="ALREADY_REFUNDED",
        )


class PaymentStateConflictError(ConflictError):
    """Row is not in the state the operation requires"""

    def __init__(self, detail: str):
        super().__init__(detail=detail, error_code="STATE_CONFLICT")


class ReminderLimitError(ConflictError):
    def __init__(self, payment_id: str, limit: int):
        super().__init__(
            detail=f"Payment {payment_id} reached the limit of {limit} reminders",
            error_code="REMINDER_LIMIT",
        )


class NothingToRefundError(ValidationError):
    def __init__(self, detail: str = "No paid payments to refund"):
        super().__init__(detail=detail, error_code="NOTHING_TO_REFUND")


class ProcessorError(UpstreamError):
    """Wraps any payment processor failure; the processor's message is kept"""

    def __init__(self, detail: str, processor_code: str = None):
        super().__init__(detail, error_code="PROCESSOR_ERROR")
        self.processor_code = processor_code


class StoreError(UpstreamError):
    """Wraps any database failure; the driver's message is kept"""

    def __init__(self, detail: str):
        super().__init__(detail, error_code="STORE_ERROR", status_code=503)


class ExchangeRateUnavailableError(UpstreamError):
    """No usable exchange rate; the provider failed or does not quote the pair"""

    def __init__(self, detail: str):
        super().__init__(detail, error_code="EXCHANGE_RATE_UNAVAILABLE")
