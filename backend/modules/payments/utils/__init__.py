# backend/modules/payments/utils/__init__.py

from .currency import (
    CurrencyInfo,
    TaxBreakdown,
    SUPPORTED_CURRENCIES,
    ExchangeRateService,
    apply_rate,
    get_currency,
    is_supported_currency,
    to_minor_units,
    from_minor_units,
    format_amount,
    get_tax_rate,
    calculate_tax,
    calculate_processing_fee,
)
