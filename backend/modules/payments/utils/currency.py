# backend/modules/payments/utils/currency.py

"""
Currency and amount helpers.

All amounts that cross service boundaries are integer minor units
(cents for USD). Decimal display amounts only exist at the edges: user
input and formatted output.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Optional, Union

import httpx

from core.memory_cache import TTLCache
from ..exceptions import (
    ExchangeRateUnavailableError,
    InvalidAmountError,
    UnsupportedCurrencyError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CurrencyInfo:
    code: str
    symbol: str
    name: str
    decimals: int
    symbol_position: str  # "before" or "after"
    tax_rate: Decimal


@dataclass(frozen=True)
class TaxBreakdown:
    subtotal: int
    tax: int
    total: int
    rate: Decimal


SUPPORTED_CURRENCIES: Dict[str, CurrencyInfo] = {
    "usd": CurrencyInfo("usd", "$", "US Dollar", 2, "before", Decimal("0.0825")),
    "eur": CurrencyInfo("eur", "€", "Euro", 2, "before", Decimal("0.20")),
    "gbp": CurrencyInfo("gbp", "£", "British Pound", 2, "before", Decimal("0.20")),
    "cad": CurrencyInfo("cad", "C$", "Canadian Dollar", 2, "before", Decimal("0.13")),
    "aud": CurrencyInfo("aud", "A$", "Australian Dollar", 2, "before", Decimal("0.10")),
    "jpy": CurrencyInfo("jpy", "¥", "Japanese Yen", 0, "before", Decimal("0.08")),
    "chf": CurrencyInfo("chf", "CHF", "Swiss Franc", 2, "before", Decimal("0.077")),
    "sek": CurrencyInfo("sek", "kr", "Swedish Krona", 2, "after", Decimal("0.25")),
    "dkk": CurrencyInfo("dkk", "kr", "Danish Krone", 2, "after", Decimal("0.25")),
    "nok": CurrencyInfo("nok", "kr", "Norwegian Krone", 2, "after", Decimal("0.25")),
}

AmountInput = Union[Decimal, int, str, float]


def get_currency(code: str) -> CurrencyInfo:
    """Look up a supported currency, case-insensitively."""
    info = SUPPORTED_CURRENCIES.get((code or "").lower())
    if info is None:
        raise UnsupportedCurrencyError(code)
    return info


def is_supported_currency(code: str) -> bool:
    return (code or "").lower() in SUPPORTED_CURRENCIES


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_minor_units(amount: AmountInput, currency: str) -> int:
    """
    Convert a display amount to integer minor units.

    Floats are routed through ``str`` so that ``19.99`` becomes 1999 and
    not 1998.
    """
    info = get_currency(currency)
    try:
        value = Decimal(str(amount)) if isinstance(amount, float) else Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmountError(f"Amount {amount!r} is not a number")

    if not value.is_finite():
        raise InvalidAmountError(f"Amount {amount!r} is not finite")

    return _round_half_up(value.scaleb(info.decimals))


def from_minor_units(minor: int, currency: str) -> Decimal:
    """Convert integer minor units to a Decimal display amount."""
    info = get_currency(currency)
    exponent = Decimal(1).scaleb(-info.decimals)
    return Decimal(int(minor)).scaleb(-info.decimals).quantize(exponent)


def format_amount(
    minor: int,
    currency: str,
    show_symbol: bool = True,
    show_code: bool = False,
) -> str:
    """
    Format minor units for display, e.g. ``format_amount(123456, "usd")``
    gives ``"$1,234.56"`` and ``format_amount(5000, "sek")`` gives
    ``"50.00 kr"``.
    """
    info = get_currency(currency)
    value = from_minor_units(minor, currency)
    sign = "-" if value < 0 else ""
    number = f"{abs(value):,.{info.decimals}f}"

    if not show_symbol:
        formatted = f"{sign}{number}"
    elif info.symbol_position == "before":
        formatted = f"{sign}{info.symbol}{number}"
    else:
        formatted = f"{sign}{number} {info.symbol}"

    if show_code:
        formatted = f"{formatted} {info.code.upper()}"
    return formatted


def get_tax_rate(currency: str) -> Decimal:
    return get_currency(currency).tax_rate


def calculate_tax(
    minor: int, currency: str, custom_rate: Optional[AmountInput] = None
) -> TaxBreakdown:
    """Regional tax on an amount in minor units, rounded half-up."""
    rate = (
        Decimal(str(custom_rate)) if custom_rate is not None else get_tax_rate(currency)
    )
    if rate < 0:
        raise InvalidAmountError("Tax rate cannot be negative")

    tax = _round_half_up(Decimal(int(minor)) * rate)
    return TaxBreakdown(subtotal=minor, tax=tax, total=minor + tax, rate=rate)


def calculate_processing_fee(
    minor: int, percent: AmountInput, fixed_minor: int = 0
) -> int:
    """Processor fee for a charge: ``percent`` of the amount plus a fixed part."""
    if minor <= 0:
        return 0
    variable = Decimal(int(minor)) * Decimal(str(percent)) / Decimal(100)
    return _round_half_up(variable) + int(fixed_minor)


def apply_rate(minor: int, from_currency: str, to_currency: str, rate: Decimal) -> int:
    """Convert minor units at a known rate, honoring each currency's decimals."""
    display = from_minor_units(minor, from_currency) * rate
    return to_minor_units(display, to_currency)


class ExchangeRateService:
    """
    Exchange rate lookups with an injected TTL cache.

    Rates are cached per base currency. A failed lookup is not cached and
    raises ``ExchangeRateUnavailableError``; amounts are never quoted at a
    guessed rate.
    """

    def __init__(
        self,
        cache: TTLCache,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ):
        self.cache = cache
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client
        self.timeout = timeout

    def _cache_key(self, base_currency: str) -> str:
        return f"exchange_rates:{base_currency.lower()}"

    async def _fetch_rates(self, base_currency: str) -> Dict[str, Decimal]:
        url = f"{self.base_url}/{base_currency.upper()}"
        if self.http_client is not None:
            response = await self.http_client.get(url, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url)
        response.raise_for_status()

        data = response.json()
        rates = data.get("rates") or data.get("conversion_rates") or {}
        return {code.lower(): Decimal(str(rate)) for code, rate in rates.items()}

    async def get_rates(self, base_currency: str) -> Dict[str, Decimal]:
        get_currency(base_currency)
        key = self._cache_key(base_currency)

        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        try:
            rates = await self._fetch_rates(base_currency)
        except (httpx.HTTPError, ValueError, InvalidOperation) as e:
            logger.warning(f"Exchange rate lookup for {base_currency} failed: {e}")
            raise ExchangeRateUnavailableError(
                f"Exchange rates for {base_currency.upper()} are unavailable"
            ) from e

        await self.cache.set(key, rates)
        return rates

    async def get_rate(self, from_currency: str, to_currency: str) -> Decimal:
        get_currency(to_currency)
        if from_currency.lower() == to_currency.lower():
            return Decimal(1)

        rates = await self.get_rates(from_currency)
        rate = rates.get(to_currency.lower())
        if rate is None or rate <= 0:
            raise ExchangeRateUnavailableError(
                f"No exchange rate from {from_currency.upper()} to {to_currency.upper()}"
            )
        return rate

    async def convert(self, minor: int, from_currency: str, to_currency: str) -> int:
        """Convert minor units between currencies, honoring decimal places."""
        if from_currency.lower() == to_currency.lower():
            return minor

        rate = await self.get_rate(from_currency, to_currency)
        return apply_rate(minor, from_currency, to_currency, rate)

    async def invalidate(self, base_currency: str) -> bool:
        return await self.cache.invalidate(self._cache_key(base_currency))
