# backend/modules/payments/tests/test_currency.py

import pytest
from decimal import Decimal

import httpx

from core.memory_cache import TTLCache
from modules.payments.exceptions import (
    ExchangeRateUnavailableError,
    InvalidAmountError,
    UnsupportedCurrencyError,
)
from modules.payments.utils.currency import (
    ExchangeRateService,
    calculate_processing_fee,
    calculate_tax,
    format_amount,
    from_minor_units,
    get_currency,
    is_supported_currency,
    to_minor_units,
)


class TestMinorUnits:
    """Conversion between display amounts and minor units"""

    def test_float_amounts_are_not_truncated(self):
        assert to_minor_units(19.99, "usd") == 1999
        assert to_minor_units(0.29, "usd") == 29

    def test_half_cents_round_up(self):
        assert to_minor_units("10.005", "usd") == 1001
        assert to_minor_units(Decimal("10.004"), "usd") == 1000

    def test_zero_decimal_currency(self):
        assert to_minor_units(1500, "jpy") == 1500
        assert to_minor_units("1500.5", "jpy") == 1501

    def test_currency_code_is_case_insensitive(self):
        assert to_minor_units(5, "EUR") == 500
        assert get_currency("GBP").symbol == "£"

    @pytest.mark.parametrize("amount", ["abc", "NaN", None])
    def test_rejects_non_numbers(self, amount):
        with pytest.raises(InvalidAmountError):
            to_minor_units(amount, "usd")

    def test_rejects_unknown_currency(self):
        with pytest.raises(UnsupportedCurrencyError):
            to_minor_units(10, "xyz")
        assert not is_supported_currency("xyz")
        assert is_supported_currency("usd")

    def test_from_minor_units(self):
        assert from_minor_units(1999, "usd") == Decimal("19.99")
        assert from_minor_units(1500, "jpy") == Decimal("1500")


class TestFormatting:
    """Display formatting per currency"""

    def test_symbol_before(self):
        assert format_amount(123456, "usd") == "$1,234.56"

    def test_symbol_after(self):
        assert format_amount(5000, "sek") == "50.00 kr"

    def test_zero_decimal(self):
        assert format_amount(1500, "jpy") == "¥1,500"

    def test_code_and_no_symbol(self):
        assert format_amount(1000, "usd", show_code=True) == "$10.00 USD"
        assert format_amount(1000, "usd", show_symbol=False) == "10.00"

    def test_negative_amount(self):
        assert format_amount(-500, "usd") == "-$5.00"


class TestTaxAndFees:
    def test_regional_tax(self):
        breakdown = calculate_tax(10000, "usd")
        assert breakdown.tax == 825
        assert breakdown.total == 10825
        assert breakdown.subtotal == 10000

    def test_custom_tax_rate(self):
        assert calculate_tax(10000, "usd", custom_rate="0.1").tax == 1000

    def test_negative_tax_rate_rejected(self):
        with pytest.raises(InvalidAmountError):
            calculate_tax(10000, "usd", custom_rate=-0.1)

    def test_processing_fee(self):
        assert calculate_processing_fee(1000, 2.9, 30) == 59
        assert calculate_processing_fee(10000, 2.9, 30) == 320

    def test_processing_fee_on_nothing(self):
        assert calculate_processing_fee(0, 2.9, 30) == 0


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def rate_client(responses):
    """httpx client answering rate lookups from a list of (status, json)"""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        status, body = responses[min(len(calls), len(responses)) - 1]
        return httpx.Response(status, json=body)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler)), calls


class TestExchangeRateService:
    """Rate lookups with an injected cache"""

    @pytest.mark.asyncio
    async def test_converts_and_caches_rates(self):
        client, calls = rate_client(
            [(200, {"base": "USD", "rates": {"EUR": 0.9, "JPY": 150}})]
        )
        cache = TTLCache(ttl_seconds=60)
        service = ExchangeRateService(cache, "https://rates.test/latest", http_client=client)

        assert await service.convert(1000, "usd", "eur") == 900
        assert await service.convert(1000, "usd", "jpy") == 1500
        assert calls == ["https://rates.test/latest/USD"]
        assert cache.get_stats() == {"hits": 1, "misses": 1, "size": 1}

    @pytest.mark.asyncio
    async def test_same_currency_needs_no_lookup(self):
        client, calls = rate_client([(200, {"rates": {}})])
        service = ExchangeRateService(TTLCache(), "https://rates.test", http_client=client)

        assert await service.convert(1234, "usd", "USD") == 1234
        assert calls == []

    @pytest.mark.asyncio
    async def test_rates_expire_with_ttl(self):
        clock = FakeClock()
        client, calls = rate_client(
            [
                (200, {"rates": {"EUR": 0.9}}),
                (200, {"rates": {"EUR": 0.8}}),
            ]
        )
        service = ExchangeRateService(
            TTLCache(ttl_seconds=60, clock=clock), "https://rates.test", http_client=client
        )

        assert await service.get_rate("usd", "eur") == Decimal("0.9")
        clock.now = 61
        assert await service.get_rate("usd", "eur") == Decimal("0.8")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self):
        client, calls = rate_client([(200, {"rates": {"EUR": 0.9}})])
        service = ExchangeRateService(TTLCache(), "https://rates.test", http_client=client)

        await service.get_rates("usd")
        assert await service.invalidate("usd") is True
        await service.get_rates("usd")
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_provider_failure_raises_and_is_not_cached(self):
        client, calls = rate_client(
            [(503, {"error": "unavailable"}), (200, {"rates": {"EUR": 0.9}})]
        )
        service = ExchangeRateService(TTLCache(), "https://rates.test", http_client=client)

        with pytest.raises(ExchangeRateUnavailableError) as exc:
            await service.convert(1000, "usd", "eur")
        assert exc.value.status_code == 502
        assert exc.value.error_code == "EXCHANGE_RATE_UNAVAILABLE"

        assert await service.convert(1000, "usd", "eur") == 900
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_unquoted_currency_raises(self):
        client, _ = rate_client([(200, {"rates": {"EUR": 0.9}})])
        service = ExchangeRateService(TTLCache(), "https://rates.test", http_client=client)

        with pytest.raises(ExchangeRateUnavailableError, match="USD to GBP"):
            await service.get_rate("usd", "gbp")

    @pytest.mark.asyncio
    async def test_malformed_payload_raises(self):
        client, _ = rate_client([(200, {"rates": {"EUR": "not-a-number"}})])
        service = ExchangeRateService(TTLCache(), "https://rates.test", http_client=client)

        with pytest.raises(ExchangeRateUnavailableError):
            await service.get_rate("usd", "eur")
