"""
============================================================================
Unit Tests - Decimal Gateway
============================================================================

Reliability Level: SOVEREIGN TIER
Python 3.8 Compatible

Tests the money coercion layer:
- Banker's rounding at fiat, crypto, rate and percentage precision
- Zero-decimal currencies
- FB-DEC-001 / FB-DEC-002 rejection of bad input

**Feature: decimal-integrity, Money Coercion**
**Validates: Requirements 5.1, 5.2**
============================================================================
"""

import pytest
import os
import sys
from decimal import Decimal

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.exchange.decimal_gateway import (
    DecimalGateway,
    DecimalConversionError,
    to_crypto,
    to_fiat,
)


@pytest.fixture
def gateway() -> DecimalGateway:
    return DecimalGateway()


class TestRounding:

    def test_fiat_uses_bankers_rounding(self, gateway: DecimalGateway) -> None:
        assert gateway.to_fiat("2.345") == Decimal("2.34")
        assert gateway.to_fiat("2.355") == Decimal("2.36")

    def test_zero_decimal_currency(self, gateway: DecimalGateway) -> None:
        assert gateway.to_fiat("1234.5", "JPY") == Decimal("1234")
        assert gateway.to_fiat("1235.5", "jpy") == Decimal("1236")
        assert gateway.fiat_precision("KRW") == Decimal("1")
        assert gateway.fiat_precision("USD") == Decimal("0.01")

    def test_crypto_has_eight_places(self, gateway: DecimalGateway) -> None:
        assert gateway.to_crypto("0.123456789") == Decimal("0.12345679")
        assert str(gateway.to_crypto(1)) == "1.00000000"

    def test_rate_and_percentage_precision(self, gateway: DecimalGateway) -> None:
        assert gateway.to_rate("45000.123456789") == Decimal("45000.12345679")
        assert gateway.to_percentage("2.00005") == Decimal("2.0000")

    def test_float_goes_through_shortest_repr(self, gateway: DecimalGateway) -> None:
        assert gateway.to_fiat(0.1) == Decimal("0.10")

    def test_none_becomes_zero(self, gateway: DecimalGateway) -> None:
        assert gateway.to_decimal(None) == Decimal("0.00")

    def test_module_level_helpers(self) -> None:
        assert to_fiat("450.004", "USD") == Decimal("450.00")
        assert to_crypto("0.01") == Decimal("0.01000000")


class TestRejection:

    def test_unparseable_string(self, gateway: DecimalGateway) -> None:
        with pytest.raises(DecimalConversionError) as exc_info:
            gateway.parse("forty")
        assert exc_info.value.error_code == "FB-DEC-001"
        assert exc_info.value.value == "forty"

    @pytest.mark.parametrize("value", ["NaN", "Infinity", "-inf"])
    def test_non_finite(self, gateway: DecimalGateway, value: str) -> None:
        with pytest.raises(DecimalConversionError) as exc_info:
            gateway.parse(value)
        assert exc_info.value.error_code == "FB-DEC-002"

    def test_bool_and_none_rejected_by_parse(self, gateway: DecimalGateway) -> None:
        with pytest.raises(DecimalConversionError):
            gateway.parse(True)
        with pytest.raises(DecimalConversionError):
            gateway.parse(None)

    def test_out_of_range_quantize(self, gateway: DecimalGateway) -> None:
        with pytest.raises(DecimalConversionError):
            gateway.to_crypto("1e40")

    def test_conversion_error_is_value_error(self) -> None:
        assert issubclass(DecimalConversionError, ValueError)


class TestHelpers:

    def test_validate_decimal(self, gateway: DecimalGateway) -> None:
        assert gateway.validate_decimal(Decimal("1.5"), "amount") is True
        assert gateway.validate_decimal(1.5, "amount") is False
        assert gateway.validate_decimal(Decimal("NaN"), "amount") is False

    def test_format_amount(self, gateway: DecimalGateway) -> None:
        assert gateway.format_amount("1234.567", "USD") == "1,234.57 USD"
        assert gateway.format_amount("1234.5", "JPY") == "1,234 JPY"
        assert gateway.format_amount("0.5", "BTC", is_crypto=True) == "0.50000000 BTC"
