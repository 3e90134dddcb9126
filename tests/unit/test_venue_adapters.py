"""
============================================================================
Unit Tests - HTTP Venue Adapters
============================================================================

Reliability Level: SOVEREIGN TIER
Python 3.8 Compatible

Tests the requests-based venue adapters against a mocked session:
- Ticker, balance and order parsing per venue
- HTTP status mapping to FB-VEN-00x errors
- Read retries with backoff, no retries on order placement

**Feature: venue-adapters, HTTP Transport**
**Validates: Requirements 6.1, 6.4, 6.5**
============================================================================
"""

import pytest
import base64
import json
import os
import sys
from decimal import Decimal
from typing import Any
from unittest.mock import Mock, patch

import requests

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.exchange.venue_adapter import (
    VenueAPIError,
    VenueAuthError,
    VenueNotAvailable,
    VenueOrderRejected,
    VenueResponseError,
    VenueTimeout,
)
from app.exchange.venues import (
    BinanceAdapter,
    CoinbaseAdapter,
    KrakenAdapter,
    ValrAdapter,
    create_venue_adapters,
)
from services.conversion_config import VenueSettings


BASE_URL = "https://venue.test"


# =============================================================================
# Helpers
# =============================================================================

def make_settings(name: str, **overrides: Any) -> VenueSettings:
    settings = VenueSettings(
        name=name,
        enabled=True,
        api_key="test-key-123456",
        api_secret=base64.b64encode(b"test-secret").decode("utf-8"),
        base_url=BASE_URL,
        rate_limit_per_second=100,
    )
    for key, value in overrides.items():
        setattr(settings, key, value)
    return settings


def make_response(status: int = 200, payload: Any = None, invalid_json: bool = False) -> Mock:
    response = Mock()
    response.status_code = status
    response.text = "not json" if invalid_json else json.dumps(payload)
    if invalid_json:
        response.json = Mock(side_effect=ValueError("No JSON object could be decoded"))
    else:
        response.json = Mock(return_value=payload)
    return response


def make_session(*responses: Any) -> Mock:
    session = Mock()
    session.request = Mock(side_effect=list(responses))
    return session


@pytest.fixture(autouse=True)
def no_sleep():
    with patch("app.exchange.venue_adapter.time.sleep") as sleep:
        yield sleep


# =============================================================================
# Transport
# =============================================================================

class TestTransport:

    def test_status_codes_map_to_errors(self) -> None:
        for status, error in ((401, VenueAuthError), (403, VenueAuthError), (400, VenueOrderRejected)):
            adapter = CoinbaseAdapter(make_settings("coinbase"), session=make_session(
                make_response(status, {"message": "nope"})
            ))
            with pytest.raises(error) as exc_info:
                adapter.get_rate("BTC", "USD")
            assert exc_info.value.status_code == status

    def test_invalid_json_raises_response_error(self) -> None:
        adapter = CoinbaseAdapter(
            make_settings("coinbase"), session=make_session(make_response(invalid_json=True))
        )
        with pytest.raises(VenueResponseError) as exc_info:
            adapter.get_rate("BTC", "USD")
        assert str(exc_info.value).startswith("FB-VEN-002")

    def test_reads_retry_server_errors(self, no_sleep: Mock) -> None:
        session = make_session(make_response(503, {}), make_response(200, {"price": "45000"}))
        adapter = CoinbaseAdapter(make_settings("coinbase"), session=session)

        assert adapter.get_rate("BTC", "USD") == Decimal("45000")
        assert session.request.call_count == 2
        assert no_sleep.call_count == 1

    def test_reads_give_up_after_max_retries(self) -> None:
        session = make_session(*[make_response(500, {}) for _ in range(3)])
        adapter = CoinbaseAdapter(make_settings("coinbase"), session=session)

        with pytest.raises(VenueAPIError):
            adapter.get_rate("BTC", "USD")
        assert session.request.call_count == CoinbaseAdapter.MAX_RETRIES

    def test_read_timeouts_surface_as_venue_timeout(self) -> None:
        session = make_session(*[requests.exceptions.Timeout() for _ in range(3)])
        adapter = CoinbaseAdapter(make_settings("coinbase"), session=session)

        with pytest.raises(VenueTimeout):
            adapter.get_rate("BTC", "USD")

    def test_order_timeout_is_not_retried(self) -> None:
        session = make_session(requests.exceptions.Timeout())
        adapter = CoinbaseAdapter(make_settings("coinbase"), session=session)

        with pytest.raises(VenueTimeout):
            adapter.execute("BTC", "USD", Decimal("0.01"))
        assert session.request.call_count == 1

    def test_order_server_error_is_not_retried(self) -> None:
        session = make_session(make_response(503, {}))
        adapter = CoinbaseAdapter(make_settings("coinbase"), session=session)

        with pytest.raises(VenueAPIError):
            adapter.execute("BTC", "USD", Decimal("0.01"))
        assert session.request.call_count == 1

    def test_request_carries_timeout(self) -> None:
        session = make_session(make_response(200, {"price": "1"}))
        adapter = CoinbaseAdapter(make_settings("coinbase", timeout_seconds=7), session=session)
        adapter.get_rate("ETH", "EUR")

        args, kwargs = session.request.call_args
        assert args == ("GET", f"{BASE_URL}/products/ETH-EUR/ticker")
        assert kwargs["timeout"] == 7.0

    def test_context_manager_closes_session(self) -> None:
        session = Mock()
        with CoinbaseAdapter(make_settings("coinbase"), session=session):
            pass
        session.close.assert_called_once()


# =============================================================================
# Coinbase
# =============================================================================

class TestCoinbase:

    def test_lightning_btc_uses_btc_product(self) -> None:
        session = make_session(make_response(200, {"price": "45000.5"}))
        adapter = CoinbaseAdapter(make_settings("coinbase"), session=session)

        assert adapter.get_rate("BTC-LN", "USD") == Decimal("45000.5")
        assert session.request.call_args[0][1] == f"{BASE_URL}/products/BTC-USD/ticker"

    def test_missing_price(self) -> None:
        adapter = CoinbaseAdapter(
            make_settings("coinbase"), session=make_session(make_response(200, {"bid": "1"}))
        )
        with pytest.raises(VenueResponseError):
            adapter.get_rate("BTC", "USD")

    def test_execute_parses_fill(self) -> None:
        session = make_session(make_response(200, {
            "id": "cb-order-1",
            "filled_size": "0.01",
            "executed_value": "450.00",
            "fill_fees": "2.70",
        }))
        adapter = CoinbaseAdapter(make_settings("coinbase"), session=session)
        receipt = adapter.execute("BTC", "USD", Decimal("0.01"))

        assert receipt.external_ref == "cb-order-1"
        assert receipt.filled_amount == Decimal("0.01")
        assert receipt.average_price == Decimal("45000")
        assert receipt.fee == Decimal("2.70")

        kwargs = session.request.call_args[1]
        body = json.loads(kwargs["data"])
        assert body["side"] == "sell"
        assert body["size"] == "0.01"
        assert "CB-ACCESS-SIGN" in kwargs["headers"]

    def test_execute_without_id_is_rejected(self) -> None:
        adapter = CoinbaseAdapter(
            make_settings("coinbase"), session=make_session(make_response(200, {"message": "x"}))
        )
        with pytest.raises(VenueOrderRejected):
            adapter.execute("BTC", "USD", Decimal("0.01"))

    def test_disabled_adapter_never_sends_orders(self) -> None:
        session = make_session()
        adapter = CoinbaseAdapter(make_settings("coinbase", enabled=False), session=session)

        assert adapter.is_available() is False
        with pytest.raises(VenueNotAvailable):
            adapter.execute("BTC", "USD", Decimal("0.01"))
        session.request.assert_not_called()

    def test_balances(self) -> None:
        adapter = CoinbaseAdapter(make_settings("coinbase"), session=make_session(make_response(200, [
            {"currency": "BTC", "available": "0.5", "hold": "0.1"},
        ])))
        balances = adapter.get_balances()
        assert balances[0].currency == "BTC"
        assert balances[0].total == Decimal("0.6")


# =============================================================================
# Kraken
# =============================================================================

class TestKraken:

    def test_ticker_uses_xbt_alias(self) -> None:
        session = make_session(make_response(200, {
            "error": [],
            "result": {"XXBTZUSD": {"c": ["45010.1", "0.002"]}},
        }))
        adapter = KrakenAdapter(make_settings("kraken"), session=session)

        assert adapter.get_rate("BTC", "USD") == Decimal("45010.1")
        assert session.request.call_args[1]["params"] == {"pair": "XBTUSD"}

    def test_error_list_is_rejection(self) -> None:
        adapter = KrakenAdapter(make_settings("kraken"), session=make_session(
            make_response(200, {"error": ["EOrder:Insufficient funds"], "result": {}})
        ))
        with pytest.raises(VenueOrderRejected):
            adapter.execute("BTC", "USD", Decimal("0.01"))

    def test_execute_returns_txid(self) -> None:
        session = make_session(make_response(200, {
            "error": [], "result": {"txid": ["OQCLML-BW3P3-BUCMWZ"]},
        }))
        adapter = KrakenAdapter(make_settings("kraken"), session=session)
        receipt = adapter.execute("BTC", "EUR", Decimal("0.25"))

        assert receipt.external_ref == "OQCLML-BW3P3-BUCMWZ"
        kwargs = session.request.call_args[1]
        assert "API-Sign" in kwargs["headers"]
        assert "volume=0.25" in kwargs["data"]

    def test_balances(self) -> None:
        adapter = KrakenAdapter(make_settings("kraken"), session=make_session(make_response(200, {
            "error": [], "result": {"XXBT": "1.5", "ZUSD": "1000.00"},
        })))
        balances = {b.currency: b for b in adapter.get_balances()}
        assert balances["ZUSD"].available == Decimal("1000.00")
        assert balances["XXBT"].reserved == Decimal("0")


# =============================================================================
# Binance & VALR
# =============================================================================

class TestBinance:

    def test_execute_sums_fiat_commissions(self) -> None:
        session = make_session(make_response(200, {
            "orderId": 12345,
            "executedQty": "0.02",
            "cummulativeQuoteQty": "900.00",
            "fills": [
                {"commission": "0.45", "commissionAsset": "USD"},
                {"commission": "0.45", "commissionAsset": "USD"},
                {"commission": "0.00001", "commissionAsset": "BNB"},
            ],
        }))
        adapter = BinanceAdapter(make_settings("binance"), session=session)
        receipt = adapter.execute("BTC", "USD", Decimal("0.02"))

        assert receipt.external_ref == "12345"
        assert receipt.average_price == Decimal("45000")
        assert receipt.fee == Decimal("0.90")
        params = session.request.call_args[1]["params"]
        assert params["side"] == "SELL"
        assert "signature" in params

    def test_ticker(self) -> None:
        session = make_session(make_response(200, {"symbol": "BTCUSD", "price": "44990.00"}))
        adapter = BinanceAdapter(make_settings("binance"), session=session)
        assert adapter.get_rate("BTC", "USD") == Decimal("44990.00")


class TestValr:

    def test_ticker_and_non_numeric_price(self) -> None:
        adapter = ValrAdapter(make_settings("valr"), session=make_session(
            make_response(200, {"lastTradedPrice": "812000"}),
            make_response(200, {"lastTradedPrice": "n/a"}),
        ))
        assert adapter.get_rate("BTC", "ZAR") == Decimal("812000")
        with pytest.raises(VenueResponseError):
            adapter.get_rate("BTC", "ZAR")

    def test_execute(self) -> None:
        session = make_session(make_response(200, {"id": "valr-7"}))
        adapter = ValrAdapter(make_settings("valr"), session=session)
        receipt = adapter.execute("BTC", "ZAR", Decimal("0.1"))

        assert receipt.external_ref == "valr-7"
        assert json.loads(session.request.call_args[1]["data"])["pair"] == "BTCZAR"


# =============================================================================
# Factory
# =============================================================================

class TestFactory:

    def test_unknown_venues_are_skipped(self) -> None:
        adapters = create_venue_adapters(
            {
                "coinbase": make_settings("coinbase"),
                "manual": make_settings("manual"),
            },
            session=Mock(),
        )
        assert list(adapters) == ["coinbase"]
        assert isinstance(adapters["coinbase"], CoinbaseAdapter)

    def test_availability_requires_credentials(self) -> None:
        adapter = KrakenAdapter(make_settings("kraken", api_secret=""), session=Mock())
        assert adapter.is_available() is False
