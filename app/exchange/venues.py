# ============================================================================
# Fiat Bridge v1.0.0
# Venue Adapters - Coinbase, Kraken, Binance, VALR
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: The subset of each venue API the gateway contract needs
#
# Endpoints used:
#   Coinbase: GET /products/{BTC-USD}/ticker, GET /accounts, POST /orders
#   Kraken:   GET /0/public/Ticker, POST /0/private/Balance,
#             POST /0/private/AddOrder
#   Binance:  GET /api/v3/ticker/price, GET /api/v3/account,
#             POST /api/v3/order
#   VALR:     GET /v1/public/{pair}/marketsummary, GET /v1/account/balances,
#             POST /v1/orders/market
#
# ============================================================================

import logging
import uuid
from decimal import Decimal
from typing import Optional, Dict, List, Any, Type
from urllib.parse import urlencode

import requests

from app.exchange.hmac_signer import (
    BinanceSigner,
    CoinbaseSigner,
    KrakenSigner,
    VALRSigner,
)
from app.exchange.venue_adapter import (
    ExecutionReceipt,
    HTTPVenueAdapter,
    VenueAdapter,
    VenueBalance,
    VenueOrderRejected,
    VenueResponseError,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Coinbase
# ============================================================================

class CoinbaseAdapter(HTTPVenueAdapter):

    def _signer(self) -> CoinbaseSigner:
        self._require_available()
        return CoinbaseSigner(
            self.settings.api_key,
            self.settings.api_secret,
            self.settings.passphrase,
            self.correlation_id,
        )

    def product_id(self, crypto_currency: str, fiat_currency: str) -> str:
        return f"{self.asset(crypto_currency)}-{fiat_currency.upper()}"

    def get_rate(self, crypto_currency: str, fiat_currency: str) -> Decimal:
        path = f"/products/{self.product_id(crypto_currency, fiat_currency)}/ticker"
        data = self._request("GET", path)
        if not isinstance(data, dict) or "price" not in data:
            raise VenueResponseError("coinbase ticker missing price", payload=data)
        return self._decimal(data["price"], "price")

    def get_balances(self) -> List[VenueBalance]:
        path = "/accounts"
        headers = self._signer().sign_request("GET", path)
        data = self._request("GET", path, headers=headers)
        return [
            self._balance(item.get("currency", ""), item.get("available"), item.get("hold"))
            for item in data or []
        ]

    def execute(
        self,
        crypto_currency: str,
        fiat_currency: str,
        amount: Decimal,
        side: str = "sell"
    ) -> ExecutionReceipt:
        path = "/orders"
        body = self._json_body({
            "type": "market",
            "side": side.lower(),
            "product_id": self.product_id(crypto_currency, fiat_currency),
            "size": str(amount),
            "client_oid": str(uuid.uuid4()),
        })
        headers = self._signer().sign_request("POST", path, body)
        headers["Content-Type"] = "application/json"
        data = self._request("POST", path, headers=headers, body=body, retry=False)
        if not isinstance(data, dict) or not data.get("id"):
            raise VenueOrderRejected("coinbase order response missing id", payload=data)

        filled = self._decimal(data.get("filled_size") or "0", "filled_size")
        executed_value = self._decimal(data.get("executed_value") or "0", "executed_value")
        return ExecutionReceipt(
            external_ref=str(data["id"]),
            venue=self.name,
            filled_amount=filled or None,
            average_price=(executed_value / filled) if filled else None,
            fee=self._decimal(data["fill_fees"], "fill_fees") if data.get("fill_fees") else None,
            raw=data,
        )

    def test_connection(self) -> bool:
        self._request("GET", "/time")
        return True


# ============================================================================
# Kraken
# ============================================================================

class KrakenAdapter(HTTPVenueAdapter):

    ASSET_ALIASES = {"BTC": "XBT"}

    def _signer(self) -> KrakenSigner:
        self._require_available()
        return KrakenSigner(self.settings.api_key, self.settings.api_secret, self.correlation_id)

    def pair(self, crypto_currency: str, fiat_currency: str) -> str:
        asset = self.asset(crypto_currency)
        return f"{self.ASSET_ALIASES.get(asset, asset)}{fiat_currency.upper()}"

    def _result(self, data: Any) -> Any:
        if not isinstance(data, dict):
            raise VenueResponseError("kraken response is not an object", payload=data)
        errors = data.get("error") or []
        if errors:
            raise VenueOrderRejected(f"kraken error: {', '.join(errors)}", payload=data)
        return data.get("result") or {}

    def _private(self, path: str, fields: Dict[str, str], retry: bool) -> Any:
        headers = self._signer().sign_request(path, fields)
        headers["Content-Type"] = "application/x-www-form-urlencoded"
        return self._result(
            self._request("POST", path, headers=headers, body=urlencode(fields), retry=retry)
        )

    def get_rate(self, crypto_currency: str, fiat_currency: str) -> Decimal:
        result = self._result(
            self._request(
                "GET", "/0/public/Ticker",
                params={"pair": self.pair(crypto_currency, fiat_currency)},
            )
        )
        if not result:
            raise VenueResponseError("kraken ticker returned no pairs")
        ticker = next(iter(result.values()))
        try:
            last = ticker["c"][0]
        except (KeyError, IndexError, TypeError) as e:
            raise VenueResponseError("kraken ticker missing last trade", payload=ticker) from e
        return self._decimal(last, "last trade price")

    def get_balances(self) -> List[VenueBalance]:
        result = self._private("/0/private/Balance", {}, retry=False)
        return [self._balance(currency, amount, "0") for currency, amount in result.items()]

    def execute(
        self,
        crypto_currency: str,
        fiat_currency: str,
        amount: Decimal,
        side: str = "sell"
    ) -> ExecutionReceipt:
        result = self._private(
            "/0/private/AddOrder",
            {
                "pair": self.pair(crypto_currency, fiat_currency),
                "type": side.lower(),
                "ordertype": "market",
                "volume": str(amount),
            },
            retry=False,
        )
        txids = result.get("txid") or []
        if not txids:
            raise VenueOrderRejected("kraken order response missing txid", payload=result)
        return ExecutionReceipt(external_ref=str(txids[0]), venue=self.name, raw=result)

    def test_connection(self) -> bool:
        self._result(self._request("GET", "/0/public/Time"))
        return True


# ============================================================================
# Binance
# ============================================================================

class BinanceAdapter(HTTPVenueAdapter):

    def _signer(self) -> BinanceSigner:
        self._require_available()
        return BinanceSigner(self.settings.api_key, self.settings.api_secret, self.correlation_id)

    def symbol(self, crypto_currency: str, fiat_currency: str) -> str:
        return f"{self.asset(crypto_currency)}{fiat_currency.upper()}"

    def get_rate(self, crypto_currency: str, fiat_currency: str) -> Decimal:
        data = self._request(
            "GET", "/api/v3/ticker/price",
            params={"symbol": self.symbol(crypto_currency, fiat_currency)},
        )
        if not isinstance(data, dict) or "price" not in data:
            raise VenueResponseError("binance ticker missing price", payload=data)
        return self._decimal(data["price"], "price")

    def get_balances(self) -> List[VenueBalance]:
        signer = self._signer()
        data = self._request(
            "GET", "/api/v3/account",
            params=signer.sign_params({}),
            headers=signer.headers(),
        )
        return [
            self._balance(item.get("asset", ""), item.get("free"), item.get("locked"))
            for item in (data or {}).get("balances", [])
        ]

    def execute(
        self,
        crypto_currency: str,
        fiat_currency: str,
        amount: Decimal,
        side: str = "sell"
    ) -> ExecutionReceipt:
        signer = self._signer()
        params = signer.sign_params({
            "symbol": self.symbol(crypto_currency, fiat_currency),
            "side": side.upper(),
            "type": "MARKET",
            "quantity": str(amount),
        })
        data = self._request(
            "POST", "/api/v3/order", params=params, headers=signer.headers(), retry=False
        )
        if not isinstance(data, dict) or "orderId" not in data:
            raise VenueOrderRejected("binance order response missing orderId", payload=data)

        filled = self._decimal(data.get("executedQty") or "0", "executedQty")
        quote = self._decimal(data.get("cummulativeQuoteQty") or "0", "cummulativeQuoteQty")
        commissions = [
            self._decimal(fill.get("commission") or "0", "commission")
            for fill in data.get("fills") or []
            if fill.get("commissionAsset", "").upper() == fiat_currency.upper()
        ]
        return ExecutionReceipt(
            external_ref=str(data["orderId"]),
            venue=self.name,
            filled_amount=filled or None,
            average_price=(quote / filled) if filled else None,
            fee=sum(commissions, Decimal("0")) if commissions else None,
            raw=data,
        )

    def test_connection(self) -> bool:
        self._request("GET", "/api/v3/ping")
        return True


# ============================================================================
# VALR
# ============================================================================

class ValrAdapter(HTTPVenueAdapter):

    def _signer(self) -> VALRSigner:
        self._require_available()
        return VALRSigner(self.settings.api_key, self.settings.api_secret, self.correlation_id)

    def pair(self, crypto_currency: str, fiat_currency: str) -> str:
        return f"{self.asset(crypto_currency)}{fiat_currency.upper()}"

    def get_rate(self, crypto_currency: str, fiat_currency: str) -> Decimal:
        path = f"/v1/public/{self.pair(crypto_currency, fiat_currency)}/marketsummary"
        data = self._request("GET", path)
        if not isinstance(data, dict) or "lastTradedPrice" not in data:
            raise VenueResponseError("valr summary missing lastTradedPrice", payload=data)
        return self._decimal(data["lastTradedPrice"], "lastTradedPrice")

    def get_balances(self) -> List[VenueBalance]:
        path = "/v1/account/balances"
        headers = self._signer().sign_request("GET", path)
        data = self._request("GET", path, headers=headers)
        return [
            self._balance(item.get("currency", ""), item.get("available"), item.get("reserved"))
            for item in data or []
        ]

    def execute(
        self,
        crypto_currency: str,
        fiat_currency: str,
        amount: Decimal,
        side: str = "sell"
    ) -> ExecutionReceipt:
        path = "/v1/orders/market"
        body = self._json_body({
            "side": side.upper(),
            "pair": self.pair(crypto_currency, fiat_currency),
            "baseAmount": str(amount),
            "customerOrderId": uuid.uuid4().hex[:32],
        })
        headers = self._signer().sign_request("POST", path, body)
        headers["Content-Type"] = "application/json"
        data = self._request("POST", path, headers=headers, body=body, retry=False)
        if not isinstance(data, dict) or not data.get("id"):
            raise VenueOrderRejected("valr order response missing id", payload=data)
        return ExecutionReceipt(external_ref=str(data["id"]), venue=self.name, raw=data)

    def test_connection(self) -> bool:
        self._request("GET", "/v1/public/status")
        return True


# ============================================================================
# Factory
# ============================================================================

ADAPTER_CLASSES: Dict[str, Type[HTTPVenueAdapter]] = {
    "coinbase": CoinbaseAdapter,
    "kraken": KrakenAdapter,
    "binance": BinanceAdapter,
    "valr": ValrAdapter,
}


def create_venue_adapters(
    venues: Dict[str, Any],
    session: Optional[requests.Session] = None,
    correlation_id: Optional[str] = None
) -> Dict[str, VenueAdapter]:
    """
    Build one adapter per configured venue that has an implementation.

    Args:
        venues: Mapping of venue name to VenueSettings
        session: Optional shared requests.Session
    """
    adapters: Dict[str, VenueAdapter] = {}
    for name, settings in venues.items():
        adapter_cls = ADAPTER_CLASSES.get(name)
        if adapter_cls is None:
            logger.warning(f"[FB-VEN] No adapter implementation | venue={name}")
            continue
        adapters[name] = adapter_cls(settings, session=session, correlation_id=correlation_id)
    return adapters


__all__ = [
    "CoinbaseAdapter",
    "KrakenAdapter",
    "BinanceAdapter",
    "ValrAdapter",
    "ADAPTER_CLASSES",
    "create_venue_adapters",
]
