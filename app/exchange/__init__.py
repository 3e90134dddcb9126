# ============================================================================
# Fiat Bridge v1.0.0
# Exchange Integration Module - Venue Connectivity
# ============================================================================
#
# Reliability Level: SOVEREIGN TIER (Mission-Critical)
# Purpose: Crypto-to-fiat venue adapters (Coinbase, Kraken, Binance, VALR)
#
# Components:
#   - DecimalGateway: Ensures all financial data uses decimal.Decimal
#   - TokenBucket: Per-venue request rate limiting
#   - Signers: HMAC request signing per venue
#   - VenueAdapter: Uniform rate / balance / execute contract
#
# SOVEREIGN MANDATE:
#   - All numeric values converted via DecimalGateway
#   - Credentials never logged
#   - Adapters never retry order placement
#
# ============================================================================

from app.exchange.decimal_gateway import DecimalGateway, DecimalConversionError
from app.exchange.rate_limiter import TokenBucket, ExponentialBackoff, RateLimitExceededError
from app.exchange.hmac_signer import (
    CoinbaseSigner,
    KrakenSigner,
    BinanceSigner,
    VALRSigner,
    SignerError,
    MissingCredentialsError,
)
from app.exchange.venue_adapter import (
    VenueAdapter,
    HTTPVenueAdapter,
    VenueBalance,
    ExecutionReceipt,
    VenueClientError,
    VenueAPIError,
    VenueResponseError,
    VenueTimeout,
    VenueAuthError,
    VenueOrderRejected,
    VenueNotAvailable,
)
from app.exchange.venues import (
    CoinbaseAdapter,
    KrakenAdapter,
    BinanceAdapter,
    ValrAdapter,
    ADAPTER_CLASSES,
    create_venue_adapters,
)

__all__ = [
    # Decimal Gateway
    'DecimalGateway',
    'DecimalConversionError',
    # Rate Limiter
    'TokenBucket',
    'ExponentialBackoff',
    'RateLimitExceededError',
    # Signers
    'CoinbaseSigner',
    'KrakenSigner',
    'BinanceSigner',
    'VALRSigner',
    'SignerError',
    'MissingCredentialsError',
    # Adapter contract
    'VenueAdapter',
    'HTTPVenueAdapter',
    'VenueBalance',
    'ExecutionReceipt',
    'VenueClientError',
    'VenueAPIError',
    'VenueResponseError',
    'VenueTimeout',
    'VenueAuthError',
    'VenueOrderRejected',
    'VenueNotAvailable',
    # Venues
    'CoinbaseAdapter',
    'KrakenAdapter',
    'BinanceAdapter',
    'ValrAdapter',
    'ADAPTER_CLASSES',
    'create_venue_adapters',
]

# Version tracking
__version__ = '1.0.0'
