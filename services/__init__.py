"""
============================================================================
Fiat Bridge v1.0.0 - Services Layer
============================================================================

Crypto-to-fiat conversion engine: rate and risk engines, venue gateway,
persistence, orchestration and the fulfillment hook.

Reliability Level: L6 Critical
============================================================================
"""

from services.conversion_config import (
    ConversionConfig,
    ConversionConfigurationError,
    VenueSettings,
    RiskWeights,
)

from services.conversion_errors import (
    ConversionError,
    ErrorKind,
    ExecutionResult,
)

from services.conversion_models import (
    ConversionRecord,
    ConversionStatus,
    FeeBreakdown,
    RiskLevel,
)

from services.rate_engine import RateEngine, ConversionEstimate
from services.risk_engine import RiskEngine, RiskInput, RiskAssessment, UserHistory

from services.conversion_store import (
    ConversionStore,
    ConversionFilters,
    InMemoryConversionStore,
    SqlConversionStore,
)

from services.order_store import (
    OrderStore,
    OrderSnapshot,
    InMemoryOrderStore,
    SqlOrderStore,
)

from services.venue_gateway import VenueGateway
from services.retry_scheduler import AsyncioRetryScheduler, ManualRetryScheduler
from services.fulfillment import (
    FulfillmentPublisher,
    FulfillmentDraftSubscriber,
    ConversionCompletedEvent,
)
from services.conversion_orchestrator import ConversionOrchestrator, ConversionStats

__all__ = [
    # Configuration
    "ConversionConfig",
    "ConversionConfigurationError",
    "VenueSettings",
    "RiskWeights",
    # Errors
    "ConversionError",
    "ErrorKind",
    "ExecutionResult",
    # Models
    "ConversionRecord",
    "ConversionStatus",
    "FeeBreakdown",
    "RiskLevel",
    # Engines
    "RateEngine",
    "ConversionEstimate",
    "RiskEngine",
    "RiskInput",
    "RiskAssessment",
    "UserHistory",
    # Stores
    "ConversionStore",
    "ConversionFilters",
    "InMemoryConversionStore",
    "SqlConversionStore",
    "OrderStore",
    "OrderSnapshot",
    "InMemoryOrderStore",
    "SqlOrderStore",
    # Orchestration
    "VenueGateway",
    "AsyncioRetryScheduler",
    "ManualRetryScheduler",
    "FulfillmentPublisher",
    "FulfillmentDraftSubscriber",
    "ConversionCompletedEvent",
    "ConversionOrchestrator",
    "ConversionStats",
]
