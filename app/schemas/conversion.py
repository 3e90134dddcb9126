"""
============================================================================
Fiat Bridge v1.0.0
Conversion Schema - Pydantic Models for the Conversion API Boundary
============================================================================

Reliability Level: SOVEREIGN TIER (Mission-Critical)
Input Constraints: Decimal for all financial values, zero floats
Side Effects: None (pure validation)

SOVEREIGN MANDATE:
- All financial values MUST use decimal.Decimal
- Crypto amounts limited to 8 decimal places (satoshi precision)
- Zero tolerance for floating-point math

ERROR CODES:
    - CNV-001: Invalid amount (float, non-finite, precision, sign)

============================================================================
"""

from decimal import Decimal, InvalidOperation
from typing import Optional, Any, Dict
from datetime import datetime

from pydantic import (
    BaseModel,
    Field,
    field_validator,
    model_validator,
    ConfigDict,
    ValidationInfo,
)


# ============================================================================
# CONSTANTS
# ============================================================================

# Satoshi precision for crypto amounts
MAX_CRYPTO_DECIMAL_PLACES = 8

# Percentages and generic amounts
MAX_DECIMAL_PLACES = 10

MAX_TOTAL_DIGITS = 28

CURRENCY_PATTERN = r"^[A-Z0-9]{2,6}(-[A-Z0-9]{2,4})?$"
STATUS_PATTERN = r"^(pending|converting|completed|failed|cancelled)$"


# ============================================================================
# CUSTOM VALIDATORS
# ============================================================================

def validate_decimal_precision(
    value: Any,
    field_name: str,
    max_places: int = MAX_DECIMAL_PLACES,
    allow_zero: bool = False,
    allow_negative: bool = False
) -> Decimal:
    """
    Validate that a value is a valid Decimal with correct precision.

    Reliability Level: SOVEREIGN TIER
    Input Constraints:
        - Must be Decimal, str or int (floats rejected)
        - At most ``max_places`` decimal places, 28 total digits
        - Positive unless allow_zero / allow_negative
    Side Effects: None

    Raises:
        ValueError: If value fails validation (CNV-001)
    """
    if value is None:
        raise ValueError(f"[CNV-001] {field_name} cannot be None")

    # Zero-Float Mandate
    if isinstance(value, float):
        raise ValueError(
            f"[CNV-001] {field_name} received float type. "
            f"All financial values must use Decimal or str. "
            f"Received: {value} (type: {type(value).__name__})"
        )

    if isinstance(value, bool) or not isinstance(value, (Decimal, str, int)):
        raise ValueError(
            f"[CNV-001] {field_name} must be Decimal, str, or int. "
            f"Received: {type(value).__name__}"
        )

    try:
        decimal_value = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except InvalidOperation as e:
        raise ValueError(
            f"[CNV-001] {field_name} is not a valid decimal number. "
            f"Received: {value}. Error: {e}"
        )

    if not decimal_value.is_finite():
        raise ValueError(
            f"[CNV-001] {field_name} must be a finite number. Received: {decimal_value}"
        )

    sign, digits, exponent = decimal_value.as_tuple()
    if exponent < 0 and abs(exponent) > max_places:
        raise ValueError(
            f"[CNV-001] {field_name} exceeds maximum {max_places} decimal places. "
            f"Received: {abs(exponent)} decimal places in value {decimal_value}"
        )
    if len(digits) > MAX_TOTAL_DIGITS:
        raise ValueError(
            f"[CNV-001] {field_name} exceeds maximum {MAX_TOTAL_DIGITS} total digits. "
            f"Received: {len(digits)} digits in value {decimal_value}"
        )

    if not allow_negative:
        if decimal_value < 0 or (decimal_value == 0 and not allow_zero):
            raise ValueError(
                f"[CNV-001] {field_name} must be "
                f"{'non-negative' if allow_zero else 'positive'}. Received: {decimal_value}"
            )

    return decimal_value


def _upper(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().upper()
    return value


# ============================================================================
# CONVERSION REQUEST SCHEMA
# ============================================================================

class ConversionRequestIn(BaseModel):
    """
    Request to convert a paid order's crypto into fiat.

    Reliability Level: SOVEREIGN TIER (Mission-Critical)
    Input Constraints:
        - order_ref: Order identifier (idempotency key, one active conversion)
        - crypto_amount / crypto_currency: Optional, read from the order
        - fiat_currency: Optional, configured default when absent
        - venue: Optional explicit venue override
        - volatility: Optional observed volatility percentage, non-negative
    Side Effects: None (pure validation)
    """

    model_config = ConfigDict(
        extra="forbid",
        validate_assignment=True,
        json_schema_extra={
            "example": {
                "order_ref": "ORD-2024-000123",
                "fiat_currency": "USD",
                "venue": "kraken",
                "initiated_by": "checkout-service",
            }
        }
    )

    order_ref: str = Field(..., min_length=1, max_length=64)
    crypto_amount: Optional[Decimal] = Field(
        default=None,
        description="Crypto amount override. Max 8 decimal places. NO FLOATS.",
    )
    crypto_currency: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)
    fiat_currency: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)
    venue: Optional[str] = Field(default=None, min_length=1, max_length=32)
    initiated_by: Optional[str] = Field(default=None, max_length=128)
    volatility: Optional[Decimal] = Field(
        default=None,
        description="Observed volatility in percent. NO FLOATS.",
    )

    @field_validator("crypto_amount", mode="before")
    @classmethod
    def validate_crypto_amount(cls, v: Any) -> Optional[Decimal]:
        if v is None:
            return None
        return validate_decimal_precision(v, "crypto_amount", MAX_CRYPTO_DECIMAL_PLACES)

    @field_validator("volatility", mode="before")
    @classmethod
    def validate_volatility(cls, v: Any) -> Optional[Decimal]:
        if v is None:
            return None
        return validate_decimal_precision(v, "volatility", allow_zero=True)

    @field_validator("crypto_currency", "fiat_currency", mode="before")
    @classmethod
    def validate_currency_uppercase(cls, v: Any) -> Any:
        return _upper(v)

    @field_validator("venue", mode="before")
    @classmethod
    def validate_venue_lowercase(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    def to_initiate_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for ConversionOrchestrator.initiate."""
        return {
            "order_ref": self.order_ref,
            "fiat_currency": self.fiat_currency,
            "venue": self.venue,
            "initiated_by": self.initiated_by,
            "volatility": self.volatility,
            "crypto_amount": self.crypto_amount,
            "crypto_currency": self.crypto_currency,
        }


# ============================================================================
# APPROVAL DECISION SCHEMA
# ============================================================================

class ApprovalDecisionIn(BaseModel):
    """
    Human decision on a gated conversion.

    A rejection must carry a reason; an approval comment is optional.
    """

    model_config = ConfigDict(extra="forbid")

    approver: str = Field(..., min_length=1, max_length=128)
    approve: bool
    comment: str = Field(default="", max_length=1000)

    @field_validator("comment")
    @classmethod
    def strip_comment(cls, v: str) -> str:
        return v.strip()

    @model_validator(mode="after")
    def require_rejection_reason(self) -> "ApprovalDecisionIn":
        if not self.approve and not self.comment:
            raise ValueError("[CNV-012] A rejection requires a reason")
        return self


# ============================================================================
# RISK ASSESSMENT SCHEMA
# ============================================================================

class RiskAssessmentIn(BaseModel):
    """What-if risk request. Nothing is persisted."""

    model_config = ConfigDict(extra="forbid")

    amount: Decimal
    venue: Optional[str] = None
    volatility: Optional[Decimal] = None
    user_id: Optional[str] = None
    account_created_at: Optional[datetime] = None
    slippage_pct: Optional[Decimal] = None
    total_fee_pct: Optional[Decimal] = None
    crypto_currency: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)
    fiat_currency: Optional[str] = Field(default=None, pattern=CURRENCY_PATTERN)

    @field_validator("amount", mode="before")
    @classmethod
    def validate_amount(cls, v: Any) -> Decimal:
        return validate_decimal_precision(v, "amount")

    @field_validator("volatility", "total_fee_pct", mode="before")
    @classmethod
    def validate_non_negative(cls, v: Any, info: ValidationInfo) -> Optional[Decimal]:
        if v is None:
            return None
        return validate_decimal_precision(v, info.field_name, allow_zero=True)

    @field_validator("slippage_pct", mode="before")
    @classmethod
    def validate_signed(cls, v: Any) -> Optional[Decimal]:
        if v is None:
            return None
        return validate_decimal_precision(v, "slippage_pct", allow_negative=True)

    @field_validator("crypto_currency", "fiat_currency", mode="before")
    @classmethod
    def validate_currency_uppercase(cls, v: Any) -> Any:
        return _upper(v)

    def to_raw(self) -> Dict[str, Any]:
        """Dictionary accepted by ConversionOrchestrator.assess_risk."""
        return self.model_dump(exclude_none=True)


# ============================================================================
# CONVERSION OUTPUT SCHEMA
# ============================================================================

class ConversionOut(BaseModel):
    """
    User-facing projection of a conversion record.

    Built from ``ConversionRecord.to_dict(include_error_details=False)`` so
    raw venue payloads never leave the operator log.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    order_ref: str
    status: str = Field(..., pattern=STATUS_PATTERN)
    crypto_amount: Decimal
    crypto_currency: str
    fiat_currency: str
    gross_fiat_amount: Decimal
    net_fiat_amount: Decimal
    exchange_rate: Decimal
    venue: str
    risk_score: Decimal
    risk_level: str
    requires_approval: bool
    approved_by: Optional[str] = None
    retry_count: int = 0
    external_ref: Optional[str] = None
    last_error: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime
    correlation_id: str


# ============================================================================
# END OF CONVERSION SCHEMA
# ============================================================================
