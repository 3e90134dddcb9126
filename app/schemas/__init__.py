# ============================================================================
# Fiat Bridge v1.0.0
# Pydantic Schemas - Data Validation Layer
# ============================================================================

from app.schemas.conversion import (
    ConversionRequestIn,
    ApprovalDecisionIn,
    RiskAssessmentIn,
    ConversionOut,
)

__all__ = ["ConversionRequestIn", "ApprovalDecisionIn", "RiskAssessmentIn", "ConversionOut"]
