"""
============================================================================
Property-Based Tests for Conversion Risk Scoring
============================================================================

Reliability Level: SOVEREIGN TIER
Python 3.8 Compatible

Tests the risk engine using Hypothesis.
Minimum 100 iterations per property.

Properties tested:
- Property 1: Every sub-score and the composite stay within [0, 100]
- Property 2: Amount and volatility risk never decrease as input grows
- Property 3: Risk level is monotonic in the composite score
- Property 4: Amount above the auto-approval ceiling always needs approval
- Property 5: High risk always needs approval

============================================================================
"""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.conversion_config import ConversionConfig
from services.conversion_models import RiskLevel
from services.risk_engine import RiskEngine, RiskInput, UserHistory


# =============================================================================
# HYPOTHESIS STRATEGIES
# =============================================================================

amount_strategy = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("50000"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)

volatility_strategy = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("100"),
    places=4,
    allow_nan=False,
    allow_infinity=False,
)

score_strategy = st.decimals(
    min_value=Decimal("0"),
    max_value=Decimal("100"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)

history_strategy = st.one_of(
    st.none(),
    st.builds(
        UserHistory,
        completed=st.integers(min_value=0, max_value=50),
        failed=st.integers(min_value=0, max_value=50),
    ),
)

venue_strategy = st.sampled_from(["coinbase", "kraken", "binance", "valr", "manual", "other"])

streak_strategy = st.integers(min_value=0, max_value=10)

LEVEL_ORDER = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}

ENGINE = RiskEngine(ConversionConfig())


# =============================================================================
# PROPERTY 1: Bounded scores
# =============================================================================

class TestBoundedScores:

    @settings(max_examples=100)
    @given(
        amount=amount_strategy,
        volatility=volatility_strategy,
        history=history_strategy,
        venue=venue_strategy,
        streak=streak_strategy,
    )
    def test_scores_within_bounds(
        self,
        amount: Decimal,
        volatility: Decimal,
        history,
        venue: str,
        streak: int
    ) -> None:
        """
        **Feature: risk-engine, Property 1: Scores Are Bounded**
        **Validates: Requirements 2.1**
        """
        assessment = ENGINE.assess(RiskInput(
            amount=amount,
            venue=venue,
            volatility=volatility,
            user_history=history,
            venue_failure_streak=streak,
        ))

        for value in assessment.breakdown.to_dict().values():
            assert Decimal("0") <= Decimal(value) <= Decimal("100")
        assert Decimal("0") <= assessment.score <= Decimal("100")
        assert assessment.level == ENGINE.risk_level(assessment.score)


# =============================================================================
# PROPERTY 2 & 3: Monotonicity
# =============================================================================

class TestMonotonicity:

    @settings(max_examples=100)
    @given(a=amount_strategy, b=amount_strategy)
    def test_amount_risk_monotonic(self, a: Decimal, b: Decimal) -> None:
        """
        **Feature: risk-engine, Property 2: Amount Risk Is Monotonic**
        **Validates: Requirements 2.1**
        """
        low, high = min(a, b), max(a, b)
        assert ENGINE.amount_risk(low) <= ENGINE.amount_risk(high)

    @settings(max_examples=100)
    @given(a=volatility_strategy, b=volatility_strategy)
    def test_volatility_risk_monotonic(self, a: Decimal, b: Decimal) -> None:
        """
        **Feature: risk-engine, Property 2: Volatility Risk Is Monotonic**
        **Validates: Requirements 2.1**
        """
        low, high = min(a, b), max(a, b)
        assert ENGINE.volatility_risk(low) <= ENGINE.volatility_risk(high)

    @settings(max_examples=100)
    @given(a=score_strategy, b=score_strategy)
    def test_level_monotonic(self, a: Decimal, b: Decimal) -> None:
        """
        **Feature: risk-engine, Property 3: Risk Level Is Monotonic**
        **Validates: Requirements 2.2**
        """
        low, high = min(a, b), max(a, b)
        assert LEVEL_ORDER[ENGINE.risk_level(low)] <= LEVEL_ORDER[ENGINE.risk_level(high)]


# =============================================================================
# PROPERTY 4 & 5: Approval gate
# =============================================================================

class TestApprovalGate:

    @settings(max_examples=100)
    @given(amount=amount_strategy, venue=venue_strategy, volatility=volatility_strategy)
    def test_amount_above_ceiling_requires_approval(
        self,
        amount: Decimal,
        venue: str,
        volatility: Decimal
    ) -> None:
        """
        **Feature: risk-engine, Property 4: Ceiling Breach Requires Approval**
        **Validates: Requirements 2.3**
        """
        assessment = ENGINE.assess(RiskInput(amount=amount, venue=venue, volatility=volatility))
        if amount > ENGINE.config.auto_approval_limit:
            assert assessment.requires_approval is True
        if assessment.level == RiskLevel.HIGH:
            assert assessment.requires_approval is True
        if not assessment.requires_approval:
            assert amount <= ENGINE.config.auto_approval_limit
            assert assessment.level != RiskLevel.HIGH

    @settings(max_examples=100)
    @given(amount=amount_strategy, level=st.sampled_from(list(RiskLevel)))
    def test_high_level_requires_approval(self, amount: Decimal, level: RiskLevel) -> None:
        """
        **Feature: risk-engine, Property 5: High Risk Requires Approval**
        **Validates: Requirements 2.4**
        """
        requirement = ENGINE.requires_approval(amount, level)
        expected = amount > ENGINE.config.auto_approval_limit or level == RiskLevel.HIGH
        assert requirement.required is expected
