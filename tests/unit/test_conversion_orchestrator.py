"""
============================================================================
Unit Tests - Conversion Orchestrator
============================================================================

Reliability Level: SOVEREIGN TIER
Python 3.8 Compatible

Tests the orchestrator lifecycle end to end against a stub venue:
- initiate: estimate, fees, risk, approval gate, duplicate and limit checks
- approve / reject / decide
- execute: slippage abort, venue failures, bounded retry
- Queue discipline: FIFO order, single flight, capacity
- Queries: status, history, stats, pending approvals, risk assessment

**Feature: conversion-orchestrator, Lifecycle Scenarios A-D**
**Validates: Requirements 1.1-1.6, 2.1-2.4, 3.1-3.5, 4.1-4.3**
============================================================================
"""

import pytest
import asyncio
import dataclasses
import os
import sys
from decimal import Decimal
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional
from unittest.mock import Mock, ANY

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.exchange.venue_adapter import (
    ExecutionReceipt,
    VenueAdapter,
    VenueAPIError,
    VenueBalance,
)
from app.schemas.conversion import (
    ApprovalDecisionIn,
    ConversionRequestIn,
    RiskAssessmentIn,
)
from services.conversion_config import ConversionConfig
from services.conversion_errors import (
    ApprovalNotApplicableError,
    ConversionNotFoundError,
    ConversionQueueFullError,
    DuplicateConversionError,
    ErrorKind,
    InvalidAmountError,
    InvalidTransitionError,
    LimitExceededError,
    UnsupportedCurrencyError,
    VenueUnavailableError,
)
from services.conversion_models import ConversionStatus, RiskLevel
from services.conversion_orchestrator import ConversionOrchestrator
from services.conversion_state_machine import apply_transition
from services.conversion_store import ConversionFilters, InMemoryConversionStore
from services.fulfillment import FulfillmentPublisher
from services.order_store import InMemoryOrderStore, OrderSnapshot
from services.retry_scheduler import ManualRetryScheduler
from services.venue_gateway import VenueGateway


START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Test Doubles
# =============================================================================

class StubVenue(VenueAdapter):
    """In-process venue. Queue exceptions in ``failures`` to fail executions."""

    def __init__(self, name: str, rate: str = "45000", available: bool = True) -> None:
        self.name = name
        self.rate = Decimal(rate)
        self.available = available
        self.failures: List[Exception] = []
        self.orders: List[Dict[str, object]] = []

    def is_available(self) -> bool:
        return self.available

    def get_rate(self, crypto_currency: str, fiat_currency: str) -> Decimal:
        return self.rate

    def get_balances(self) -> List[VenueBalance]:
        return [VenueBalance("BTC", Decimal("1"), Decimal("0"), Decimal("1"))]

    def execute(
        self,
        crypto_currency: str,
        fiat_currency: str,
        amount: Decimal,
        side: str = "sell"
    ) -> ExecutionReceipt:
        if self.failures:
            raise self.failures.pop(0)
        self.orders.append({"crypto": crypto_currency, "amount": amount, "side": side})
        return ExecutionReceipt(
            external_ref=f"{self.name}-{len(self.orders)}",
            venue=self.name,
            filled_amount=amount,
        )


class Harness:
    def __init__(
        self,
        config: ConversionConfig,
        venues: Dict[str, StubVenue],
        orders: List[OrderSnapshot]
    ) -> None:
        self.config = config
        self.venues = venues
        self.store = InMemoryConversionStore()
        self.orders = InMemoryOrderStore(orders)
        self.scheduler = ManualRetryScheduler(start=START)
        self.venue_alerts = Mock()
        self.operator_alerts = Mock()
        self.gateway = VenueGateway(
            config, venues, alert_callback=self.venue_alerts, clock=self.scheduler.now
        )
        self.publisher = FulfillmentPublisher()
        self.events: List[object] = []
        self.publisher.subscribe(self.events.append)
        self.orchestrator = ConversionOrchestrator(
            config,
            self.store,
            self.orders,
            self.gateway,
            scheduler=self.scheduler,
            publisher=self.publisher,
            operator_alert=self.operator_alerts,
        )


def make_config(**overrides) -> ConversionConfig:
    """Flat 0.23 processing fee, coinbase taker fee 0.6%."""
    config = ConversionConfig(
        processing_fee_pct=Decimal("0"),
        min_processing_fee=Decimal("0.23"),
        venue_priority=["coinbase", "kraken"],
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def make_order(order_ref: str = "ORD-1", amount: str = "0.01", user_id: str = "user-1") -> OrderSnapshot:
    return OrderSnapshot(
        order_ref=order_ref,
        crypto_amount=Decimal(amount),
        crypto_currency="BTC",
        user_id=user_id,
    )


def build(
    config: Optional[ConversionConfig] = None,
    venues: Optional[Dict[str, StubVenue]] = None,
    orders: Optional[List[OrderSnapshot]] = None
) -> Harness:
    return Harness(
        config or make_config(),
        venues or {"coinbase": StubVenue("coinbase")},
        orders if orders is not None else [make_order()],
    )


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def harness() -> Harness:
    return build()


@pytest.fixture
def gated_harness() -> Harness:
    """$9,000 order against a $5,000 auto-approval ceiling."""
    return build(
        config=make_config(auto_approval_limit=Decimal("5000")),
        orders=[make_order(amount="0.2")],
    )


# =============================================================================
# Scenario A: Auto-Approved Conversion
# =============================================================================

class TestInitiate:

    @pytest.mark.asyncio
    async def test_initiate_computes_gross_fees_and_net(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")

        assert record.status == ConversionStatus.PENDING
        assert record.exchange_rate == Decimal("45000")
        assert record.gross_fiat_amount == Decimal("450.00")
        assert record.fees.venue_fee == Decimal("2.70")
        assert record.fees.processing_fee == Decimal("0.23")
        assert record.net_fiat_amount == Decimal("447.07")
        assert record.fiat_currency == "USD"
        assert record.venue == "coinbase"

    @pytest.mark.asyncio
    async def test_initiate_scores_low_risk_and_enqueues(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")

        # 0.3 * 13.50 (amount) + 0.2 * 50 (no history) + 0.2 * 10 (coinbase)
        assert record.risk_score == Decimal("16.05")
        assert record.risk_level == RiskLevel.LOW
        assert record.requires_approval is False
        assert harness.orchestrator.queue_depth() == 1

    @pytest.mark.asyncio
    async def test_initiate_persists_history_entry(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1", initiated_by="checkout")

        stored = harness.orchestrator.get_status(record.id)
        assert stored.initiated_by == "checkout"
        assert stored.user_id == "user-1"
        assert [h.status for h in stored.status_history] == [ConversionStatus.PENDING]
        assert stored.status_history[0].metadata["venue"] == "coinbase"

    @pytest.mark.asyncio
    async def test_submit_uses_validated_request(self, harness: Harness) -> None:
        request = ConversionRequestIn(order_ref="ORD-1", fiat_currency="eur")
        record = await harness.orchestrator.submit(request)

        assert record.fiat_currency == "EUR"

    @pytest.mark.asyncio
    async def test_missing_order_raises_not_found(self, harness: Harness) -> None:
        with pytest.raises(ConversionNotFoundError) as exc_info:
            await harness.orchestrator.initiate("ORD-MISSING")
        assert exc_info.value.error_code == "CNV-004"

    @pytest.mark.asyncio
    async def test_unsupported_pair_raises(self, harness: Harness) -> None:
        with pytest.raises(UnsupportedCurrencyError):
            await harness.orchestrator.initiate("ORD-1", fiat_currency="JPY")

    @pytest.mark.asyncio
    async def test_amount_below_minimum_raises_limit_exceeded(self) -> None:
        h = build(orders=[make_order(amount="0.0001")])
        with pytest.raises(LimitExceededError):
            await h.orchestrator.initiate("ORD-1")
        assert h.store.query().total == 0

    @pytest.mark.asyncio
    async def test_daily_user_limit_is_enforced(self) -> None:
        h = build(
            config=make_config(daily_user_limit=Decimal("500")),
            orders=[make_order("ORD-1"), make_order("ORD-2")],
        )
        await h.orchestrator.initiate("ORD-1")
        with pytest.raises(LimitExceededError) as exc_info:
            await h.orchestrator.initiate("ORD-2")
        assert exc_info.value.error_code == "CNV-005"

    @pytest.mark.asyncio
    async def test_duplicate_initiation_is_rejected(self, harness: Harness) -> None:
        first = await harness.orchestrator.initiate("ORD-1")
        with pytest.raises(DuplicateConversionError) as exc_info:
            await harness.orchestrator.initiate("ORD-1")
        assert exc_info.value.details["conversion_id"] == first.id

    @pytest.mark.asyncio
    async def test_failed_conversion_allows_new_initiation(self) -> None:
        h = build(config=make_config(retry_max_attempts=0))
        h.venues["coinbase"].failures.append(VenueAPIError("exchange down", status_code=503))
        first = await h.orchestrator.initiate("ORD-1")
        await h.orchestrator.run_pending()
        assert h.orchestrator.get_status(first.id).status == ConversionStatus.FAILED

        second = await h.orchestrator.initiate("ORD-1")
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_failed_conversion_awaiting_retry_blocks_reinitiation(self, harness: Harness) -> None:
        venue = harness.venues["coinbase"]
        venue.failures.append(VenueAPIError("exchange down", status_code=503))
        first = await harness.orchestrator.initiate("ORD-1")
        result = (await harness.orchestrator.run_pending())[0]
        assert result.retry_scheduled is True

        with pytest.raises(DuplicateConversionError) as exc_info:
            await harness.orchestrator.initiate("ORD-1")
        assert exc_info.value.details["conversion_id"] == first.id

        await harness.scheduler.fire_all()
        await harness.orchestrator.run_pending()
        assert len(venue.orders) == 1
        assert harness.store.query().total == 1
        assert harness.orchestrator.get_status(first.id).status == ConversionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_initiate_accepts_naive_account_date(self) -> None:
        orders = [make_order("ORD-1"), make_order("ORD-2")]
        for order in orders:
            order.account_created_at = datetime(2024, 1, 1)
        h = build(orders=orders)
        await h.orchestrator.initiate("ORD-1")
        await h.orchestrator.run_pending()

        record = await h.orchestrator.initiate("ORD-2")
        assert record.status == ConversionStatus.PENDING
        assert record.risk_level == RiskLevel.LOW

    @pytest.mark.asyncio
    async def test_no_available_venue_raises(self) -> None:
        h = build(venues={"coinbase": StubVenue("coinbase", available=False)})
        with pytest.raises(VenueUnavailableError):
            await h.orchestrator.initiate("ORD-1")

    @pytest.mark.asyncio
    async def test_auto_selection_prefers_best_quote(self) -> None:
        h = build(venues={
            "coinbase": StubVenue("coinbase", rate="45000"),
            "kraken": StubVenue("kraken", rate="45100"),
        })
        record = await h.orchestrator.initiate("ORD-1")
        assert record.venue == "kraken"
        assert record.exchange_rate == Decimal("45100")

    @pytest.mark.asyncio
    async def test_explicit_venue_override(self) -> None:
        h = build(venues={
            "coinbase": StubVenue("coinbase", rate="45000"),
            "kraken": StubVenue("kraken", rate="45100"),
        })
        record = await h.orchestrator.initiate("ORD-1", venue="coinbase")
        assert record.venue == "coinbase"

    @pytest.mark.asyncio
    async def test_full_queue_rejects_before_persisting(self) -> None:
        h = build(
            config=make_config(queue_max_size=1),
            orders=[make_order("ORD-1"), make_order("ORD-2", user_id="user-2")],
        )
        await h.orchestrator.initiate("ORD-1")
        with pytest.raises(ConversionQueueFullError):
            await h.orchestrator.initiate("ORD-2")
        assert h.store.query().total == 1


class TestExecuteSuccess:

    @pytest.mark.asyncio
    async def test_run_pending_completes_conversion(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")
        results = await harness.orchestrator.run_pending()

        assert len(results) == 1
        assert results[0].success is True
        assert results[0].status == "completed"

        stored = harness.orchestrator.get_status(record.id)
        assert stored.status == ConversionStatus.COMPLETED
        assert stored.external_ref == "coinbase-1"
        assert stored.completed_at == START
        assert stored.price_slippage_pct == Decimal("0")
        assert stored.execution_time_ms is not None
        assert [h.status for h in stored.status_history] == [
            ConversionStatus.PENDING,
            ConversionStatus.CONVERTING,
            ConversionStatus.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_completion_publishes_fulfillment_event(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")
        await harness.orchestrator.run_pending()

        assert len(harness.events) == 1
        event = harness.events[0]
        assert event.conversion_id == record.id
        assert event.order_ref == "ORD-1"
        assert event.net_fiat_amount == Decimal("447.07")
        assert event.external_ref == "coinbase-1"

    @pytest.mark.asyncio
    async def test_venue_reported_fee_replaces_estimate(self, harness: Harness) -> None:
        venue = harness.venues["coinbase"]
        venue.execute = Mock(return_value=ExecutionReceipt(
            external_ref="CB-77", venue="coinbase", fee=Decimal("2.5"),
        ))
        record = await harness.orchestrator.initiate("ORD-1")
        await harness.orchestrator.run_pending()

        stored = harness.orchestrator.get_status(record.id)
        assert stored.fees.venue_fee == Decimal("2.50")
        assert stored.net_fiat_amount == Decimal("447.27")

    @pytest.mark.asyncio
    async def test_execute_unknown_id_returns_not_found(self, harness: Harness) -> None:
        result = await harness.orchestrator.execute("missing")
        assert result.success is False
        assert result.error_code == "CNV-004"

    @pytest.mark.asyncio
    async def test_execute_completed_record_is_rejected(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")
        await harness.orchestrator.run_pending()

        result = await harness.orchestrator.execute(record.id)
        assert result.success is False
        assert result.error_code == "CNV-011"
        assert result.status == "completed"
        assert len(harness.venues["coinbase"].orders) == 1


# =============================================================================
# Scenario B: Approval Gate
# =============================================================================

class TestApprovalGate:

    @pytest.mark.asyncio
    async def test_large_amount_requires_approval(self, gated_harness: Harness) -> None:
        record = await gated_harness.orchestrator.initiate("ORD-1")

        assert record.gross_fiat_amount == Decimal("9000.00")
        assert record.requires_approval is True
        assert gated_harness.orchestrator.queue_depth() == 0
        assert [r.id for r in gated_harness.orchestrator.get_pending_approvals()] == [record.id]

    @pytest.mark.asyncio
    async def test_large_amount_raises_operator_alert(self, gated_harness: Harness) -> None:
        await gated_harness.orchestrator.initiate("ORD-1")
        gated_harness.operator_alerts.assert_called_once_with(
            "Large Conversion", ANY, ANY, ANY
        )

    @pytest.mark.asyncio
    async def test_execute_before_approve_is_a_policy_error(self, gated_harness: Harness) -> None:
        record = await gated_harness.orchestrator.initiate("ORD-1")
        result = await gated_harness.orchestrator.execute(record.id)

        assert result.success is False
        assert result.error_code == "CNV-010"
        assert result.error_kind == ErrorKind.POLICY
        stored = gated_harness.orchestrator.get_status(record.id)
        assert stored.status == ConversionStatus.PENDING
        assert len(stored.status_history) == 1
        assert gated_harness.venues["coinbase"].orders == []

    @pytest.mark.asyncio
    async def test_approve_enqueues_and_execution_proceeds(self, gated_harness: Harness) -> None:
        record = await gated_harness.orchestrator.initiate("ORD-1")
        approved = gated_harness.orchestrator.approve(record.id, "ops-lead", "verified customer")

        assert approved.approved_by == "ops-lead"
        assert approved.approved_at == START
        assert approved.approval_comment == "verified customer"
        assert gated_harness.orchestrator.queue_depth() == 1
        assert gated_harness.orchestrator.get_pending_approvals() == []

        results = await gated_harness.orchestrator.run_pending()
        assert results[0].success is True
        assert gated_harness.orchestrator.get_status(record.id).status == ConversionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_approve_twice_is_not_applicable(self, gated_harness: Harness) -> None:
        record = await gated_harness.orchestrator.initiate("ORD-1")
        gated_harness.orchestrator.approve(record.id, "ops-lead")
        with pytest.raises(ApprovalNotApplicableError):
            gated_harness.orchestrator.approve(record.id, "ops-lead")

    @pytest.mark.asyncio
    async def test_approve_ungated_conversion_is_not_applicable(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")
        with pytest.raises(ApprovalNotApplicableError) as exc_info:
            harness.orchestrator.approve(record.id, "ops-lead")
        assert exc_info.value.error_code == "CNV-012"

    @pytest.mark.asyncio
    async def test_reject_cancels_without_consuming_retry(self, gated_harness: Harness) -> None:
        record = await gated_harness.orchestrator.initiate("ORD-1")
        rejected = gated_harness.orchestrator.reject(record.id, "ops-lead", "suspicious order")

        assert rejected.status == ConversionStatus.CANCELLED
        assert rejected.cancelled_at == START
        assert rejected.approval_comment == "suspicious order"
        assert rejected.retry_count == 0
        assert gated_harness.scheduler.pending == 0

        result = await gated_harness.orchestrator.execute(record.id)
        assert result.error_code == "CNV-011"

    @pytest.mark.asyncio
    async def test_reject_after_approve_drops_queued_execution(self, gated_harness: Harness) -> None:
        record = await gated_harness.orchestrator.initiate("ORD-1")
        gated_harness.orchestrator.approve(record.id, "ops-lead")
        assert gated_harness.orchestrator.queue_depth() == 1

        rejected = gated_harness.orchestrator.reject(record.id, "ops-lead", "chargeback risk")
        assert rejected.status == ConversionStatus.CANCELLED

        results = await gated_harness.orchestrator.run_pending()
        assert [r.error_code for r in results] == ["CNV-011"]
        assert gated_harness.venues["coinbase"].orders == []
        assert gated_harness.orchestrator.get_status(record.id).status == ConversionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancelled_conversion_blocks_reinitiation(self, gated_harness: Harness) -> None:
        record = await gated_harness.orchestrator.initiate("ORD-1")
        gated_harness.orchestrator.reject(record.id, "ops-lead", "suspicious order")
        with pytest.raises(DuplicateConversionError):
            await gated_harness.orchestrator.initiate("ORD-1")

    @pytest.mark.asyncio
    async def test_reject_after_cancel_is_invalid_transition(self, gated_harness: Harness) -> None:
        record = await gated_harness.orchestrator.initiate("ORD-1")
        gated_harness.orchestrator.reject(record.id, "ops-lead", "no")
        with pytest.raises(InvalidTransitionError):
            gated_harness.orchestrator.reject(record.id, "ops-lead", "no")

    @pytest.mark.asyncio
    async def test_decide_routes_rejection(self, gated_harness: Harness) -> None:
        record = await gated_harness.orchestrator.initiate("ORD-1")
        decision = ApprovalDecisionIn(approver="ops-lead", approve=False, comment="  fraud  ")
        result = gated_harness.orchestrator.decide(record.id, decision)

        assert result.status == ConversionStatus.CANCELLED
        assert result.approval_comment == "fraud"

    @pytest.mark.asyncio
    async def test_decide_routes_approval(self, gated_harness: Harness) -> None:
        record = await gated_harness.orchestrator.initiate("ORD-1")
        decision = ApprovalDecisionIn(approver="ops-lead", approve=True)
        result = gated_harness.orchestrator.decide(record.id, decision)

        assert result.is_approved
        assert result.approval_comment is None

    def test_approve_unknown_conversion_raises(self, harness: Harness) -> None:
        with pytest.raises(ConversionNotFoundError):
            harness.orchestrator.approve("missing", "ops-lead")


# =============================================================================
# Scenario C: Slippage Abort and Retry
# =============================================================================

class TestSlippageAndRetry:

    @pytest.mark.asyncio
    async def test_slippage_beyond_limit_fails_and_schedules_retry(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")
        harness.venues["coinbase"].rate = Decimal("43650")  # 3% worse

        results = await harness.orchestrator.run_pending()
        result = results[0]
        assert result.success is False
        assert result.error_code == "CNV-030"
        assert result.error_kind == ErrorKind.SLIPPAGE
        assert result.retry_scheduled is True

        stored = harness.orchestrator.get_status(record.id)
        assert stored.status == ConversionStatus.FAILED
        assert stored.retry_count == 1
        assert stored.price_slippage_pct == Decimal("-3.0000")
        assert stored.last_error.code == "CNV-030"
        assert stored.next_retry_at == START + timedelta(seconds=30)
        assert harness.venues["coinbase"].orders == []
        assert harness.scheduler.pending == 1

    @pytest.mark.asyncio
    async def test_retry_fires_only_after_delay(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")
        harness.venues["coinbase"].rate = Decimal("43650")
        await harness.orchestrator.run_pending()

        assert await harness.scheduler.advance(29) == 0
        assert harness.orchestrator.get_status(record.id).status == ConversionStatus.FAILED

        assert await harness.scheduler.advance(1) == 1
        stored = harness.orchestrator.get_status(record.id)
        assert stored.status == ConversionStatus.PENDING
        assert stored.next_retry_at is None
        assert harness.orchestrator.queue_depth() == 1

    @pytest.mark.asyncio
    async def test_retry_completes_when_rate_recovers(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")
        venue = harness.venues["coinbase"]
        venue.rate = Decimal("43650")
        await harness.orchestrator.run_pending()

        venue.rate = Decimal("45000")
        await harness.scheduler.advance(30)
        results = await harness.orchestrator.run_pending()

        assert results[0].success is True
        stored = harness.orchestrator.get_status(record.id)
        assert stored.status == ConversionStatus.COMPLETED
        assert stored.retry_count == 1
        assert [h.status for h in stored.status_history] == [
            ConversionStatus.PENDING,
            ConversionStatus.CONVERTING,
            ConversionStatus.FAILED,
            ConversionStatus.PENDING,
            ConversionStatus.CONVERTING,
            ConversionStatus.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_retry_yields_to_newer_live_conversion(self, harness: Harness) -> None:
        harness.venues["coinbase"].failures.append(VenueAPIError("exchange down", status_code=503))
        first = await harness.orchestrator.initiate("ORD-1")
        await harness.orchestrator.run_pending()

        newer = dataclasses.replace(
            harness.store.get(first.id),
            id="conv-newer",
            status=ConversionStatus.PENDING,
            status_history=[],
            retry_count=0,
            last_error=None,
            next_retry_at=None,
            created_at=START + timedelta(seconds=1),
        )
        harness.store.create(newer)

        assert await harness.scheduler.advance(30) == 1
        stored = harness.orchestrator.get_status(first.id)
        assert stored.status == ConversionStatus.FAILED
        assert stored.next_retry_at is None
        assert stored.status_history[-1].metadata == {"superseded_by": "conv-newer"}
        assert harness.orchestrator.queue_depth() == 0
        assert harness.venues["coinbase"].orders == []

    @pytest.mark.asyncio
    async def test_slippage_within_limit_executes(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")
        harness.venues["coinbase"].rate = Decimal("44100")  # exactly -2%

        results = await harness.orchestrator.run_pending()
        assert results[0].success is True
        assert harness.orchestrator.get_status(record.id).price_slippage_pct == Decimal("-2.0000")

    @pytest.mark.asyncio
    async def test_retry_budget_is_bounded(self) -> None:
        h = build(config=make_config(retry_max_attempts=1))
        venue = h.venues["coinbase"]
        venue.failures.extend([
            VenueAPIError("exchange down", status_code=503),
            VenueAPIError("exchange down", status_code=503),
        ])
        record = await h.orchestrator.initiate("ORD-1")

        first = (await h.orchestrator.run_pending())[0]
        assert first.retry_scheduled is True
        await h.scheduler.fire_all()

        second = (await h.orchestrator.run_pending())[0]
        assert second.retry_scheduled is False
        assert second.error_kind == ErrorKind.VENUE

        stored = h.orchestrator.get_status(record.id)
        assert stored.status == ConversionStatus.FAILED
        assert stored.retry_count == 1
        assert stored.next_retry_at is None
        assert h.scheduler.pending == 0
        h.operator_alerts.assert_called_once_with("Conversion Failed", ANY, ANY, ANY)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_not_retried(self, harness: Harness) -> None:
        harness.venues["coinbase"].failures.append(RuntimeError("socket closed"))
        record = await harness.orchestrator.initiate("ORD-1")

        result = (await harness.orchestrator.run_pending())[0]
        assert result.error_code == "CNV-099"
        assert result.retry_scheduled is False
        stored = harness.orchestrator.get_status(record.id)
        assert stored.last_error.details == {"error": "socket closed"}
        assert stored.retry_count == 0


# =============================================================================
# Scenario D: Venue Degradation
# =============================================================================

class TestVenueDegradation:

    @pytest.mark.asyncio
    async def test_consecutive_failures_degrade_venue_health(self) -> None:
        h = build(
            config=make_config(venue_priority=["kraken"], consecutive_failure_alert=3),
            venues={"kraken": StubVenue("kraken")},
        )
        baseline = h.orchestrator.assess_risk({"amount": "100", "venue": "kraken"})
        assert baseline.assessment.breakdown.venue_health == Decimal("15.00")

        venue = h.venues["kraken"]
        for _ in range(3):
            venue.failures.append(VenueAPIError("internal error", status_code=500))
        await h.orchestrator.initiate("ORD-1")
        for _ in range(3):
            await h.orchestrator.run_pending()
            await h.scheduler.fire_all()

        assert h.gateway.failure_streak("kraken") == 3
        h.venue_alerts.assert_called_once_with("kraken", 3, ANY)

        report = h.orchestrator.assess_risk({"amount": "100", "venue": "kraken"})
        assert report.assessment.breakdown.venue_health == Decimal("100.00")
        assert report.venue_reliability.reliable is False
        assert report.venue_reliability.recommend_fallback is True
        assert "Consider using a more reliable venue" in report.recommendations

    @pytest.mark.asyncio
    async def test_success_resets_failure_streak(self) -> None:
        h = build()
        h.venues["coinbase"].failures.append(VenueAPIError("internal error", status_code=500))
        await h.orchestrator.initiate("ORD-1")

        await h.orchestrator.run_pending()
        assert h.gateway.failure_streak("coinbase") == 1

        await h.scheduler.fire_all()
        await h.orchestrator.run_pending()
        assert h.gateway.failure_streak("coinbase") == 0


# =============================================================================
# Queue Discipline
# =============================================================================

class TestQueueDiscipline:

    @pytest.mark.asyncio
    async def test_fifo_processing_order(self) -> None:
        orders = [make_order(f"ORD-{i}", user_id=f"user-{i}") for i in range(3)]
        h = build(orders=orders)
        ids = [(await h.orchestrator.initiate(o.order_ref)).id for o in orders]

        results = await h.orchestrator.run_pending()
        assert [r.conversion_id for r in results] == ids

    @pytest.mark.asyncio
    async def test_single_flight_per_record(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")

        results = await asyncio.gather(
            harness.orchestrator.execute(record.id),
            harness.orchestrator.execute(record.id),
        )
        assert sorted(r.success for r in results) == [False, True]
        assert len(harness.venues["coinbase"].orders) == 1

    @pytest.mark.asyncio
    async def test_worker_drains_queue(self, harness: Harness) -> None:
        await harness.orchestrator.start()
        try:
            record = await harness.orchestrator.initiate("ORD-1")
            await asyncio.wait_for(harness.orchestrator.wait_idle(), timeout=5)
            assert harness.orchestrator.get_status(record.id).status == ConversionStatus.COMPLETED
        finally:
            await harness.orchestrator.stop()
        assert harness.orchestrator.is_running is False

    @pytest.mark.asyncio
    async def test_run_pending_refuses_while_worker_runs(self, harness: Harness) -> None:
        await harness.orchestrator.start()
        try:
            with pytest.raises(RuntimeError):
                await harness.orchestrator.run_pending()
        finally:
            await harness.orchestrator.stop()

    @pytest.mark.asyncio
    async def test_requeue_pending_after_restart(self) -> None:
        h = build(
            config=make_config(auto_approval_limit=Decimal("5000")),
            orders=[make_order("ORD-1"), make_order("ORD-2", amount="0.2", user_id="user-2")],
        )
        await h.orchestrator.initiate("ORD-1")
        await h.orchestrator.initiate("ORD-2")  # gated

        restarted = ConversionOrchestrator(
            h.config, h.store, h.orders, h.gateway, scheduler=h.scheduler
        )
        assert restarted.requeue_pending() == 1
        assert restarted.queue_depth() == 1

    @pytest.mark.asyncio
    async def test_requeue_pending_rearms_scheduled_retry(self, harness: Harness) -> None:
        harness.venues["coinbase"].failures.append(VenueAPIError("exchange down", status_code=503))
        record = await harness.orchestrator.initiate("ORD-1")
        await harness.orchestrator.run_pending()

        # Timers die with the process
        scheduler = ManualRetryScheduler(start=START)
        restarted = ConversionOrchestrator(
            harness.config, harness.store, harness.orders, harness.gateway, scheduler=scheduler
        )
        assert restarted.requeue_pending() == 1
        assert scheduler.pending == 1
        assert await scheduler.advance(29) == 0
        assert await scheduler.advance(1) == 1

        results = await restarted.run_pending()
        assert results[0].success is True
        stored = restarted.get_status(record.id)
        assert stored.status == ConversionStatus.COMPLETED
        assert stored.retry_count == 1

    @pytest.mark.asyncio
    async def test_requeue_pending_fires_overdue_retry_immediately(self, harness: Harness) -> None:
        harness.venues["coinbase"].failures.append(VenueAPIError("exchange down", status_code=503))
        record = await harness.orchestrator.initiate("ORD-1")
        await harness.orchestrator.run_pending()

        scheduler = ManualRetryScheduler(start=START + timedelta(minutes=5))
        restarted = ConversionOrchestrator(
            harness.config, harness.store, harness.orders, harness.gateway, scheduler=scheduler
        )
        restarted.requeue_pending()
        assert await scheduler.advance(0) == 1
        assert restarted.get_status(record.id).status == ConversionStatus.PENDING


# =============================================================================
# Venue Corrections
# =============================================================================

class TestVenueUpdates:

    @pytest.mark.asyncio
    async def test_repeat_status_is_noop(self, harness: Harness) -> None:
        record = await harness.orchestrator.initiate("ORD-1")
        await harness.orchestrator.run_pending()

        updated = harness.orchestrator.apply_venue_update("coinbase-1", "completed")
        assert updated.id == record.id
        assert len(updated.status_history) == 3

    @pytest.mark.asyncio
    async def test_illegal_move_is_rejected(self, harness: Harness) -> None:
        await harness.orchestrator.initiate("ORD-1")
        await harness.orchestrator.run_pending()

        with pytest.raises(InvalidTransitionError):
            harness.orchestrator.apply_venue_update("coinbase-1", "pending")

    @pytest.mark.asyncio
    async def test_unknown_status_is_rejected(self, harness: Harness) -> None:
        await harness.orchestrator.initiate("ORD-1")
        await harness.orchestrator.run_pending()

        with pytest.raises(InvalidTransitionError):
            harness.orchestrator.apply_venue_update("coinbase-1", "settled")

    def test_unknown_reference_raises(self, harness: Harness) -> None:
        with pytest.raises(ConversionNotFoundError):
            harness.orchestrator.apply_venue_update("nope", "completed")

    @staticmethod
    async def converting(h: Harness, external_ref: str = "coinbase-ext-1") -> str:
        """A record left converting with a venue reference, as after a lost receipt."""
        record = await h.orchestrator.initiate("ORD-1")
        stored = h.store.get(record.id)
        apply_transition(stored, ConversionStatus.CONVERTING, now=START)
        stored.external_ref = external_ref
        h.store.update(stored)
        return record.id

    @pytest.mark.asyncio
    async def test_completed_update_publishes_fulfillment(self, harness: Harness) -> None:
        conversion_id = await self.converting(harness)

        updated = harness.orchestrator.apply_venue_update("coinbase-ext-1", "completed")
        assert updated.status == ConversionStatus.COMPLETED
        assert updated.completed_at == START
        assert updated.status_history[-1].metadata["source"] == "venue"
        assert len(harness.events) == 1
        assert harness.events[0].conversion_id == conversion_id
        assert harness.events[0].external_ref == "coinbase-ext-1"
        assert harness.orchestrator.get_status(conversion_id).status == ConversionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_update_records_error_and_schedules_retry(self, harness: Harness) -> None:
        conversion_id = await self.converting(harness)

        updated = harness.orchestrator.apply_venue_update(
            "coinbase-ext-1", "failed", note="order expired"
        )
        assert updated.status == ConversionStatus.FAILED
        assert updated.last_error.code == "CNV-022"
        assert updated.last_error.message == "order expired"
        assert updated.last_error.details["source"] == "venue"
        assert updated.retry_count == 1
        assert updated.next_retry_at == START + timedelta(seconds=30)
        assert harness.scheduler.pending == 1
        assert harness.events == []

        stored = harness.orchestrator.get_status(conversion_id)
        assert stored.last_error.code == "CNV-022"

    @pytest.mark.asyncio
    async def test_update_on_failed_record_is_rejected(self, harness: Harness) -> None:
        await self.converting(harness)
        harness.orchestrator.apply_venue_update("coinbase-ext-1", "failed")

        with pytest.raises(InvalidTransitionError):
            harness.orchestrator.apply_venue_update("coinbase-ext-1", "pending")
        with pytest.raises(InvalidTransitionError):
            harness.orchestrator.apply_venue_update("coinbase-ext-1", "completed")

    @pytest.mark.asyncio
    async def test_cancel_update_on_converting_record_is_rejected(self, harness: Harness) -> None:
        conversion_id = await self.converting(harness)

        with pytest.raises(InvalidTransitionError):
            harness.orchestrator.apply_venue_update("coinbase-ext-1", "cancelled")
        assert harness.orchestrator.get_status(conversion_id).status == ConversionStatus.CONVERTING


# =============================================================================
# Queries
# =============================================================================

class TestQueries:

    @pytest.mark.asyncio
    async def test_stats_group_by_status_and_venue(self) -> None:
        orders = [make_order(f"ORD-{i}", user_id=f"user-{i}") for i in range(3)]
        h = build(config=make_config(retry_max_attempts=0), orders=orders)
        venue = h.venues["coinbase"]
        for order in orders:
            await h.orchestrator.initiate(order.order_ref)
        await h.orchestrator.run_pending()  # all three complete

        venue.failures.append(VenueAPIError("exchange down", status_code=503))
        h.orders.add(make_order("ORD-9", user_id="user-9"))
        await h.orchestrator.initiate("ORD-9")
        await h.orchestrator.run_pending()

        stats = h.orchestrator.get_stats()
        assert stats.total == 4
        assert stats.by_status["completed"]["count"] == 3
        assert stats.by_status["failed"]["count"] == 1
        assert stats.by_status["completed"]["gross_by_currency"]["USD"] == Decimal("1350.00")
        assert stats.by_venue["coinbase"]["completed"] == 3
        assert stats.by_venue["coinbase"]["failed"] == 1
        assert stats.success_rate == Decimal("75.00")
        assert stats.average_execution_time_ms is not None
        assert stats.to_dict()["success_rate"] == "75.00"

    def test_stats_empty_window(self, harness: Harness) -> None:
        stats = harness.orchestrator.get_stats()
        assert stats.total == 0
        assert stats.success_rate == Decimal("0")
        assert stats.average_execution_time_ms is None

    @pytest.mark.asyncio
    async def test_history_filters_by_status(self) -> None:
        orders = [make_order(f"ORD-{i}", user_id=f"user-{i}") for i in range(2)]
        h = build(orders=orders)
        await h.orchestrator.initiate("ORD-0")
        await h.orchestrator.run_pending()
        await h.orchestrator.initiate("ORD-1")

        completed = h.orchestrator.get_history(ConversionFilters(status=ConversionStatus.COMPLETED))
        pending = h.orchestrator.get_history(ConversionFilters(status=ConversionStatus.PENDING))
        assert completed.total == 1
        assert pending.total == 1
        assert h.orchestrator.get_history(page=1, limit=1).pages == 2

    def test_assess_risk_is_side_effect_free(self, harness: Harness) -> None:
        report = harness.orchestrator.assess_risk(
            RiskAssessmentIn(amount="500", venue="coinbase")
        )
        # 0.3 * 15 (amount) + 0.2 * 50 (no history) + 0.2 * 10 (coinbase)
        assert report.assessment.score == Decimal("16.50")
        assert report.assessment.level == RiskLevel.LOW
        assert report.assessment.requires_approval is False
        assert harness.store.query().total == 0

    def test_assess_risk_defaults_to_priority_venue(self, harness: Harness) -> None:
        report = harness.orchestrator.assess_risk({"amount": "2000"})
        assert report.venue == "coinbase"
        assert report.assessment.requires_approval is True

    @pytest.mark.asyncio
    async def test_assess_risk_with_naive_account_date_and_history(self, harness: Harness) -> None:
        await harness.orchestrator.initiate("ORD-1")
        await harness.orchestrator.run_pending()

        report = harness.orchestrator.assess_risk(
            {"amount": "100", "user_id": "user-1", "account_created_at": "2024-01-01"}
        )
        assert report.timestamp == START
        # 152 days old at START: 0.3 * (1 - 152/365) * 100
        assert report.assessment.breakdown.user_history == Decimal("17.51")

    def test_assess_risk_rejects_bad_slippage(self, harness: Harness) -> None:
        with pytest.raises(InvalidAmountError):
            harness.orchestrator.assess_risk({"amount": "100", "slippage_pct": "abc"})

    def test_get_status_unknown_raises(self, harness: Harness) -> None:
        with pytest.raises(ConversionNotFoundError):
            harness.orchestrator.get_status("missing")
