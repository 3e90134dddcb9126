"""
============================================================================
Unit Tests - Fulfillment Publisher
============================================================================

Reliability Level: SOVEREIGN TIER
Python 3.8 Compatible

**Feature: fulfillment, Completed-Conversion Events**
**Validates: Requirements 5.4**
============================================================================
"""

import pytest
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import Mock

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.fulfillment import (
    ConversionCompletedEvent,
    FulfillmentDraftSubscriber,
    FulfillmentPublisher,
    build_fulfillment_draft,
)
from services.order_store import InMemoryOrderStore, OrderSnapshot, ShippingAddress


@pytest.fixture
def event() -> ConversionCompletedEvent:
    return ConversionCompletedEvent(
        conversion_id="conv-1",
        order_ref="order-1",
        net_fiat_amount=Decimal("447.07"),
        fiat_currency="USD",
        venue="coinbase",
        external_ref="cb-1",
        correlation_id="corr-1",
        completed_at=datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc),
    )


class TestPublisher:

    def test_delivers_to_every_subscriber(self, event: ConversionCompletedEvent) -> None:
        publisher = FulfillmentPublisher()
        first, second = Mock(), Mock()
        publisher.subscribe(first)
        publisher.subscribe(second)

        assert publisher.subscriber_count == 2
        assert publisher.publish(event) == 2
        first.assert_called_once_with(event)
        second.assert_called_once_with(event)

    def test_failing_subscriber_is_isolated(self, event: ConversionCompletedEvent) -> None:
        publisher = FulfillmentPublisher()
        healthy = Mock()
        publisher.subscribe(Mock(side_effect=RuntimeError("printer offline")))
        publisher.subscribe(healthy)

        assert publisher.publish(event) == 1
        healthy.assert_called_once_with(event)

    def test_no_subscribers(self, event: ConversionCompletedEvent) -> None:
        assert FulfillmentPublisher().publish(event) == 0

    def test_event_to_dict(self, event: ConversionCompletedEvent) -> None:
        data = event.to_dict()
        assert data["net_fiat_amount"] == "447.07"
        assert data["completed_at"] == "2024-06-01T12:00:00+00:00"


class TestFulfillmentDraft:

    def test_draft_uses_shipping_address(self, event: ConversionCompletedEvent) -> None:
        order = OrderSnapshot(
            order_ref="order-1",
            crypto_amount=Decimal("0.01"),
            crypto_currency="BTC",
            customer_email="buyer@example.com",
            shipping_address=ShippingAddress(
                first_name="Ada", last_name="Lovelace", city="London", country="GB"
            ),
        )

        draft = build_fulfillment_draft(order, event)

        assert draft["original_order"] == "order-1"
        assert draft["status"] == "ready"
        assert draft["total_cost"] == Decimal("447.07")
        assert draft["shipping_info"]["first_name"] == "Ada"
        assert draft["shipping_info"]["country"] == "GB"
        assert draft["shipping_info"]["email"] == "buyer@example.com"

    def test_draft_defaults_without_address(self, event: ConversionCompletedEvent) -> None:
        order = OrderSnapshot(order_ref="order-1", crypto_amount=Decimal("0.01"), crypto_currency="BTC")

        draft = build_fulfillment_draft(order, event)

        assert draft["shipping_info"]["first_name"] == "Customer"
        assert draft["shipping_info"]["country"] == "US"
        assert draft["products"] == []


class TestDraftSubscriber:

    def test_published_event_reaches_sink_as_draft(self, event: ConversionCompletedEvent) -> None:
        orders = InMemoryOrderStore([
            OrderSnapshot(order_ref="order-1", crypto_amount=Decimal("0.01"), crypto_currency="BTC"),
        ])
        drafts = []
        publisher = FulfillmentPublisher()
        publisher.subscribe(FulfillmentDraftSubscriber(orders, sink=drafts.append))

        assert publisher.publish(event) == 1
        assert len(drafts) == 1
        assert drafts[0]["original_order"] == "order-1"
        assert drafts[0]["conversion_id"] == "conv-1"
        assert drafts[0]["total_cost"] == event.net_fiat_amount

    def test_missing_order_is_not_delivered(self, event: ConversionCompletedEvent) -> None:
        drafts = []
        publisher = FulfillmentPublisher()
        publisher.subscribe(FulfillmentDraftSubscriber(InMemoryOrderStore([]), sink=drafts.append))

        assert publisher.publish(event) == 0
        assert drafts == []

    def test_without_sink_only_logs(self, event: ConversionCompletedEvent) -> None:
        orders = InMemoryOrderStore([
            OrderSnapshot(order_ref="order-1", crypto_amount=Decimal("0.01"), crypto_currency="BTC"),
        ])
        FulfillmentDraftSubscriber(orders)(event)
