"""
============================================================================
Fiat Bridge v1.0.0
Fulfillment Hook - Conversion Completed Events
============================================================================

Reliability Level: L5 High
Side Effects: Invokes subscriber callbacks

On completion the orchestrator publishes a ConversionCompletedEvent.
Subscribers (print-on-demand order creation and similar) are decoupled:
a failing subscriber is logged and never changes the conversion's
terminal state.

ERROR CODES:
    - CNV-FUL-001: Fulfillment subscriber failed

============================================================================
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from services.conversion_models import utc_now
from services.order_store import OrderSnapshot, OrderStore, ShippingAddress

# Configure module logger
logger = logging.getLogger(__name__)

ERROR_SUBSCRIBER_FAILED = "CNV-FUL-001"


@dataclass
class ConversionCompletedEvent:
    conversion_id: str
    order_ref: str
    net_fiat_amount: Decimal
    fiat_currency: str
    venue: str
    external_ref: Optional[str] = None
    correlation_id: Optional[str] = None
    completed_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversion_id": self.conversion_id,
            "order_ref": self.order_ref,
            "net_fiat_amount": str(self.net_fiat_amount),
            "fiat_currency": self.fiat_currency,
            "venue": self.venue,
            "external_ref": self.external_ref,
            "correlation_id": self.correlation_id,
            "completed_at": self.completed_at.isoformat(),
        }


Subscriber = Callable[[ConversionCompletedEvent], None]


class FulfillmentPublisher:
    """
    Synchronous fan-out to registered subscribers.

    USAGE:
        publisher = FulfillmentPublisher()
        publisher.subscribe(lambda event: create_pod_order(event))
        publisher.publish(event)
    """

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, event: ConversionCompletedEvent) -> int:
        """
        Deliver ``event`` to every subscriber.

        Returns:
            Number of subscribers that accepted the event
        """
        with self._lock:
            subscribers = list(self._subscribers)

        delivered = 0
        for subscriber in subscribers:
            try:
                subscriber(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"[{ERROR_SUBSCRIBER_FAILED}] Fulfillment subscriber failed | "
                    f"conversion_id={event.conversion_id} | order_ref={event.order_ref} | "
                    f"error={e} | correlation_id={event.correlation_id}"
                )
        logger.info(
            f"[FULFILLMENT] Conversion completed event published | "
            f"conversion_id={event.conversion_id} | delivered={delivered}/{len(subscribers)} | "
            f"correlation_id={event.correlation_id}"
        )
        return delivered


def build_fulfillment_draft(
    order: OrderSnapshot,
    event: ConversionCompletedEvent
) -> Dict[str, Any]:
    """
    Print-on-demand order draft for a completed conversion.

    Products are left empty; they are filled in when the order is placed
    with the print provider.
    """
    address = order.shipping_address or ShippingAddress()
    return {
        "original_order": order.order_ref,
        "conversion_id": event.conversion_id,
        "products": [],
        "shipping_info": {
            "first_name": address.first_name or "Customer",
            "last_name": address.last_name,
            "email": order.customer_email,
            "address1": address.street,
            "city": address.city,
            "region": address.state,
            "zip": address.postal_code,
            "country": address.country or "US",
        },
        "status": "ready",
        "total_cost": event.net_fiat_amount,
        "currency": event.fiat_currency,
    }


DraftSink = Callable[[Dict[str, Any]], None]


class FulfillmentDraftSubscriber:
    """
    Subscriber that turns a completion event into a fulfillment draft.

    Looks the order up, builds the draft with build_fulfillment_draft()
    and hands it to ``sink``. Without a sink the draft is only logged.

    Raises (caught and logged by the publisher as CNV-FUL-001):
        LookupError: Order no longer exists
    """

    def __init__(self, orders: OrderStore, sink: Optional[DraftSink] = None) -> None:
        self._orders = orders
        self._sink = sink

    def __call__(self, event: ConversionCompletedEvent) -> None:
        order = self._orders.get_order(event.order_ref)
        if order is None:
            raise LookupError(f"Order {event.order_ref} not found for fulfillment")

        draft = build_fulfillment_draft(order, event)
        logger.info(
            f"[FULFILLMENT] Draft ready | order_ref={event.order_ref} | "
            f"conversion_id={event.conversion_id} | "
            f"total_cost={draft['total_cost']} {draft['currency']} | "
            f"correlation_id={event.correlation_id}"
        )
        if self._sink is not None:
            self._sink(draft)


__all__ = [
    "ConversionCompletedEvent",
    "FulfillmentPublisher",
    "FulfillmentDraftSubscriber",
    "build_fulfillment_draft",
]
