"""
============================================================================
Fiat Bridge v1.0.0
Order Store - Read-Only Order Lookup
============================================================================

The conversion engine never mutates orders. It reads the captured crypto
amount, the customer and the shipping address, and hands the rest to the
fulfillment hook.

Implementations:
- InMemoryOrderStore: dict-backed, for tests and local runs
- SqlOrderStore: SQLAlchemy text() lookup over the orders table

============================================================================
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

from services.conversion_models import as_utc

logger = logging.getLogger(__name__)


@dataclass
class ShippingAddress:
    first_name: str = "Customer"
    last_name: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "US"


@dataclass
class OrderSnapshot:
    """
    Paid order as seen by the conversion engine.

    Attributes:
        order_ref: Order identifier
        crypto_amount: Captured crypto amount
        crypto_currency: Captured crypto currency code
        user_id: Customer account id (None for guest checkout)
        customer_email: Contact email for fulfillment
        shipping_address: Destination for fulfillment
        items: Line items passed through to fulfillment
        account_created_at: Customer account creation time, if known
    """
    order_ref: str
    crypto_amount: Decimal
    crypto_currency: str
    user_id: Optional[str] = None
    customer_email: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    items: List[Dict[str, Any]] = field(default_factory=list)
    account_created_at: Optional[datetime] = None


class OrderStore(ABC):

    @abstractmethod
    def get_order(self, order_ref: str) -> Optional[OrderSnapshot]:
        """Return the order or None when it does not exist."""


class InMemoryOrderStore(OrderStore):
    """Dict-backed order lookup for tests and local runs."""

    def __init__(self, orders: Optional[List[OrderSnapshot]] = None) -> None:
        self._orders: Dict[str, OrderSnapshot] = {}
        self._lock = threading.Lock()
        for order in orders or []:
            self.add(order)

    def add(self, order: OrderSnapshot) -> None:
        with self._lock:
            self._orders[order.order_ref] = order

    def get_order(self, order_ref: str) -> Optional[OrderSnapshot]:
        with self._lock:
            return self._orders.get(order_ref)


# =============================================================================
# SQL Order Store
# =============================================================================

ORDER_SCHEMA_STATEMENT = """
    CREATE TABLE IF NOT EXISTS orders (
        order_ref VARCHAR(128) PRIMARY KEY,
        crypto_amount VARCHAR(64) NOT NULL,
        crypto_currency VARCHAR(16) NOT NULL,
        user_id VARCHAR(128),
        customer_email VARCHAR(256),
        shipping_address TEXT,
        items TEXT,
        account_created_at VARCHAR(32)
    )
"""


class SqlOrderStore(OrderStore):
    """
    Read-only order lookup over the shop's ``orders`` table.

    shipping_address and items are JSON text columns. crypto_amount is
    text so the captured precision survives the round trip.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def create_schema(self) -> None:
        session = self._session_factory()
        try:
            session.execute(text(ORDER_SCHEMA_STATEMENT))
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"[ORDER-STORE] Schema creation failed: {e}")
            raise
        finally:
            session.close()

    def get_order(self, order_ref: str) -> Optional[OrderSnapshot]:
        session = self._session_factory()
        try:
            row = session.execute(
                text("""
                    SELECT order_ref, crypto_amount, crypto_currency, user_id,
                           customer_email, shipping_address, items, account_created_at
                    FROM orders
                    WHERE order_ref = :order_ref
                """),
                {"order_ref": order_ref},
            ).fetchone()
        finally:
            session.close()

        if row is None:
            return None

        address = json.loads(row.shipping_address) if row.shipping_address else None
        return OrderSnapshot(
            order_ref=row.order_ref,
            crypto_amount=Decimal(row.crypto_amount),
            crypto_currency=row.crypto_currency,
            user_id=row.user_id,
            customer_email=row.customer_email,
            shipping_address=ShippingAddress(**address) if address else None,
            items=json.loads(row.items) if row.items else [],
            account_created_at=(
                as_utc(datetime.fromisoformat(row.account_created_at))
                if row.account_created_at else None
            ),
        )


__all__ = [
    "OrderStore",
    "OrderSnapshot",
    "ShippingAddress",
    "InMemoryOrderStore",
    "SqlOrderStore",
]
