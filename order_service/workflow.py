"""
workflow.py — Core Orchestration Logic for Order Placement

This module contains the workflow that places a single order. It coordinates
the three collaborators in a fixed sequence:

1. Check stock via the Inventory Service (synchronous, blocking)
2. Store the order, staging its OrderPlacedEvent in the outbox
3. Hand the OrderPlacedEvent to the event publisher (fire-and-forget)

Per request: Received → StockChecked → {Rejected | Persisted → Published}.

The steps are not one transaction. A crash between step 2 and step 3 leaves an
order whose event is still in the outbox; the outbox relay publishes it later.
"""

import functools
import logging
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional, Protocol

from pydantic import BaseModel

from .errors import InventoryUnavailable, OrderServiceError, OutOfStock, PersistenceFailure
from .models import Order, OrderConfirmation, OrderPlacedEvent, OrderRequest, StagedEvent

ORDER_PLACED_TOPIC = "order-placed"
CENT = Decimal("0.01")

log = logging.getLogger(__name__)


class StockVerifier(Protocol):
    def is_in_stock(self, sku_code: str, quantity: int) -> bool: ...


class OrderRepository(Protocol):
    def save(self, order: Order, staged_event: Optional[StagedEvent] = None) -> Order: ...

    def mark_dispatched(self, topic: str, key: str): ...


class EventPublisher(Protocol):
    def publish(self, topic: str, key: str, event: BaseModel, on_delivered=None): ...


class PlacementStatus(str, Enum):
    PLACED = "PLACED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PlacementResult:
    """
    Outcome of a placement.

    PLACED carries the confirmation, REJECTED an OutOfStock error and FAILED
    an infrastructure error (InventoryUnavailable or PersistenceFailure).
    """
    status: PlacementStatus
    confirmation: Optional[OrderConfirmation] = None
    error: Optional[OrderServiceError] = None

    @property
    def ok(self) -> bool:
        return self.status is PlacementStatus.PLACED

    @classmethod
    def placed(cls, confirmation: OrderConfirmation) -> "PlacementResult":
        return cls(PlacementStatus.PLACED, confirmation=confirmation)

    @classmethod
    def rejected(cls, error: OutOfStock) -> "PlacementResult":
        return cls(PlacementStatus.REJECTED, error=error)

    @classmethod
    def failed(cls, error: OrderServiceError) -> "PlacementResult":
        return cls(PlacementStatus.FAILED, error=error)


def new_order_number() -> str:
    """Returns a random 128-bit order number."""
    return str(uuid.uuid4())


def build_order_placed_event(order_number: str, request: OrderRequest) -> OrderPlacedEvent:
    details = request.userDetails
    return OrderPlacedEvent(
        orderNumber=order_number,
        email=(details.email if details else None) or "",
        firstName=(details.firstName if details else None) or "",
        lastName=(details.lastName if details else None) or "",
    )


class OrderOrchestrator:
    """
    Places orders. Holds no per-request state, so one instance can serve any
    number of concurrent requests.
    """

    def __init__(self, stock_verifier: StockVerifier, order_store: OrderRepository,
                 event_publisher: EventPublisher, topic: str = ORDER_PLACED_TOPIC):
        self._stock_verifier = stock_verifier
        self._order_store = order_store
        self._event_publisher = event_publisher
        self._topic = topic

    def place_order(self, request: OrderRequest) -> PlacementResult:
        """
        Executes the placement workflow for a single order request.

        Every external call is attempted at most once; retries are up to the caller.

        Args:
            request (OrderRequest): Validated order request.

        Returns:
            PlacementResult:
                - PLACED with the confirmation if the order was stored
                - REJECTED with OutOfStock if the item is not available
                - FAILED with InventoryUnavailable or PersistenceFailure

        The result does not depend on whether publishing the event succeeds.
        """
        log_prefix = f"[SKU: {request.skuCode}]"
        log.info(f"{log_prefix} Schritt 1: Prüfe Lagerbestand für Menge {request.quantity}...")

        try:
            in_stock = self._stock_verifier.is_in_stock(request.skuCode, request.quantity)
        except InventoryUnavailable as e:
            log.error(f"{log_prefix} Abgebrochen: Inventory Service nicht verfügbar ({e.reason}).")
            return PlacementResult.failed(e)

        if not in_stock:
            log.warning(f"{log_prefix} Abgelehnt: Artikel nicht auf Lager (OUT_OF_STOCK).")
            return PlacementResult.rejected(OutOfStock(request.skuCode))

        # Pricing policy: request price is a unit price, total rounded to cents
        order = Order(
            order_number=new_order_number(),
            sku_code=request.skuCode,
            price=(request.price * request.quantity).quantize(CENT, rounding=ROUND_HALF_UP),
            quantity=request.quantity,
        )
        log_prefix = f"[Order: {order.order_number}]"
        event = build_order_placed_event(order.order_number, request)

        log.info(f"{log_prefix} Schritt 2: Speichere Bestellung...")
        try:
            order = self._order_store.save(
                order, staged_event=StagedEvent(self._topic, order.order_number, event)
            )
        except PersistenceFailure as e:
            log.error(f"{log_prefix} Abgebrochen: Bestellung konnte nicht gespeichert werden.")
            return PlacementResult.failed(e)

        log.info(f"{log_prefix} Schritt 3: Start- Sende OrderPlacedEvent an '{self._topic}'.")
        try:
            self._event_publisher.publish(
                self._topic,
                order.order_number,
                event,
                on_delivered=functools.partial(self._order_store.mark_dispatched, self._topic, order.order_number),
            )
        except Exception as e:
            # Bestellung ist bereits gespeichert; der Outbox-Relay übernimmt den Versand
            log.error(f"{log_prefix} Übergabe an Publisher fehlgeschlagen: {e}. Event bleibt in der Outbox.")
        else:
            log.info(f"{log_prefix} End- OrderPlacedEvent an Publisher übergeben.")

        return PlacementResult.placed(OrderConfirmation.from_order(order))
