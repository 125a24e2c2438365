"""
main.py — FastAPI Entry Point for the Order Service

This module provides the REST API of the order service and is its composition
root: the orchestrator and its collaborators are created once at startup and
handed to each other explicitly.

Responsibilities:
    • Accept order submissions and answer with a confirmation or a rejection
    • Look up stored orders
    • Start and stop the event publisher and the outbox relay thread
    • Provide system health information
"""

import threading
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request

from .clients import InventoryClient, OrderEventPublisher
from .errors import OrderNotFound
from .logging_config import get_logger, setup_logging
from .models import Order, OrderConfirmation, OrderRequest
from .outbox import OutboxRelay
from .store import OrderStore
from .workflow import OrderOrchestrator

# Initialization
setup_logging()
log = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Wires the orchestrator with its collaborators and starts the background threads.

    Behavior:
        - The publisher worker and the outbox relay run as daemon threads.
        - On shutdown the relay is stopped first, then the publisher drains its queue.
    """
    log.info("Order-Service startet...")
    store = OrderStore()
    store.create_schema()
    inventory_client = InventoryClient()
    publisher = OrderEventPublisher()
    publisher.start()

    stop_relay = threading.Event()
    relay = OutboxRelay(store, publisher)
    relay_thread = threading.Thread(target=relay.run_forever, args=(stop_relay,), daemon=True)
    relay_thread.start()
    log.info("Outbox Relay Thread gestartet.")

    app.state.store = store
    app.state.orchestrator = OrderOrchestrator(inventory_client, store, publisher)
    yield

    stop_relay.set()
    relay_thread.join(timeout=5)
    publisher.stop()
    inventory_client.close()
    store.engine.dispose()
    log.info("Order-Service gestoppt.")


app = FastAPI(title="Order Service", lifespan=lifespan)


def get_orchestrator(request: Request) -> OrderOrchestrator:
    return request.app.state.orchestrator


def get_store(request: Request) -> OrderStore:
    return request.app.state.store


# API Endpoint: Place an order
@app.post("/api/order", status_code=201, response_model=OrderConfirmation)
def place_order(
        order_request: OrderRequest,
        orchestrator: OrderOrchestrator = Depends(get_orchestrator),
):
    """
    Places an order.

    Returns:
        OrderConfirmation: Order number, item, quantity and total price (HTTP 201).

    Raises:
        HTTPException(409): The item is not in stock.
        HTTPException(503): The Inventory Service could not be asked.
        HTTPException(500): The order could not be stored.
    """
    result = orchestrator.place_order(order_request)
    if not result.ok:
        raise HTTPException(status_code=result.error.http_status, detail=result.error.to_response())

    log.info(f"[Order: {result.confirmation.orderNumber}] Order Placed Successfully.")
    return result.confirmation


@app.get("/api/order/{order_id}", response_model=Order)
def get_order(order_id: int, store: OrderStore = Depends(get_store)):
    """Returns a stored order by its id, HTTP 404 if it does not exist."""
    try:
        return store.find_by_id(order_id)
    except OrderNotFound as e:
        raise HTTPException(status_code=e.http_status, detail=e.to_response())


# Health Check Endpoint
@app.get("/health")
def health_check():
    """
    Simple health check endpoint for monitoring systems and container orchestrators.

    Returns:
        dict: A basic JSON object indicating service availability.
    """
    return {"status": "ok"}
