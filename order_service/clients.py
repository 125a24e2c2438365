"""
This module provides communication clients for external systems used by the order service:
- Inventory Service (REST API), the stock verifier
- Message broker (RabbitMQ), the order event publisher
Each class encapsulates its protocol logic, error handling, and connection management.
"""

import logging
import os
import queue
import threading
from typing import Callable, Optional

import httpx
import pika
import pika.exceptions
from pydantic import BaseModel

from .errors import InventoryUnavailable, PublishFailure

# Service-Adressen (normalerweise aus Env Vars)
INVENTORY_SERVICE_URL = os.environ.get("INVENTORY_SERVICE_URL", "http://inventory_service:8082")
INVENTORY_TIMEOUT_SECONDS = float(os.environ.get("INVENTORY_TIMEOUT_SECONDS", "5.0"))
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "guest")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "guest")

log = logging.getLogger(__name__)


# --- Inventory Client (REST) ---
class InventoryClient:
    """
    Client for the Inventory Service (REST API).
    Answers whether a quantity of an item is currently in stock. The call is a
    pure query; nothing is reserved.
    """
    def __init__(self, base_url: str = INVENTORY_SERVICE_URL,
                 timeout: float = INVENTORY_TIMEOUT_SECONDS,
                 transport: Optional[httpx.BaseTransport] = None):
        """
        Initializes the HTTP client with proper timeout configuration.

        Args:
            base_url (str): Base URL of the Inventory Service.
            timeout (float): Overall timeout in seconds; connecting gets at most 3 seconds.
            transport (httpx.BaseTransport | None): Custom transport, e.g. httpx.MockTransport in tests.
        """
        timeout_config = httpx.Timeout(timeout, connect=min(timeout, 3.0))
        self.client = httpx.Client(base_url=base_url, timeout=timeout_config, transport=transport)

    def close(self):
        """Closes the HTTP client session."""
        self.client.close()

    def is_in_stock(self, sku_code: str, quantity: int) -> bool:
        """
        Asks the Inventory Service whether `quantity` units of `sku_code` are available.
        Args:
            sku_code (str): Item identifier, must not be empty.
            quantity (int): Requested quantity, must be positive.
        Returns:
            bool: True if the item is in stock in the requested quantity.
        Raises:
            InventoryUnavailable: If the service cannot be reached, times out,
                answers with an error status or with anything but a JSON boolean.
        """
        try:
            response = self.client.get("/api/inventory", params={"skuCode": sku_code, "quantity": quantity})
            response.raise_for_status()  # Löst HTTPStatusError bei 4xx/5xx aus
            in_stock = response.json()
        except httpx.TimeoutException as e:
            log.error(f"[SKU: {sku_code}] Inventory Service Timeout ({type(e).__name__}).")
            raise InventoryUnavailable(sku_code, "timeout") from e
        except httpx.HTTPStatusError as e:
            log.error(f"[SKU: {sku_code}] HTTP-Fehler beim Inventory Service: {e.response.status_code}")
            raise InventoryUnavailable(sku_code, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            log.error(f"[SKU: {sku_code}] Inventory Service nicht erreichbar: {e}")
            raise InventoryUnavailable(sku_code, str(e)) from e
        except ValueError as e:
            log.error(f"[SKU: {sku_code}] Ungültige JSON-Antwort vom Inventory Service.")
            raise InventoryUnavailable(sku_code, "malformed response") from e

        if not isinstance(in_stock, bool):
            log.error(f"[SKU: {sku_code}] Unerwartete Antwort vom Inventory Service: {in_stock!r}")
            raise InventoryUnavailable(sku_code, "malformed response")
        return in_stock


# --- Order Event Publisher (MQ) ---
def default_connection_factory():
    """
    Opens a RabbitMQ connection using the configured credentials.
    Raises:
        pika.exceptions.AMQPConnectionError: If the connection fails.
    """
    credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
    return pika.BlockingConnection(
        pika.ConnectionParameters(host=RABBITMQ_HOST, credentials=credentials, heartbeat=60)
    )


class _Envelope:
    __slots__ = ("topic", "key", "body", "on_delivered")

    def __init__(self, topic, key, body, on_delivered):
        self.topic = topic
        self.key = key
        self.body = body
        self.on_delivered = on_delivered


_STOP = object()


class OrderEventPublisher:
    """
    Fire-and-forget publisher for order events (RabbitMQ).

    `publish()` only enqueues the message and returns immediately. A single
    background worker thread owns the broker connection (pika connections are
    not thread-safe) and sends messages in submission order, so messages with
    the same key keep their order.

    Each topic is a durable topic exchange; the key is used as routing key.
    Messages are persistent and sent with publisher confirms. Failures are
    logged here and never reach the caller; redelivery is left to the outbox relay,
    which skips keys that still have a message queued here (`is_in_flight`).
    """
    def __init__(self, connection_factory: Callable = default_connection_factory):
        self._connection_factory = connection_factory
        self._queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self.connection = None
        self.channel = None
        self._declared = set()
        # (topic, key) -> Anzahl noch nicht abgearbeiteter Nachrichten
        self._in_flight = {}
        self._in_flight_lock = threading.Lock()

    def start(self):
        """Starts the background worker thread."""
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="order-event-publisher", daemon=True)
        self._thread.start()
        log.info("Order Event Publisher Thread gestartet.")

    def publish(self, topic: str, key: str, event: BaseModel,
                on_delivered: Optional[Callable[[], None]] = None):
        """
        Submits an event for asynchronous delivery.
        Args:
            topic (str): Name of the target exchange.
            key (str): Partition/ordering key, used as routing key.
            event (BaseModel): The event payload, serialized as JSON.
            on_delivered (callable | None): Called on the worker thread once the broker confirmed the message.
        """
        body = event.model_dump_json().encode("utf-8")
        with self._in_flight_lock:
            self._in_flight[(topic, key)] = self._in_flight.get((topic, key), 0) + 1
        self._queue.put(_Envelope(topic, key, body, on_delivered))

    def is_in_flight(self, topic: str, key: str) -> bool:
        """True while a message for (topic, key) is queued or being sent."""
        with self._in_flight_lock:
            return (topic, key) in self._in_flight

    def queued_messages(self) -> int:
        return self._queue.qsize()

    def wait_until_idle(self):
        """Blocks until every submitted message has been processed."""
        self._queue.join()

    def stop(self, timeout: float = 10.0):
        """
        Processes the remaining messages, then stops the worker and closes the connection.

        If the worker does not finish within `timeout`, the connection is left
        open: it still belongs to the worker thread.
        """
        if self._thread and self._thread.is_alive():
            self._queue.put(_STOP)
            self._thread.join(timeout)
            if self._thread.is_alive():
                log.warning(f"Order Event Publisher nach {timeout}s nicht beendet. Verbindung bleibt offen.")
                return
        self._thread = None
        self.close()

    def close(self):
        if self.connection and self.connection.is_open:
            self.connection.close()
        self.connection = None
        self.channel = None
        self._declared.clear()

    def _run(self):
        while True:
            envelope = self._queue.get()
            try:
                if envelope is _STOP:
                    return
                self._deliver(envelope)
            finally:
                if envelope is not _STOP:
                    self._release(envelope)
                self._queue.task_done()

    def _release(self, envelope: _Envelope):
        with self._in_flight_lock:
            remaining = self._in_flight.get((envelope.topic, envelope.key), 1) - 1
            if remaining > 0:
                self._in_flight[(envelope.topic, envelope.key)] = remaining
            else:
                self._in_flight.pop((envelope.topic, envelope.key), None)

    def _deliver(self, envelope: _Envelope):
        try:
            self._send(envelope)
        except PublishFailure as e:
            log.error(f"[Order: {envelope.key}] {e.message}")
            return
        except Exception as e:
            log.error(f"[Order: {envelope.key}] Unerwarteter Fehler beim Senden: {e}", exc_info=True)
            self._reset_connection()
            return

        log.info(f"[Order: {envelope.key}] Event an '{envelope.topic}' gesendet.")
        if envelope.on_delivered is not None:
            try:
                envelope.on_delivered()
            except Exception as e:
                log.error(f"[Order: {envelope.key}] Zustellbestätigung konnte nicht verarbeitet werden: {e}")

    def _connect(self):
        self.connection = self._connection_factory()
        self.channel = self.connection.channel()
        self.channel.confirm_delivery()
        self._declared.clear()
        log.info("Order Event Publisher mit RabbitMQ verbunden.")

    def _send(self, envelope: _Envelope):
        """
        Publishes one message.
        Raises:
            PublishFailure: If the broker is unreachable or did not confirm the message.
        """
        try:
            if not self.connection or self.connection.is_closed:
                self._connect()

            if envelope.topic not in self._declared:
                self.channel.exchange_declare(exchange=envelope.topic, exchange_type='topic', durable=True)
                self._declared.add(envelope.topic)

            self.channel.basic_publish(
                exchange=envelope.topic,
                routing_key=envelope.key,
                body=envelope.body,
                properties=pika.BasicProperties(
                    content_type='application/json',
                    delivery_mode=2,  # Macht Nachricht persistent
                    message_id=envelope.key,
                ),
                mandatory=False,
            )
        except pika.exceptions.AMQPError as e:
            # Verbindung verwerfen, beim nächsten Versand wird neu verbunden
            self._reset_connection()
            raise PublishFailure(envelope.topic, envelope.key, repr(e)) from e

    def _reset_connection(self):
        try:
            self.close()
        except (pika.exceptions.AMQPError, OSError):
            self.connection = None
            self.channel = None
            self._declared.clear()
