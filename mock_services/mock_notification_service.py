"""
mock_notification_service.py — Mock Consumer for Order Placed Events

This module simulates a downstream service (e.g. an e-mail notification service)
that consumes the OrderPlacedEvents published by the order service.

Purpose:
    • Verify end-to-end that placed orders are announced on the broker
    • Demonstrate consumer-side deduplication, since delivery is at-least-once

Communication Channels:
    - Exchange: 'order-placed' (topic)  ← OrderPlacedEvents, routing key = order number
    - Queue:    'notification.order-placed', bound with '#'

Because the outbox relay may deliver an event more than once, the consumer
remembers the order numbers it has already handled and acknowledges
duplicates without notifying again. The set of seen order numbers lives in
memory and is never pruned, which is fine for a short-lived mock but not for
a real consumer.
"""

import json
import logging
import os
import time

import pika
import pika.exceptions

logging.basicConfig(level=logging.INFO)
RABBITMQ_HOST = os.environ.get("RABBITMQ_HOST", "localhost")
RABBITMQ_USER = os.environ.get("RABBITMQ_USER", "guest")
RABBITMQ_PASSWORD = os.environ.get("RABBITMQ_PASSWORD", "guest")

ORDER_PLACED_EXCHANGE = "order-placed"
NOTIFICATION_QUEUE = "notification.order-placed"

_seen_order_numbers = set()


def get_mq_connection():
    """
    Establishes and returns a connection to the RabbitMQ message broker.

    Raises:
        pika.exceptions.AMQPConnectionError: If the broker is unavailable.
    """
    credentials = pika.PlainCredentials(RABBITMQ_USER, RABBITMQ_PASSWORD)
    return pika.BlockingConnection(
        pika.ConnectionParameters(host=RABBITMQ_HOST, credentials=credentials)
    )


def on_order_placed(ch, method, properties, body):
    """
    Callback function triggered when an OrderPlacedEvent arrives.

    Behavior:
        - Logs a simulated notification for new order numbers.
        - Acknowledges duplicates without notifying again.
        - Rejects malformed messages to Dead Letter Queue (DLQ).
    """
    try:
        data = json.loads(body)
        order_number = data["orderNumber"]
    except (ValueError, KeyError) as e:
        logging.error(f"[NOTIFY] Ungültige Nachricht erhalten: {e}")
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)  # In DLQ (falls konfiguriert)
        return

    if order_number in _seen_order_numbers:
        logging.info(f"[NOTIFY] Duplikat für Order {order_number} ignoriert.")
    else:
        _seen_order_numbers.add(order_number)
        recipient = data.get("email") or "<keine E-Mail>"
        name = " ".join(part for part in (data.get("firstName"), data.get("lastName")) if part)
        logging.info(f"[NOTIFY] Bestellbestätigung für Order {order_number} an {recipient} ({name or 'unbekannt'}).")

    ch.basic_ack(delivery_tag=method.delivery_tag)


def main():
    """
    Starts the consumer loop and reconnects every 5 seconds if the broker is lost.
    """
    logging.info("Mock Notification Service (MQ) startet...")
    while True:
        try:
            connection = get_mq_connection()
            channel = connection.channel()
            channel.exchange_declare(exchange=ORDER_PLACED_EXCHANGE, exchange_type='topic', durable=True)
            channel.queue_declare(queue=NOTIFICATION_QUEUE, durable=True)
            channel.queue_bind(queue=NOTIFICATION_QUEUE, exchange=ORDER_PLACED_EXCHANGE, routing_key='#')

            logging.info("[NOTIFY] Wartet auf neue Bestellungen. (Consumer aktiv)")
            channel.basic_consume(queue=NOTIFICATION_QUEUE, on_message_callback=on_order_placed)
            channel.start_consuming()
        except pika.exceptions.AMQPConnectionError as e:
            logging.warning(f"MQ-Verbindung fehlgeschlagen, versuche erneut in 5s... {e}")
            time.sleep(5)
        except KeyboardInterrupt:
            break


if __name__ == '__main__':
    main()
