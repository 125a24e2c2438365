"""
outbox.py — Relay for Staged Order Events

Every placed order is stored together with its OrderPlacedEvent in the outbox
table. The orchestrator publishes the event right away and the publisher marks
the outbox row once the broker confirmed it. Rows that stay unconfirmed (broker
down, process crashed before publishing) are picked up here and published
again, which makes delivery at-least-once.
"""

import functools
import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from .models import OrderPlacedEvent

OUTBOX_GRACE_SECONDS = float(os.environ.get("OUTBOX_GRACE_SECONDS", "30"))
OUTBOX_INTERVAL_SECONDS = float(os.environ.get("OUTBOX_INTERVAL_SECONDS", "10"))

log = logging.getLogger(__name__)


class OutboxRelay:
    """Republishes staged events that were not confirmed within a grace period."""

    def __init__(self, order_store, event_publisher,
                 grace_period: timedelta = timedelta(seconds=OUTBOX_GRACE_SECONDS),
                 batch_size: int = 100):
        self._order_store = order_store
        self._event_publisher = event_publisher
        self._grace_period = grace_period
        self._batch_size = batch_size

    def relay_pending(self, now: Optional[datetime] = None) -> int:
        """
        Hands every overdue staged event to the publisher.

        The grace period keeps the relay away from events whose first delivery
        attempt is probably still in flight. Events the publisher still holds
        in its queue are skipped, so a stalled broker does not pile up copies.

        Returns:
            int: Number of events handed to the publisher.
        """
        now = now or datetime.now(timezone.utc)
        messages = self._order_store.pending_events(
            created_before=now - self._grace_period, limit=self._batch_size
        )
        relayed = 0
        for message in messages:
            if self._event_publisher.is_in_flight(message.topic, message.key):
                continue
            event = OrderPlacedEvent.model_validate_json(message.payload)
            log.warning(f"[Order: {message.key}] Event aus Outbox wird erneut gesendet.")
            self._event_publisher.publish(
                message.topic,
                message.key,
                event,
                on_delivered=functools.partial(self._order_store.mark_dispatched, message.topic, message.key),
            )
            relayed += 1
        return relayed

    def run_forever(self, stop_event: threading.Event,
                    interval: float = OUTBOX_INTERVAL_SECONDS):
        """
        Relays pending events every `interval` seconds until `stop_event` is set.
        Errors are logged and the loop continues with the next round.
        """
        log.info("Outbox Relay startet...")
        while not stop_event.is_set():
            try:
                relayed = self.relay_pending()
                if relayed:
                    log.info(f"Outbox Relay: {relayed} Event(s) erneut an Publisher übergeben.")
            except Exception as e:
                log.error(f"Outbox Relay: Fehler beim Abarbeiten der Outbox. {e}. Neuer Versuch in {interval}s.")
            stop_event.wait(interval)
        log.info("Outbox Relay gestoppt.")
