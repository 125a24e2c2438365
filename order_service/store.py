"""
store.py — Durable Order Storage (SQLAlchemy)

This module persists placed orders and their staged outbound events.

Tables:
    - t_orders:        one row per placed order, unique order_number
    - t_order_outbox:  events written in the same transaction as their order,
                       marked as dispatched once the broker confirmed them

An order and its staged event are committed together or not at all, so a
crash after the commit can always be recovered by relaying the outbox.
"""

import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, Numeric, String, Text, create_engine, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .errors import OrderNotFound, PersistenceFailure
from .models import Order, StagedEvent

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./orders.db")

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class OrderRecord(Base):
    __tablename__ = "t_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    sku_code: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(19, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)


class OutboxRecord(Base):
    __tablename__ = "t_order_outbox"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("t_orders.id"), nullable=False)
    topic: Mapped[str] = mapped_column(String(255), nullable=False)
    message_key: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dispatched_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class OutboxMessage:
    """A staged event that has not been confirmed by the broker yet."""

    def __init__(self, topic: str, key: str, payload: str, created_at: datetime):
        self.topic = topic
        self.key = key
        self.payload = payload
        self.created_at = created_at

    def __repr__(self):
        return f"OutboxMessage(topic={self.topic!r}, key={self.key!r})"


def _to_order(record: OrderRecord) -> Order:
    return Order(
        id=record.id,
        order_number=record.order_number,
        sku_code=record.sku_code,
        price=record.price,
        quantity=record.quantity,
    )


class OrderStore:
    """
    Order repository backed by any database SQLAlchemy supports.
    Orders are only ever created and read; there is no update or delete.
    """

    def __init__(self, database_url: str = DATABASE_URL, engine=None):
        """
        Initializes the engine and session factory.

        Args:
            database_url (str): SQLAlchemy URL, ignored when `engine` is given.
            engine: An existing SQLAlchemy engine (used by tests).
        """
        if engine is None:
            connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
            engine = create_engine(database_url, connect_args=connect_args)
        self.engine = engine
        self._session_factory = sessionmaker(engine, expire_on_commit=False)

    def create_schema(self):
        """Creates all tables that do not exist yet."""
        Base.metadata.create_all(self.engine)

    def save(self, order: Order, staged_event: Optional[StagedEvent] = None) -> Order:
        """
        Stores a new order, optionally together with an outbound event.

        Both rows are written in one transaction which is committed before
        this method returns.

        Args:
            order (Order): The order to store. `id` must be unset.
            staged_event (StagedEvent | None): Event to stage in the outbox.

        Returns:
            Order: The stored order including its assigned id.

        Raises:
            PersistenceFailure: If the transaction could not be committed.
        """
        record = OrderRecord(
            order_number=order.order_number,
            sku_code=order.sku_code,
            price=order.price,
            quantity=order.quantity,
        )
        try:
            with self._session_factory.begin() as session:
                session.add(record)
                session.flush()
                if staged_event is not None:
                    session.add(OutboxRecord(
                        order_id=record.id,
                        topic=staged_event.topic,
                        message_key=staged_event.key,
                        payload=staged_event.event.model_dump_json(),
                        created_at=datetime.now(timezone.utc),
                    ))
        except SQLAlchemyError as e:
            log.error(f"[Order: {order.order_number}] Speichern fehlgeschlagen: {e}")
            raise PersistenceFailure(str(e)) from e

        return _to_order(record)

    def find_by_id(self, order_id: int) -> Order:
        """
        Loads an order by its store id.

        Raises:
            OrderNotFound: If no order with this id exists.
        """
        with self._session_factory() as session:
            record = session.get(OrderRecord, order_id)
            if record is None:
                raise OrderNotFound(order_id)
            return _to_order(record)

    def find_by_order_number(self, order_number: str) -> Optional[Order]:
        with self._session_factory() as session:
            record = session.scalars(
                select(OrderRecord).where(OrderRecord.order_number == order_number)
            ).one_or_none()
            return _to_order(record) if record else None

    def count_orders(self) -> int:
        with self._session_factory() as session:
            return session.scalar(select(func.count()).select_from(OrderRecord))

    # --- Outbox ---

    def pending_events(self, created_before: datetime, limit: int = 100) -> List[OutboxMessage]:
        """
        Returns staged events that were not dispatched yet, oldest first.

        Args:
            created_before (datetime): Only events staged before this moment are returned.
            limit (int): Maximum number of events.
        """
        with self._session_factory() as session:
            rows = session.scalars(
                select(OutboxRecord)
                .where(OutboxRecord.dispatched_at.is_(None))
                .where(OutboxRecord.created_at < created_before)
                .order_by(OutboxRecord.id)
                .limit(limit)
            ).all()
            return [OutboxMessage(r.topic, r.message_key, r.payload, r.created_at) for r in rows]

    def mark_dispatched(self, topic: str, key: str):
        """Marks the staged event for (topic, key) as confirmed by the broker."""
        with self._session_factory.begin() as session:
            session.execute(
                update(OutboxRecord)
                .where(OutboxRecord.topic == topic)
                .where(OutboxRecord.message_key == key)
                .where(OutboxRecord.dispatched_at.is_(None))
                .values(dispatched_at=datetime.now(timezone.utc))
            )
        log.debug(f"[Order: {key}] Outbox-Eintrag für '{topic}' als versendet markiert.")
