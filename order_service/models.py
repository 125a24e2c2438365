"""
models.py — Data Models for Order Placement

This module defines the data structures used for order submission, persistence
and event publishing. It uses Pydantic models to ensure type safety and
automatic validation of incoming data.

Models:
    - UserDetails: Optional purchaser contact information.
    - OrderRequest: The order submission payload received via the API.
    - Order: The persisted order entity.
    - OrderPlacedEvent: The notification published after a successful placement.
    - OrderConfirmation: The acknowledgment returned to the caller.
    - StagedEvent: An event staged in the outbox together with its order.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UserDetails(BaseModel):
    """
    Purchaser contact information. Every field is optional.

    Attributes:
        email (str | None): Contact email address.
        firstName (str | None): First name of the purchaser.
        lastName (str | None): Last name of the purchaser.
    """
    email: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None


class OrderRequest(BaseModel):
    """
    Represents an order submission.

    Attributes:
        skuCode (str): Identifier of the ordered item. Must not be empty.
        price (Decimal): Unit price of the item. Must not be negative and has at
            most two decimal places.
        quantity (int): Number of units. Must be greater than zero.
        userDetails (UserDetails | None): Optional purchaser information.
    """
    skuCode: str = Field(..., min_length=1)
    price: Decimal = Field(..., ge=0, decimal_places=2)
    quantity: int = Field(..., gt=0)  # gt=0 bedeutet "greater than 0"
    userDetails: Optional[UserDetails] = None


class Order(BaseModel):
    """
    A placed order as it is stored.

    `id` is assigned by the store on save; `order_number` is the externally
    visible token and never changes after creation. `price` is the total
    price (unit price × quantity). Serialized with camelCase keys like the
    other API payloads.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: Optional[int] = None
    order_number: str
    sku_code: str
    price: Decimal
    quantity: int


class OrderPlacedEvent(BaseModel):
    """
    Announces a successful placement to downstream consumers.

    All fields are plain strings; purchaser fields that were not supplied are
    empty strings.
    """
    orderNumber: str
    email: str = ""
    firstName: str = ""
    lastName: str = ""


class OrderConfirmation(BaseModel):
    """Acknowledgment returned for a placed order."""
    orderNumber: str
    skuCode: str
    quantity: int
    totalPrice: Decimal

    @classmethod
    def from_order(cls, order: Order) -> "OrderConfirmation":
        return cls(
            orderNumber=order.order_number,
            skuCode=order.sku_code,
            quantity=order.quantity,
            totalPrice=order.price,
        )


@dataclass(frozen=True)
class StagedEvent:
    """An outbound event written to the outbox in the same transaction as its order."""
    topic: str
    key: str
    event: OrderPlacedEvent
