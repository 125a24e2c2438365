"""
errors.py — Error Types for Order Placement

Every failure the order service distinguishes has its own exception type so
that callers can branch on the cause instead of parsing messages.

Taxonomy:
    • OutOfStock          : business rejection (HTTP 409), not retried
    • InventoryUnavailable: Inventory Service unreachable or answered garbage (HTTP 503)
    • PersistenceFailure  : order could not be written (HTTP 500), nothing published
    • PublishFailure      : broker rejected or lost a message; logged by the publisher only
    • OrderNotFound       : lookup of an unknown order id (HTTP 404)
"""


class OrderServiceError(Exception):
    """
    Base class for all order service errors.

    Attributes:
        message (str): Human readable description.
        code (str): Stable machine readable error code.
        http_status (int): Status code used when the error reaches the REST API.
    """
    code = "ORDER_SERVICE_ERROR"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> dict:
        """Converts the error into the JSON body returned by the API."""
        return {"code": self.code, "message": self.message}


class OutOfStock(OrderServiceError):
    code = "OUT_OF_STOCK"
    http_status = 409

    def __init__(self, sku_code: str):
        super().__init__(f"Product with SkuCode {sku_code} is not in stock")
        self.sku_code = sku_code


class InventoryUnavailable(OrderServiceError):
    code = "INVENTORY_UNAVAILABLE"
    http_status = 503

    def __init__(self, sku_code: str, reason: str):
        super().__init__(f"Inventory check for SkuCode {sku_code} failed: {reason}")
        self.sku_code = sku_code
        self.reason = reason


class PersistenceFailure(OrderServiceError):
    code = "PERSISTENCE_FAILURE"
    http_status = 500

    def __init__(self, reason: str):
        super().__init__(f"Order could not be stored: {reason}")
        self.reason = reason


class PublishFailure(OrderServiceError):
    code = "PUBLISH_FAILURE"

    def __init__(self, topic: str, key: str, reason: str):
        super().__init__(f"Publishing to '{topic}' (key {key}) failed: {reason}")
        self.topic = topic
        self.key = key
        self.reason = reason


class OrderNotFound(OrderServiceError):
    code = "ORDER_NOT_FOUND"
    http_status = 404

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id
