"""Order placement workflow: stock check, persistence, event hand-off."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

import order_service.workflow as workflow
from mock_services.mock_inventory_service import app as mock_inventory_app
from order_service.clients import InventoryClient
from order_service.errors import InventoryUnavailable, OutOfStock, PersistenceFailure
from order_service.models import OrderPlacedEvent, OrderRequest, UserDetails
from order_service.store import OrderStore
from order_service.workflow import ORDER_PLACED_TOPIC, OrderOrchestrator, PlacementStatus
from tests.conftest import FailingStore, FakeStockVerifier, RecordingPublisher


def make_request(sku="SKU-1", price="1000", quantity=1, user_details=None):
    return OrderRequest(skuCode=sku, price=Decimal(price), quantity=quantity, userDetails=user_details)


def test_in_stock_order_is_placed(orchestrator, store, publisher):
    result = orchestrator.place_order(make_request())

    assert result.status is PlacementStatus.PLACED
    assert result.ok
    assert result.error is None
    assert result.confirmation.orderNumber

    order = store.find_by_order_number(result.confirmation.orderNumber)
    assert order.sku_code == "SKU-1"
    assert order.quantity == 1
    assert store.count_orders() == 1


def test_in_stock_publishes_exactly_one_matching_event(orchestrator, publisher):
    result = orchestrator.place_order(make_request(sku="SKU-7", quantity=2))

    assert len(publisher.published) == 1
    topic, key, event = publisher.published[0]
    assert topic == ORDER_PLACED_TOPIC
    assert key == result.confirmation.orderNumber
    assert event.orderNumber == result.confirmation.orderNumber


def test_stock_check_uses_sku_and_quantity(orchestrator, verifier):
    orchestrator.place_order(make_request(sku="SKU-9", quantity=4))

    assert verifier.calls == [("SKU-9", 4)]


def test_total_price_is_unit_price_times_quantity(orchestrator, store):
    result = orchestrator.place_order(make_request(sku="SKU-3", price="12.50", quantity=3))

    assert result.confirmation.totalPrice == Decimal("37.50")
    assert store.find_by_order_number(result.confirmation.orderNumber).price == Decimal("37.50")


def test_out_of_stock_is_rejected_without_side_effects(store, publisher):
    verifier = FakeStockVerifier(in_stock=False)
    orchestrator = OrderOrchestrator(verifier, store, publisher)

    result = orchestrator.place_order(make_request(sku="SKU-2", price="500", quantity=3))

    assert result.status is PlacementStatus.REJECTED
    assert isinstance(result.error, OutOfStock)
    assert result.error.sku_code == "SKU-2"
    assert result.confirmation is None
    assert store.count_orders() == 0
    assert publisher.published == []


def test_inventory_failure_is_not_a_rejection(store, publisher):
    verifier = FakeStockVerifier(error=InventoryUnavailable("SKU-1", "timeout"))
    orchestrator = OrderOrchestrator(verifier, store, publisher)

    result = orchestrator.place_order(make_request())

    assert result.status is PlacementStatus.FAILED
    assert isinstance(result.error, InventoryUnavailable)
    assert store.count_orders() == 0
    assert publisher.published == []


def test_store_failure_publishes_nothing(verifier, publisher):
    failing_store = FailingStore()
    orchestrator = OrderOrchestrator(verifier, failing_store, publisher)

    result = orchestrator.place_order(make_request())

    assert result.status is PlacementStatus.FAILED
    assert isinstance(result.error, PersistenceFailure)
    assert failing_store.save_calls == 1
    assert len(publisher.published) == 0


def test_duplicate_order_number_fails_without_event(orchestrator, store, publisher, monkeypatch):
    monkeypatch.setattr(workflow, "new_order_number", lambda: "fixed-number")
    orchestrator.place_order(make_request())

    result = orchestrator.place_order(make_request())

    assert result.status is PlacementStatus.FAILED
    assert isinstance(result.error, PersistenceFailure)
    assert store.count_orders() == 1
    assert len(publisher.published) == 1


def test_missing_user_details_become_empty_strings(orchestrator, publisher):
    orchestrator.place_order(make_request())

    event = publisher.published[0][2]
    assert event.email == ""
    assert event.firstName == ""
    assert event.lastName == ""


def test_partial_user_details(orchestrator, publisher):
    orchestrator.place_order(make_request(user_details=UserDetails(email="jane@example.com", lastName=None)))

    event = publisher.published[0][2]
    assert event.email == "jane@example.com"
    assert event.firstName == ""
    assert event.lastName == ""


def test_full_user_details(orchestrator, publisher):
    details = UserDetails(email="jane@example.com", firstName="Jane", lastName="Doe")
    orchestrator.place_order(make_request(user_details=details))

    assert publisher.published[0][2] == OrderPlacedEvent(
        orderNumber=publisher.published[0][1], email="jane@example.com", firstName="Jane", lastName="Doe",
    )


def test_confirmed_delivery_clears_outbox(orchestrator, store):
    orchestrator.place_order(make_request())

    later = datetime.now(timezone.utc) + timedelta(hours=1)
    assert store.pending_events(created_before=later) == []


def test_unconfirmed_delivery_stays_in_outbox(verifier, store):
    orchestrator = OrderOrchestrator(verifier, store, RecordingPublisher(deliver=False))
    result = orchestrator.place_order(make_request())

    pending = store.pending_events(created_before=datetime.now(timezone.utc) + timedelta(hours=1))
    assert [m.key for m in pending] == [result.confirmation.orderNumber]


def test_publisher_error_does_not_fail_placement(verifier, store):
    class BrokenPublisher:
        def publish(self, topic, key, event, on_delivered=None):
            raise RuntimeError("queue closed")

    orchestrator = OrderOrchestrator(verifier, store, BrokenPublisher())

    result = orchestrator.place_order(make_request())

    assert result.status is PlacementStatus.PLACED
    assert store.count_orders() == 1


def test_concurrent_placements_get_distinct_order_numbers(tmp_path):
    store = OrderStore(f"sqlite:///{tmp_path / 'orders.db'}")
    store.create_schema()
    publisher = RecordingPublisher()
    orchestrator = OrderOrchestrator(FakeStockVerifier(), store, publisher)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(
            lambda i: orchestrator.place_order(make_request(sku=f"SKU-{i}")), range(25)
        ))

    numbers = {r.confirmation.orderNumber for r in results}
    assert all(r.ok for r in results)
    assert len(numbers) == 25
    assert store.count_orders() == 25
    assert {key for _, key, _ in publisher.published} == numbers
    store.engine.dispose()


def test_against_mock_inventory_service(store, publisher):
    inventory = InventoryClient(base_url="http://testserver")
    inventory.client = TestClient(mock_inventory_app)
    orchestrator = OrderOrchestrator(inventory, store, publisher)

    placed = orchestrator.place_order(make_request(sku="MFYP4X/A"))
    rejected = orchestrator.place_order(make_request(sku="OUT-OF-STOCK-1"))
    failed = orchestrator.place_order(make_request(sku="UNAVAILABLE-1"))

    assert placed.status is PlacementStatus.PLACED
    assert rejected.status is PlacementStatus.REJECTED
    assert failed.status is PlacementStatus.FAILED
    assert store.count_orders() == 1
    inventory.close()


def test_price_with_more_than_two_decimal_places_is_invalid():
    with pytest.raises(ValidationError):
        make_request(price="0.125")


def test_confirmation_total_survives_reload(orchestrator, store):
    # model_construct skips validation, the total is still rounded to cents before storing
    request = OrderRequest.model_construct(skuCode="SKU-1", price=Decimal("0.125"), quantity=1, userDetails=None)

    result = orchestrator.place_order(request)

    stored = store.find_by_id(store.find_by_order_number(result.confirmation.orderNumber).id)
    assert result.confirmation.totalPrice == Decimal("0.13")
    assert stored.price == result.confirmation.totalPrice
