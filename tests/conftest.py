"""Shared fixtures: in-memory order store, fake collaborators, API test client."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from order_service.errors import PersistenceFailure
from order_service.main import app, get_orchestrator, get_store
from order_service.store import OrderStore
from order_service.workflow import OrderOrchestrator


class FakeStockVerifier:
    """Answers every stock query with a fixed value, or raises a given error."""

    def __init__(self, in_stock=True, error=None):
        self.in_stock = in_stock
        self.error = error
        self.calls = []

    def is_in_stock(self, sku_code, quantity):
        self.calls.append((sku_code, quantity))
        if self.error is not None:
            raise self.error
        return self.in_stock


class RecordingPublisher:
    """Records published events; confirms delivery immediately when `deliver` is set."""

    def __init__(self, deliver=True):
        self.deliver = deliver
        self.published = []

    def publish(self, topic, key, event, on_delivered=None):
        self.published.append((topic, key, event))
        if self.deliver and on_delivered is not None:
            on_delivered()

    def is_in_flight(self, topic, key):
        return False


class FailingStore:
    """Order store whose writes always fail."""

    def __init__(self):
        self.save_calls = 0

    def save(self, order, staged_event=None):
        self.save_calls += 1
        raise PersistenceFailure("database is unavailable")

    def mark_dispatched(self, topic, key):
        raise AssertionError("nothing may be dispatched")


@pytest.fixture
def store():
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool,
    )
    order_store = OrderStore(engine=engine)
    order_store.create_schema()
    yield order_store
    engine.dispose()


@pytest.fixture
def verifier():
    return FakeStockVerifier()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def orchestrator(verifier, store, publisher):
    return OrderOrchestrator(verifier, store, publisher)


@pytest.fixture
def api_client(orchestrator, store):
    """FastAPI test client; the lifespan is not run, collaborators are overridden."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_store] = lambda: store
    yield TestClient(app)
    app.dependency_overrides.clear()
