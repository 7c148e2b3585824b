"""Pytest configuration and fixtures."""

import os

# Keep the background loops out of API tests and never touch a file database
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import base64
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.errors import ProviderError
from app.db.base import Base
from app.db.session import get_db
from app.main import app
# Import all models to ensure they're registered with Base.metadata
from app.models import *
from app.services.locks import KeyedLock
from app.services.providers import (
    CourierState,
    DeliveryProvider,
    DeliveryRequest,
    GloriaFoodProvider,
    NormalizedOrder,
    ProviderConfig,
    ProviderDeliveryHandle,
    ProviderStatus,
)

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

DOORDASH_SECRET = base64.urlsafe_b64encode(b"s" * 32).decode().rstrip("=")


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    app.dependency_overrides.clear()


class FakeClock:
    """Controllable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FakeCourier(DeliveryProvider):
    """In-memory courier double.

    ``poll_results`` and ``request_results`` are consumed front to back;
    an item that is an exception is raised instead of returned.
    """

    platform_name = "doordash"

    def __init__(self):
        super().__init__()
        self.poll_results: List = []
        self.request_results: List = []
        self.poll_calls: List[str] = []
        self.requests: List[DeliveryRequest] = []

    async def submit_order(self, config: ProviderConfig, raw_payload) -> NormalizedOrder:
        raise self._unsupported("submit_order")

    async def request_delivery(self, config: ProviderConfig, request: DeliveryRequest) -> ProviderDeliveryHandle:
        self.requests.append(request)
        if self.request_results:
            result = self.request_results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return ProviderDeliveryHandle(
            external_delivery_id=request.external_delivery_id,
            raw_status="created",
            tracking_url=f"https://track.example/{request.external_delivery_id}",
        )

    async def poll_delivery_status(self, config: ProviderConfig, external_delivery_id: str) -> ProviderStatus:
        self.poll_calls.append(external_delivery_id)
        result = self.poll_results.pop(0) if self.poll_results else CourierState.UNCHANGED
        if isinstance(result, Exception):
            raise result
        if isinstance(result, CourierState):
            return ProviderStatus(external_delivery_id=external_delivery_id, state=result, raw_status=result.value)
        return result

    def parse_webhook(self, raw_payload):
        return []


@pytest.fixture
def fake_courier() -> FakeCourier:
    return FakeCourier()


@pytest.fixture
def providers(fake_courier):
    return {"gloria_food": GloriaFoodProvider(), "doordash": fake_courier}


@pytest.fixture
def locks() -> KeyedLock:
    return KeyedLock()


def _make_restaurant(db: Session, name: str, doordash: bool, suffix: str) -> Restaurant:
    restaurant = Restaurant(
        name=name,
        slug=f"{name.lower().replace(' ', '-')}",
        address="1 Main St, Springfield",
        phone="+15550100",
        latitude=40.7128,
        longitude=-74.0060,
    )
    restaurant.settings = RestaurantSettings(
        gloria_food_api_key="gf-api",
        gloria_food_store_id="store-1",
        gloria_food_master_key="gf-master",
        doordash_developer_id="dev-1" if doordash else None,
        doordash_key_id="key-1" if doordash else None,
        doordash_signing_secret=DOORDASH_SECRET if doordash else None,
        max_delivery_radius=10.0,
        delivery_fee=Decimal("3.50"),
    )
    db.add(restaurant)
    db.flush()
    db.add_all([
        WebhookConfig(
            restaurant_id=restaurant.id,
            platform=ProviderPlatform.GLORIA_FOOD,
            api_key=f"gf-key-{suffix}",
            is_active=True,
        ),
        WebhookConfig(
            restaurant_id=restaurant.id,
            platform=ProviderPlatform.DOORDASH,
            api_key=f"dd-key-{suffix}",
            api_secret=f"dd-secret-{suffix}",
            is_active=True,
        ),
    ])
    db.commit()
    db.refresh(restaurant)
    return restaurant


@pytest.fixture
def restaurant(db_session: Session) -> Restaurant:
    """Restaurant with DoorDash connected (courier deliveries)."""
    return _make_restaurant(db_session, "Test Kitchen", doordash=True, suffix="1")


@pytest.fixture
def self_fulfilled_restaurant(db_session: Session) -> Restaurant:
    """Restaurant without a courier integration."""
    return _make_restaurant(db_session, "Corner Cafe", doordash=False, suffix="2")


@pytest.fixture
def make_rider(db_session: Session, restaurant: Restaurant):
    def _make(**kwargs) -> Rider:
        values = {
            "restaurant_id": restaurant.id,
            "name": "Rider",
            "is_available": True,
            "current_load": 0,
            "max_concurrent_deliveries": 2,
            "last_latitude": 40.7130,
            "last_longitude": -74.0050,
        }
        values.update(kwargs)
        rider = Rider(**values)
        db_session.add(rider)
        db_session.commit()
        db_session.refresh(rider)
        return rider
    return _make


@pytest.fixture
def rider(make_rider) -> Rider:
    return make_rider(name="Alex")


@pytest.fixture
def make_delivery(db_session: Session, restaurant: Restaurant):
    """Create an order plus delivery directly in the given status."""
    counter = {"n": 0}

    def _make(status: DeliveryStatus = DeliveryStatus.CONFIRMED, rider: Optional[Rider] = None,
              provider: Optional[str] = "doordash", with_external_id: Optional[bool] = None) -> Delivery:
        counter["n"] += 1
        order = Order(
            restaurant_id=restaurant.id,
            provider="gloria_food",
            external_id=f"fixture-{counter['n']}",
            status=OrderStatus.CONFIRMED,
            fulfillment_type=FulfillmentType.DELIVERY,
            customer_name="Sam Customer",
            customer_phone="+15550199",
            dropoff_address="9 Elm St",
            dropoff_latitude=40.7200,
            dropoff_longitude=-74.0000,
            items=[{"name": "Pizza", "quantity": 1, "price": "12.00"}],
            total_amount=Decimal("12.00"),
            currency="USD",
        )
        db_session.add(order)
        db_session.flush()
        delivery = Delivery(
            order_id=order.id,
            restaurant_id=restaurant.id,
            provider=provider,
            status=status,
            poll_failure_count=0,
            pickup_latitude=restaurant.latitude,
            pickup_longitude=restaurant.longitude,
            dropoff_latitude=order.dropoff_latitude,
            dropoff_longitude=order.dropoff_longitude,
        )
        if rider is not None and status in RIDER_STATUSES:
            delivery.rider_id = rider.id
            if status in ACTIVE_RIDER_STATUSES:
                rider.current_load += 1
        if with_external_id or (with_external_id is None and STATUS_RANK[status] >= STATUS_RANK[DeliveryStatus.DISPATCHED]
                                and status not in (DeliveryStatus.CANCELLED, DeliveryStatus.FAILED)):
            db_session.add(delivery)
            db_session.flush()
            delivery.external_delivery_id = f"dlv-{delivery.id}"
        db_session.add(delivery)
        db_session.commit()
        db_session.refresh(delivery)
        return delivery
    return _make


def provider_error(kind: str, message: str = "boom") -> ProviderError:
    return ProviderError(kind, message, "doordash")
