import os
from datetime import datetime, timedelta

# must be set before the app module creates its engine
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from order_lifecycle import catalog, couriers, schemas
from order_lifecycle.db import init_db
from order_lifecycle.deps import get_db, get_now
from order_lifecycle.events import EventPublisher, get_publisher
from order_lifecycle.main import app

T0 = datetime(2026, 10, 16, 12, 0, 0)


class FrozenClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingPublisher(EventPublisher):
    def __init__(self):
        super().__init__(notification_url="")
        self.events = []

    def publish(self, event, cid="-"):
        self.events.append(event)
        super().publish(event, cid)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def client(session_factory, clock, publisher):
    def override_db():
        s = session_factory()
        try:
            yield s
        finally:
            s.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_now] = clock
    app.dependency_overrides[get_publisher] = lambda: publisher
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def restaurant(db, clock):
    return catalog.create_restaurant(
        db,
        schemas.RestaurantCreate(
            owner_id=900,
            name="Burger Barn",
            address="1 Main St",
            latitude=40.7128,
            longitude=-74.0060,
            delivery_fee=3.99,
        ),
        clock.now,
    )


@pytest.fixture
def dishes(db, clock, restaurant):
    burger = catalog.add_dish(db, restaurant.restaurant_id, schemas.DishCreate(name="Burger", price=5.00), clock.now)
    fries = catalog.add_dish(db, restaurant.restaurant_id, schemas.DishCreate(name="Fries", price=3.50), clock.now)
    return burger, fries


@pytest.fixture
def courier_pair(db, clock):
    alice = couriers.register_courier(db, "Alice", clock.now, bike_plate="AB-123", is_active=True)
    bob = couriers.register_courier(db, "Bob", clock.now, bike_plate="CD-456", is_active=True)
    return alice, bob


@pytest.fixture
def order_payload(restaurant, dishes):
    burger, fries = dishes
    return schemas.CreateOrderRequest(
        customer_id=7,
        restaurant_id=restaurant.restaurant_id,
        delivery_address="22 Elm St",
        items=[
            schemas.OrderItemRequest(dish_id=burger.dish_id, quantity=2),
            schemas.OrderItemRequest(dish_id=fries.dish_id, quantity=1),
        ],
    )
