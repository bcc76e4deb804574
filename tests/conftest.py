from datetime import timedelta

import mongomock
import pytest
from bson import ObjectId

import database
import inventory_reservation
import orders
import rate_limit
import site_settings
from database import utcnow
from schemas import CartItem, Coupon, Product


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def reservations(monkeypatch, clock):
    store = inventory_reservation.InMemoryReservationStore(clock=clock, autosweep=False)
    monkeypatch.setattr(inventory_reservation, "store", store)
    return store


@pytest.fixture(autouse=True)
def limiter(monkeypatch, clock):
    store = rate_limit.InMemoryRateLimitStore(clock=clock, autosweep=False)
    monkeypatch.setattr(rate_limit, "store", store)
    return store


@pytest.fixture
def mock_db(monkeypatch):
    db = mongomock.MongoClient()["storefront_test"]
    monkeypatch.setattr(database, "db", db)
    # mongomock cannot run transactions; the transactional path is exercised separately
    monkeypatch.setattr(orders, "transactions_supported", lambda: False)
    site_settings.invalidate_setting()
    yield db
    site_settings.invalidate_setting()


@pytest.fixture
def make_product(mock_db):
    def make(name="Duck Tee", price=15.0, stock=10, category="T-Shirts", **extra) -> str:
        product = Product(name=name, slug=name.lower().replace(" ", "-"), category=category, price=price,
                          count_in_stock=stock, images=[f"/images/{name}.jpg"], **extra)
        return str(mock_db["product"].insert_one(product.model_dump()).inserted_id)
    return make


@pytest.fixture
def make_coupon(mock_db):
    def make(code="SAVE10", **overrides) -> str:
        data = dict(
            code=code,
            description="Ten off",
            discount_type="fixed",
            discount_value=10,
            min_order_value=0,
            usage_limit=5,
            usage_per_user=1,
            start_date=utcnow() - timedelta(days=1),
            end_date=utcnow() + timedelta(days=1),
        )
        data.update(overrides)
        mock_db["coupon"].insert_one(Coupon(**data).model_dump())
        return code
    return make


@pytest.fixture
def make_user(mock_db):
    def make(email="ada@example.com", is_admin=False) -> dict:
        doc = {"name": "Ada", "email": email, "hashed_password": "x", "is_active": True, "is_admin": is_admin}
        doc["_id"] = mock_db["user"].insert_one(doc).inserted_id
        return doc
    return make


def cart_item(product_id: str, quantity: int = 1, price: float = 0.0, name: str = "Item", **extra) -> CartItem:
    return CartItem(product_id=product_id, client_id=str(ObjectId()), name=name, price=price,
                    quantity=quantity, **extra)
