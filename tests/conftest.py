"""Pytest fixtures for storefront tests."""

import mongomock
import pytest
from fastapi.testclient import TestClient

from cart import CartRepository, CartSession, MemoryCartCache
from catalog import Catalog
from schemas import ColorOption, OrderDraft, Product


class RecordingNotifier:
    """Remembers what would have been sent. With fail=True every send raises."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def _record(self, event, order):
        if self.fail:
            raise RuntimeError("smtp server unreachable")
        self.sent.append((event, order["tracking_id"]))

    def send_customer_order_confirmation(self, order):
        self._record("customer_order_confirmation", order)

    def send_admin_new_order_alert(self, order):
        self._record("admin_new_order_alert", order)

    def send_delivery_confirmation(self, order):
        self._record("delivery_confirmation", order)

    def events(self):
        return [event for event, _ in self.sent]


@pytest.fixture
def db():
    """A fresh in-memory MongoDB database."""
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def catalog(db):
    return Catalog(db)


@pytest.fixture
def cart_cache():
    return MemoryCartCache()


@pytest.fixture
def tee(catalog):
    """A product with 5 in stock and two colors."""
    product_id = catalog.create_product(Product(
        name="Cotton Tee",
        price=100,
        category="apparel",
        stock=5,
        images=["tee-front.jpg", "tee-back.jpg"],
        colors=[ColorOption(name="Red", value="red"), ColorOption(name="Black", value="black")],
    ))
    return catalog.find_product(product_id)


@pytest.fixture
def mug(catalog):
    product_id = catalog.create_product(Product(name="Enamel Mug", price=50, category="kitchen", stock=20))
    return catalog.find_product(product_id)


@pytest.fixture
def cart_session(db, catalog, cart_cache):
    session = CartSession(CartRepository(db, catalog), cart_cache, shopper_key="shopper@example.com")
    session.load()
    return session


def make_draft(**overrides):
    data = dict(
        name="Ayesha Khan",
        phone="03001234567",
        email="ayesha@example.com",
        address={"street": "12 Mall Road", "city": "Lahore", "province": "Punjab", "postal_code": "54000"},
        items=[{"product_id": "p1", "name": "Cotton Tee", "price": 250, "quantity": 2, "color": "red"}],
        subtotal=500,
        shipping_fee=0,
        payment_method="cod",
    )
    data.update(overrides)
    return OrderDraft(**data)


@pytest.fixture
def draft():
    return make_draft()


def auth_headers(user_id="u-shopper", email="shopper@example.com", name="Sana Shopper", role="customer"):
    from main import create_token

    return {"Authorization": f"Bearer {create_token(user_id, email, name=name, role=role)}"}


@pytest.fixture
def shopper_headers():
    return auth_headers()


@pytest.fixture
def admin_headers():
    return auth_headers(user_id="u-admin", email="admin@example.com", name="Admin", role="admin")


@pytest.fixture
def client(db, notifier, cart_cache):
    """TestClient wired to the in-memory database and recording notifier."""
    from database import get_db, get_db_or_none
    from main import app, get_cart_cache, get_notifier

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_db_or_none] = lambda: db
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_cart_cache] = lambda: cart_cache
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def offline_client(notifier, cart_cache):
    """TestClient with no database behind it."""
    from database import get_db, get_db_or_none
    from errors import UpstreamUnavailableError
    from main import app, get_cart_cache, get_notifier

    def no_database():
        raise UpstreamUnavailableError("Database not configured")

    app.dependency_overrides[get_db] = no_database
    app.dependency_overrides[get_db_or_none] = lambda: None
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_cart_cache] = lambda: cart_cache
    yield TestClient(app)
    app.dependency_overrides.clear()
