"""
Pytest fixtures for edition ledger tests.

Provides test database setup, order/line item factories, a mocked commerce
platform, and admin API headers.
"""

from datetime import datetime, timedelta

import httpx
import pytest

from edition_ledger import create_app
from edition_ledger.extensions import db
from edition_ledger.models import Order, LineItem, Product
from edition_ledger.services.platform_client import ShopifyClient


ADMIN_TOKEN = "test-admin-token"
T0 = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ADMIN_API_TOKEN': ADMIN_TOKEN,
        'SHOPIFY_SHOP': 'test-shop.myshopify.com',
        'SHOPIFY_ACCESS_TOKEN': 'shpat_test',
        'PLATFORM_MAX_RETRIES': 2,
        'PLATFORM_BACKOFF_SECONDS': 0,
        'RECONCILE_CONCURRENCY': 3,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema (core deletes bypass the append-only ORM hooks)
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture
def admin_headers():
    return {'Authorization': f'Bearer {ADMIN_TOKEN}', 'X-Ledger-Actor': 'pytest'}


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_order(db_session):
    """Create an Order; keyword arguments override the paid/unfulfilled defaults."""
    counter = {"n": 1000}

    def _make(order_id=None, **fields):
        counter["n"] += 1
        values = {
            "order_name": f"#{counter['n']}",
            "order_number": str(counter["n"]),
            "financial_status": "paid",
            "fulfillment_status": None,
            "source": "platform",
            "customer_email": "collector@example.com",
            "customer_id": "cust-1",
            "created_at": T0,
        }
        values.update(fields)
        order = Order(id=order_id or f"ord-{counter['n']}", **values)
        db_session.add(order)
        db_session.commit()
        return order

    return _make


@pytest.fixture
def make_line_item(db_session):
    """Create a LineItem on an order; `minutes` offsets created_at from T0."""
    counter = {"n": 0}

    def _make(order, product_id="prod-1", minutes=0, line_item_id=None, **fields):
        counter["n"] += 1
        values = {
            "owner_email": order.customer_email,
            "owner_id": order.customer_id,
            "owner_name": "Ada Collector",
            "created_at": T0 + timedelta(minutes=minutes),
        }
        values.update(fields)
        item = LineItem(
            id=line_item_id or f"li-{counter['n']:03d}",
            order_id=order.id,
            product_id=product_id,
            **values,
        )
        db_session.add(item)
        db_session.commit()
        return item

    return _make


@pytest.fixture
def make_product(db_session):
    def _make(product_id="prod-1", edition_size=10, name="Harbour at Dusk"):
        product = Product(id=product_id, name=name, edition_size=edition_size)
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture
def numbers(db_session):
    """numbers(product_id) -> {line_item_id: edition_number}, read fresh from the DB."""
    def _numbers(product_id="prod-1") -> dict:
        db_session.expire_all()
        rows = db_session.query(LineItem).filter(LineItem.product_id == product_id).all()
        return {row.id: row.edition_number for row in rows}

    return _numbers


# =============================================================================
# MOCK COMMERCE PLATFORM
# =============================================================================

class FakePlatform:
    """
    In-memory Admin API backed by httpx.MockTransport.

    orders: {order_id: payload}; search by name matches payload["name"].
    failing: order ids whose GET raises a connect error every time.
    """

    def __init__(self):
        self.orders = {}
        self.failing = set()
        self.requests = []

    def add(self, order_id, **payload):
        payload.setdefault("id", order_id)
        payload.setdefault("name", f"#{order_id}")
        payload.setdefault("financial_status", "paid")
        payload.setdefault("fulfillment_status", None)
        payload.setdefault("cancelled_at", None)
        payload.setdefault("tags", "")
        payload.setdefault("status", "open")
        self.orders[str(order_id)] = payload
        return payload

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/orders.json"):
            name = request.url.params.get("name")
            hits = [o for o in self.orders.values() if o.get("name") == name]
            return httpx.Response(200, json={"orders": hits[:1]})

        order_id = path.rsplit("/", 1)[-1].removesuffix(".json")
        if order_id in self.failing:
            raise httpx.ConnectError("connection refused", request=request)
        if order_id not in self.orders:
            return httpx.Response(404, json={"errors": "Not Found"})
        return httpx.Response(200, json={"order": self.orders[order_id]})

    def client(self) -> ShopifyClient:
        return ShopifyClient(
            "test-shop.myshopify.com",
            "shpat_test",
            max_retries=2,
            backoff_base=0,
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def platform():
    return FakePlatform()
