import uuid
from typing import Optional, List

import pytest
from fastapi.testclient import TestClient

from cart import MemoryCartStorage
from database import PersistenceError
from schemas import CartItem, PaymentResult

ROSE_OIL_ID = "3f1c2a9e-8b7d-4c6e-9a1b-2d3e4f5a6b7c"
SILK_WIG_ID = "a0b1c2d3-e4f5-4a6b-8c7d-9e0f1a2b3c4d"

VALID_SHIPPING = {
    "first_name": "Ama",
    "last_name": "Mensah",
    "email": "ama@example.com",
    "phone": "+233 54 601 4734",
    "address": "12 Oxford Street",
    "city": "Accra",
    "region": "Greater Accra",
}


def make_item(**overrides) -> CartItem:
    data = {
        "product_id": ROSE_OIL_ID,
        "name": "Rose Hair Oil",
        "unit_price": 100,
        "image": "https://cdn.example/rose.jpg",
        "quantity": 2,
        "slug": "rose-hair-oil",
        "max_stock": 5,
        "min_order_qty": 1,
    }
    data.update(overrides)
    return CartItem(**data)


class FakeOrderRepository:
    def __init__(self, fail_on: Optional[str] = None):
        self.fail_on = fail_on
        self.calls: List[str] = []
        self.orders: List[dict] = []
        self.items: List[dict] = []
        self.customers: List[dict] = []

    def _step(self, name):
        self.calls.append(name)
        if self.fail_on == name:
            raise PersistenceError(f"{name} failed")

    def insert_order(self, order) -> dict:
        self._step("insert_order")
        doc = {"id": str(uuid.uuid4()), **order.model_dump()}
        self.orders.append(doc)
        return doc

    def insert_order_items(self, items) -> List[dict]:
        self._step("insert_order_items")
        docs = [{"id": str(uuid.uuid4()), **it.model_dump()} for it in items]
        self.items.extend(docs)
        return docs

    def upsert_customer(self, customer) -> dict:
        self._step("upsert_customer")
        doc = customer.model_dump()
        self.customers.append(doc)
        return doc

    def get_order(self, order_id: str) -> Optional[dict]:
        return next((dict(o) for o in self.orders if o["id"] == order_id), None)

    def get_order_by_number(self, order_number: str) -> Optional[dict]:
        return next((dict(o) for o in self.orders if o["order_number"] == order_number), None)

    def get_order_items(self, order_id: str) -> List[dict]:
        return [it for it in self.items if it["order_id"] == order_id]


class FakeCatalog:
    def __init__(self, products=None):
        self.products = products or []
        self.batch_queries: List[List[str]] = []
        self.single_queries: List[str] = []

    def find_by_ids(self, ids):
        ids = list(ids)
        self.batch_queries.append(ids)
        return [{"id": p["id"], "metadata": p.get("metadata")} for p in self.products if p["id"] in ids]

    def find_by_slug_or_id(self, key):
        self.single_queries.append(key)
        for p in self.products:
            if p["slug"] == key or p["id"] == key:
                return {"id": p["id"], "metadata": p.get("metadata")}
        return None


class FakeGateway:
    def __init__(self, result: Optional[PaymentResult] = None, on_call=None):
        self.result = result or PaymentResult(success=True, url="https://pay.example/x")
        self.on_call = on_call
        self.requests = []

    async def initiate(self, request):
        self.requests.append(request)
        if self.on_call:
            self.on_call()
        return self.result


class FakeVerifier:
    def __init__(self, ok: bool = True):
        self.ok = ok
        self.actions = []

    async def verify(self, token, action):
        self.actions.append(action)
        return self.ok


@pytest.fixture
def storage():
    return MemoryCartStorage()


@pytest.fixture
def orders():
    return FakeOrderRepository()


@pytest.fixture
def catalog():
    return FakeCatalog([
        {"id": ROSE_OIL_ID, "slug": "rose-hair-oil", "metadata": {"preorder_shipping": "2-3 weeks"}},
        {"id": SILK_WIG_ID, "slug": "silk-wig", "metadata": {}},
    ])


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def session_user():
    return None


@pytest.fixture
def cart_id():
    return f"cart-{uuid.uuid4().hex[:8]}"


@pytest.fixture
def client(storage, orders, catalog, gateway, verifier, session_user):
    import main

    main.app.dependency_overrides[main.get_cart_storage] = lambda: storage
    main.app.dependency_overrides[main.get_order_repository] = lambda: orders
    main.app.dependency_overrides[main.get_product_catalog] = lambda: catalog
    main.app.dependency_overrides[main.get_payment_gateway] = lambda: gateway
    main.app.dependency_overrides[main.get_verifier] = lambda: verifier
    main.app.dependency_overrides[main.get_session_user] = lambda: session_user
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


class FlakyCartStorage(MemoryCartStorage):
    """Memory storage whose saves start failing once ``fail_saves`` is set."""

    def __init__(self):
        super().__init__()
        self.fail_saves = False

    def save(self, key: str, raw: str) -> None:
        if self.fail_saves:
            raise PersistenceError("Could not save cart: connection reset")
        super().save(key, raw)
