import httpx
import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

import database
from api_client import StorefrontAPI
from config import settings
from main import app, get_payment_gateway
from paymongo import PayMongoClient

BASE_URL = "http://testserver"


def paymongo_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={
        "data": {
            "id": "link_test_1",
            "attributes": {"checkout_url": "https://pm.link/solespace/test"},
        }
    })


@pytest.fixture
def db():
    mock_db = AsyncMongoMockClient()["solespace_test"]
    database.use_database(mock_db)
    yield mock_db
    database.use_database(None)


@pytest.fixture
def gateway_handler():
    """Swap in a different handler to simulate PayMongo failures."""
    return {"handler": paymongo_ok, "requests": []}


@pytest.fixture(autouse=True)
def fake_gateway(gateway_handler):
    def handle(request: httpx.Request) -> httpx.Response:
        gateway_handler["requests"].append(request)
        return gateway_handler["handler"](request)

    app.dependency_overrides[get_payment_gateway] = lambda: PayMongoClient(
        secret_key="sk_test",
        base_url="https://api.paymongo.test/v1",
        app_url="http://shop.test",
        transport=httpx.MockTransport(handle),
    )
    yield
    app.dependency_overrides.pop(get_payment_gateway, None)


@pytest.fixture(autouse=True)
def no_csrf(monkeypatch):
    monkeypatch.setattr(settings, "CSRF_TOKEN", None)
    monkeypatch.setattr(settings, "PAYMONGO_WEBHOOK_SECRET", None)


@pytest.fixture
def client(db):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def seeded(client):
    res = client.post("/seed")
    assert res.status_code == 200
    return client


@pytest.fixture
async def add_product(db):
    async def add(product_id: int, name: str = "Trail Runner", price: float = 1200.0, stock: int = 10, variants=None):
        await db["product"].insert_one({
            "id": product_id,
            "name": name,
            "brand": "Stride",
            "category": "footwear",
            "price": price,
            "stock_quantity": stock,
            "image": None,
            "variants": variants or [],
        })
    return add


@pytest.fixture
async def api(db):
    """Client library wired straight to the FastAPI app."""
    client = StorefrontAPI(base_url=BASE_URL, transport=httpx.ASGITransport(app=app))
    yield client
    await client.aclose()


def customer(user_id: int) -> dict:
    return {"X-User-Id": str(user_id)}


ADDRESS = {
    "name": "Ana Santos",
    "phone": "0917 123 4567",
    "region": "CALABARZON",
    "province": "Quezon",
    "city": "Lucena City",
    "barangay": "Ibabang Dupay",
    "postal_code": "4301",
    "address_line": "123 Rizal Street",
    "is_default": False,
}
