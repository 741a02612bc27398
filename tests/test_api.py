"""
HTTP surface tests using FastAPI TestClient.
"""
import asyncio
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from api.container import assemble
from api.server import create_app, is_valid_webhook_url
from config import ServerConfig
from conftest import APP_URL, BOT_SECRET, BUYER_ID, intent_event, make_order, text_update
from pipeline.idempotency import InMemoryIdempotencyGuard
from schemas.domain import OrderStatus, Product

ADMIN_KEY = "admin-key"
SIG = "test-signature"


@pytest.fixture
def settings():
    cfg = ServerConfig()
    cfg.ADMIN_API_KEY = ADMIN_KEY
    cfg.TELEGRAM_WEBHOOK_SECRET = BOT_SECRET
    cfg.APP_URL = APP_URL
    return cfg


@pytest.fixture
def catalog(storage):
    products = {
        "widget": Product(id="prod_widget", name="Widget", price=Decimal("9.99")),
        "retired": Product(id="prod_retired", name="Retired", price=Decimal("5.00"), active=False),
        "sticker": Product(id="prod_sticker", name="Sticker", price=Decimal("0.25")),
    }

    async def seed():
        for product in products.values():
            await storage.create_product(product)

    asyncio.run(seed())
    return products


@pytest.fixture
def app_services(storage, provider, telegram, catalog):
    return assemble(
        storage=storage,
        provider=provider,
        telegram=telegram,
        app_url=APP_URL,
        webhook_guard=InMemoryIdempotencyGuard("stripe_events"),
        bot_guard=InMemoryIdempotencyGuard("telegram_updates"),
        telegram_secret=BOT_SECRET,
    )


@pytest.fixture
def client(app_services, settings):
    with TestClient(create_app(app_services, settings)) as test_client:
        yield test_client


def order_in(storage, product, **kwargs):
    return asyncio.run(make_order(storage, product, **kwargs))


# =============================================================================
# HEALTH
# =============================================================================

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["processed_events"] == {"stripe_events": 0, "telegram_updates": 0}
    assert "X-Response-Time-Ms" in response.headers


# =============================================================================
# PAYMENT INTENTS
# =============================================================================

def test_create_payment_intent(client, storage, provider):
    response = client.post(
        "/api/create-payment-intent",
        json={"productId": "prod_widget", "buyerId": BUYER_ID, "buyerName": "alice"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["clientSecret"] == provider.created[0].client_secret
    assert body["productName"] == "Widget"
    assert body["currency"] == "USD"

    order = asyncio.run(storage.get_order(body["orderId"]))
    assert order.status == OrderStatus.PENDING
    assert order.payment_reference == provider.created[0].id


@pytest.mark.parametrize("body", [
    {},
    {"productId": "prod_widget"},
    {"productId": "", "buyerId": BUYER_ID},
])
def test_create_payment_intent_invalid_body(client, body):
    response = client.post("/api/create-payment-intent", json=body)
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid request data"
    assert response.json()["details"]


@pytest.mark.parametrize("product_id,status_code", [
    ("prod_missing", 404),
    ("prod_retired", 400),
    ("prod_sticker", 400),
])
def test_create_payment_intent_rejections(client, storage, product_id, status_code):
    response = client.post(
        "/api/create-payment-intent",
        json={"productId": product_id, "buyerId": BUYER_ID},
    )
    assert response.status_code == status_code
    assert "error" in response.json()
    assert asyncio.run(storage.get_orders_by_buyer(BUYER_ID)) == []


def test_create_payment_intent_provider_failure(client, provider):
    provider.create_error = RuntimeError("stripe down")
    response = client.post(
        "/api/create-payment-intent",
        json={"productId": "prod_widget", "buyerId": BUYER_ID},
    )
    assert response.status_code == 500
    assert response.json() == {"error": "Failed to create payment intent"}


def test_order_payment_intent_is_reused(client, provider):
    created = client.post(
        "/api/create-payment-intent",
        json={"productId": "prod_widget", "buyerId": BUYER_ID},
    ).json()

    response = client.post(f"/api/orders/{created['orderId']}/payment-intent")

    assert response.status_code == 200
    assert response.json() == {"clientSecret": created["clientSecret"], "orderId": created["orderId"]}
    assert len(provider.created) == 1


def test_order_payment_intent_for_paid_order(client, storage, catalog):
    order = order_in(storage, catalog["widget"], status=OrderStatus.PAID)
    response = client.post(f"/api/orders/{order.id}/payment-intent")
    assert response.status_code == 400


# =============================================================================
# PUBLIC ORDER VIEW
# =============================================================================

def test_public_order_hides_buyer_and_reference(client, storage, catalog):
    order = order_in(storage, catalog["widget"], reference="pi_secret")

    response = client.get(f"/api/orders/{order.id}")

    assert response.status_code == 200
    body = response.json()
    assert body["id"] == order.id
    assert body["status"] == "pending"
    assert body["product"]["name"] == "Widget"
    assert "buyer_id" not in body
    assert "payment_reference" not in body
    assert "pi_secret" not in response.text


def test_public_order_not_found(client):
    response = client.get("/api/orders/does-not-exist")
    assert response.status_code == 404
    assert "error" in response.json()


# =============================================================================
# STRIPE WEBHOOK
# =============================================================================

def test_stripe_webhook_marks_order_paid(client, storage, catalog, telegram):
    order = order_in(storage, catalog["widget"], reference="pi_1")

    response = client.post(
        "/api/stripe-webhook",
        content=intent_event("evt_1", "payment_intent.succeeded", "pi_1"),
        headers={"stripe-signature": SIG},
    )

    assert response.status_code == 200
    assert response.json()["received"] is True
    assert response.json()["status"] == "processed"
    assert asyncio.run(storage.get_order(order.id)).status == OrderStatus.PAID


def test_stripe_webhook_duplicate(client, storage, catalog):
    order_in(storage, catalog["widget"], reference="pi_1")
    payload = intent_event("evt_1", "payment_intent.succeeded", "pi_1")

    client.post("/api/stripe-webhook", content=payload, headers={"stripe-signature": SIG})
    response = client.post("/api/stripe-webhook", content=payload, headers={"stripe-signature": SIG})

    assert response.status_code == 200
    assert response.json()["status"] == "already_processed"


@pytest.mark.parametrize("headers", [{}, {"stripe-signature": "forged"}])
def test_stripe_webhook_bad_signature(client, headers):
    response = client.post(
        "/api/stripe-webhook",
        content=intent_event("evt_1", "payment_intent.succeeded", "pi_1"),
        headers=headers,
    )
    assert response.status_code == 400
    assert "error" in response.json()


def test_stripe_webhook_handler_failure(client, storage, catalog, app_services, monkeypatch):
    order_in(storage, catalog["widget"], reference="pi_1")

    async def broken(*args, **kwargs):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(app_services.ledger, "transition", broken)
    response = client.post(
        "/api/stripe-webhook",
        content=intent_event("evt_1", "payment_intent.succeeded", "pi_1"),
        headers={"stripe-signature": SIG},
    )

    assert response.status_code == 500
    assert response.json() == {"error": "Webhook processing failed"}


# =============================================================================
# TELEGRAM WEBHOOK
# =============================================================================

def test_telegram_webhook_requires_secret(client, telegram):
    response = client.post("/api/telegram-webhook", json=text_update(1, "/start"))
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}
    assert telegram.messages == []


def test_telegram_webhook_handles_update(client, telegram):
    response = client.post(
        "/api/telegram-webhook",
        json=text_update(1, "/start"),
        headers={"X-Telegram-Bot-Api-Secret-Token": BOT_SECRET},
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert "Welcome to our store" in telegram.messages[0]["text"]


def test_telegram_webhook_guard_outage_still_ok(client, telegram, app_services, monkeypatch):
    async def unavailable(event_id):
        raise ConnectionError("redis down")

    monkeypatch.setattr(app_services.bot_guard, "check_and_record", unavailable)
    response = client.post(
        "/api/telegram-webhook",
        json=text_update(2, "/start"),
        headers={"X-Telegram-Bot-Api-Secret-Token": BOT_SECRET},
    )

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert telegram.messages == []


def test_telegram_webhook_invalid_json(client, telegram):
    response = client.post(
        "/api/telegram-webhook",
        content=b"{not json",
        headers={"X-Telegram-Bot-Api-Secret-Token": BOT_SECRET, "content-type": "application/json"},
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert telegram.messages == []


# =============================================================================
# WEBHOOK MANAGEMENT
# =============================================================================

@pytest.mark.parametrize("headers", [{}, {"X-Admin-API-Key": "wrong"}])
def test_set_telegram_webhook_requires_admin_key(client, telegram, headers):
    response = client.post("/api/set-telegram-webhook", json={}, headers=headers)
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized - Admin API key required"}
    assert telegram.webhooks == []


def test_set_telegram_webhook_rejects_bad_url(client, telegram):
    response = client.post(
        "/api/set-telegram-webhook",
        json={"url": "http://10.0.0.5/hook"},
        headers={"X-Admin-API-Key": ADMIN_KEY},
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid webhook URL format"}
    assert telegram.webhooks == []


def test_set_telegram_webhook_defaults_to_app_url(client, telegram):
    response = client.post(
        "/api/set-telegram-webhook",
        json={},
        headers={"X-Admin-API-Key": ADMIN_KEY},
    )
    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "webhook_url": f"{APP_URL}/api/telegram-webhook",
        "secret_configured": True,
    }
    assert telegram.webhooks == [{"url": f"{APP_URL}/api/telegram-webhook", "secret_token": BOT_SECRET}]


@pytest.mark.parametrize("url,expected", [
    ("https://shop.example.com/api/telegram-webhook", True),
    ("http://localhost:5000/api/telegram-webhook", True),
    ("http://shop.example.com/hook", False),
    ("https://127.0.0.1/hook", False),
    ("https://192.168.1.10/hook", False),
    ("https://metadata.google.internal/computeMetadata", False),
    ("ftp://shop.example.com", False),
    ("not a url", False),
])
def test_is_valid_webhook_url(url, expected):
    assert is_valid_webhook_url(url) is expected
