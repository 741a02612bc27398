"""
Pytest configuration and shared fixtures.

Everything runs in-process: InMemoryStorage, FakePaymentProvider and a
recording Telegram double. No network, database or Redis.
"""
import json
from decimal import Decimal
from typing import Optional

import pytest
import pytest_asyncio

from api.container import assemble
from pipeline.idempotency import InMemoryIdempotencyGuard
from pipeline.payment_provider import FakePaymentProvider
from schemas.domain import Order, OrderStatus, OrderWithProduct, Product
from services.telegram_client import TelegramAPIError
from storage.repository import InMemoryStorage

APP_URL = "https://shop.example.com"
BOT_SECRET = "bot-secret"
BUYER_ID = "1001"


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingTelegram:
    """Bot API double that records every call"""

    def __init__(self):
        self.messages: list[dict] = []
        self.answered: list[str] = []
        self.webhooks: list[dict] = []
        self.fail_sends = False
        self.closed = False

    async def send_message(self, chat_id, text, reply_markup=None):
        if self.fail_sends:
            raise TelegramAPIError("sendMessage", "Forbidden: bot was blocked by the user", 403)
        self.messages.append({"chat_id": chat_id, "text": text, "reply_markup": reply_markup})
        return {"message_id": len(self.messages)}

    async def answer_callback_query(self, callback_query_id, text=None):
        self.answered.append(callback_query_id)
        return True

    async def set_webhook(self, url, secret_token=None):
        self.webhooks.append({"url": url, "secret_token": secret_token})
        return True

    async def close(self):
        self.closed = True

    def texts_to(self, chat_id) -> list[str]:
        return [m["text"] for m in self.messages if str(m["chat_id"]) == str(chat_id)]


# =============================================================================
# BUILDING BLOCKS
# =============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def telegram():
    return RecordingTelegram()


@pytest_asyncio.fixture
async def products(storage):
    """Seed catalog: one normal, one inactive, one below the charge floor, one JPY"""
    catalog = {
        "widget": Product(id="prod_widget", name="Widget", description="A fine widget", price=Decimal("9.99")),
        "retired": Product(id="prod_retired", name="Retired", price=Decimal("5.00"), active=False),
        "sticker": Product(id="prod_sticker", name="Sticker", price=Decimal("0.25")),
        "yen": Product(id="prod_yen", name="Tea", price=Decimal("500"), currency="jpy"),
    }
    for product in catalog.values():
        await storage.create_product(product)
    return catalog


@pytest_asyncio.fixture
async def services(storage, provider, telegram, clock, products):
    svc = assemble(
        storage=storage,
        provider=provider,
        telegram=telegram,
        app_url=APP_URL,
        webhook_guard=InMemoryIdempotencyGuard("stripe_events", 3600, clock=clock),
        bot_guard=InMemoryIdempotencyGuard("telegram_updates", 3600, clock=clock),
        telegram_secret=BOT_SECRET,
    )
    yield svc
    await svc.dispatcher.drain()


# =============================================================================
# HELPERS
# =============================================================================

async def make_order(
    storage: InMemoryStorage,
    product: Product,
    buyer_id: str = BUYER_ID,
    status: OrderStatus = OrderStatus.PENDING,
    reference: Optional[str] = None,
    **fields,
) -> OrderWithProduct:
    order = await storage.create_order(Order(
        buyer_id=buyer_id,
        buyer_name="alice",
        product_id=product.id,
        total_amount=product.price,
        currency=product.currency,
        status=status,
        **fields,
    ))
    if reference:
        await storage.set_payment_reference(order.id, reference)
    return await storage.get_order(order.id)


def stripe_event(event_id: str, event_type: str, obj: dict) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    }).encode("utf-8")


def intent_event(event_id: str, event_type: str, intent_id: str) -> bytes:
    return stripe_event(event_id, event_type, {"id": intent_id, "object": "payment_intent"})


def refund_event(event_id: str, intent_id: str, amount_refunded: int, currency: str = "usd") -> bytes:
    return stripe_event(event_id, "charge.refunded", {
        "id": f"ch_{event_id}",
        "object": "charge",
        "payment_intent": intent_id,
        "amount_refunded": amount_refunded,
        "currency": currency,
    })


def text_update(update_id: int, text: str, user_id: int = int(BUYER_ID)) -> dict:
    return {
        "update_id": update_id,
        "message": {
            "message_id": update_id,
            "from": {"id": user_id, "is_bot": False, "first_name": "Alice", "username": "alice"},
            "chat": {"id": user_id, "type": "private"},
            "date": 1700000000,
            "text": text,
        },
    }


def callback_update(update_id: int, data: str, user_id: int = int(BUYER_ID)) -> dict:
    return {
        "update_id": update_id,
        "callback_query": {
            "id": f"cb_{update_id}",
            "from": {"id": user_id, "is_bot": False, "first_name": "Alice", "username": "alice"},
            "message": {
                "message_id": update_id,
                "chat": {"id": user_id, "type": "private"},
                "date": 1700000000,
                "text": "menu",
            },
            "data": data,
        },
    }
