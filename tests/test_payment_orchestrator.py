"""
Tests for payment intent creation and reuse.
"""
from decimal import Decimal

import pytest

from conftest import BUYER_ID, make_order
from pipeline.errors import (
    OrderNotFound,
    OrderNotPayable,
    PriceTooLow,
    ProductInactive,
    ProductNotFound,
)
from pipeline.payment_orchestrator import to_minor_units
from schemas.domain import MessageType, OrderStatus


@pytest.mark.parametrize("amount,currency,expected", [
    (Decimal("9.99"), "USD", 999),
    (Decimal("10.005"), "USD", 1001),
    (Decimal("0.004"), "EUR", 0),
    (Decimal("0.005"), "EUR", 1),
    (Decimal("500"), "JPY", 500),
    (Decimal("499.5"), "jpy", 500),
])
def test_to_minor_units(amount, currency, expected):
    assert to_minor_units(amount, currency) == expected


@pytest.mark.asyncio
async def test_create_order_and_intent(services, storage, provider, products):
    handle = await services.orchestrator.create_order_and_intent("prod_widget", BUYER_ID, buyer_name="alice")

    order = await storage.get_order(handle.order_id)
    assert order.status == OrderStatus.PENDING
    assert order.quantity == 1
    assert order.total_amount == Decimal("9.99")
    assert order.payment_reference == handle.payment_reference
    assert handle.client_secret == provider.intents[handle.payment_reference].client_secret
    assert handle.product_name == "Widget"

    intent = provider.created[0]
    assert intent.amount == 999
    assert intent.currency == "usd"
    assert intent.metadata == {
        "order_id": order.id,
        "buyer_id": BUYER_ID,
        "product_id": "prod_widget",
        "product_name": "Widget",
    }

    logged = await storage.get_recent_interactions()
    assert [e.message_type for e in logged] == [MessageType.PAYMENT_CREATED]


@pytest.mark.asyncio
async def test_zero_decimal_currency_is_not_scaled(services, provider, products):
    await services.orchestrator.create_order_and_intent("prod_yen", BUYER_ID)
    assert provider.created[0].amount == 500
    assert provider.created[0].currency == "jpy"


@pytest.mark.asyncio
async def test_unknown_product(services, products):
    with pytest.raises(ProductNotFound):
        await services.orchestrator.create_order_and_intent("prod_missing", BUYER_ID)


@pytest.mark.asyncio
async def test_inactive_product(services, storage, products):
    with pytest.raises(ProductInactive):
        await services.orchestrator.create_order_and_intent("prod_retired", BUYER_ID)
    assert await storage.get_orders_by_buyer(BUYER_ID) == []


@pytest.mark.asyncio
async def test_price_below_floor_creates_no_order(services, storage, provider, products):
    with pytest.raises(PriceTooLow) as exc_info:
        await services.orchestrator.create_order_and_intent("prod_sticker", BUYER_ID)

    assert exc_info.value.amount_minor == 25
    assert exc_info.value.minimum_minor == 50
    assert await storage.get_orders_by_buyer(BUYER_ID) == []
    assert provider.created == []


@pytest.mark.asyncio
async def test_existing_intent_is_reused(services, provider, products):
    handle = await services.orchestrator.create_order_and_intent("prod_widget", BUYER_ID)
    again = await services.orchestrator.get_intent_for_order(handle.order_id)

    assert again.payment_reference == handle.payment_reference
    assert again.client_secret == handle.client_secret
    assert len(provider.created) == 1


@pytest.mark.asyncio
async def test_non_pending_order_is_not_payable(services, storage, products):
    order = await make_order(storage, products["widget"], status=OrderStatus.PAID)
    with pytest.raises(OrderNotPayable):
        await services.orchestrator.get_intent_for_order(order.id)


@pytest.mark.asyncio
async def test_missing_order(services):
    with pytest.raises(OrderNotFound):
        await services.orchestrator.get_intent_for_order("nope")


@pytest.mark.asyncio
async def test_losing_bind_race_cancels_fresh_intent(services, storage, provider, products):
    stale = await make_order(storage, products["widget"])
    winner = await provider.create_intent(999, "usd", {"order_id": stale.id})
    await storage.set_payment_reference(stale.id, winner.id)

    # `stale` still has no reference, as if read before the winner bound
    handle = await services.orchestrator.create_or_get_intent(stale)

    assert handle.payment_reference == winner.id
    assert handle.client_secret == winner.client_secret
    assert len(provider.cancelled) == 1
    assert provider.cancelled[0] != winner.id
    assert (await storage.get_order(stale.id)).payment_reference == winner.id


@pytest.mark.asyncio
async def test_provider_failure_propagates(services, provider, products):
    provider.create_error = RuntimeError("card network down")
    with pytest.raises(RuntimeError):
        await services.orchestrator.create_order_and_intent("prod_widget", BUYER_ID)
