"""
Tests for the order state machine.
"""
import asyncio
from datetime import datetime

import pytest
from structlog.testing import capture_logs

from conftest import BUYER_ID, make_order
from pipeline.errors import OrderNotFound
from pipeline.order_ledger import can_transition
from schemas.domain import NotificationKind, OrderStatus

ALLOWED = {
    (OrderStatus.PENDING, OrderStatus.PAID),
    (OrderStatus.PENDING, OrderStatus.CANCELLED),
    (OrderStatus.PAID, OrderStatus.REFUNDED),
}


@pytest.mark.parametrize("current", list(OrderStatus))
@pytest.mark.parametrize("target", list(OrderStatus))
def test_transition_table(current, target):
    assert can_transition(current, target) is ((current, target) in ALLOWED)


@pytest.mark.asyncio
async def test_applied_transition_updates_status_and_notifies(services, storage, products, telegram):
    order = await make_order(storage, products["widget"], reference="pi_1")

    result = await services.ledger.transition(
        order.id, OrderStatus.PAID, notification=NotificationKind.PAYMENT_SUCCEEDED
    )
    await services.dispatcher.drain()

    assert result.applied is True
    assert result.order.status == OrderStatus.PAID
    assert result.order.updated_at >= order.updated_at
    assert (await storage.get_order(order.id)).status == OrderStatus.PAID
    texts = telegram.texts_to(BUYER_ID)
    assert len(texts) == 1
    assert "Payment Successful" in texts[0]


@pytest.mark.asyncio
async def test_disallowed_transition_is_logged_noop(services, storage, products, telegram):
    order = await make_order(storage, products["widget"], status=OrderStatus.PAID)

    with capture_logs() as logs:
        result = await services.ledger.transition(
            order.id, OrderStatus.CANCELLED, notification=NotificationKind.PAYMENT_FAILED
        )
    await services.dispatcher.drain()

    assert result.applied is False
    assert result.order.status == OrderStatus.PAID
    assert telegram.messages == []
    assert any(e["event"] == "transition_rejected" and e["log_level"] == "warning" for e in logs)


@pytest.mark.asyncio
async def test_terminal_states_never_move(services, storage, products):
    for status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
        order = await make_order(storage, products["widget"], status=status)
        for target in OrderStatus:
            result = await services.ledger.transition(order.id, target)
            assert result.applied is False
        assert (await storage.get_order(order.id)).status == status


@pytest.mark.asyncio
async def test_missing_order_raises(services):
    with pytest.raises(OrderNotFound):
        await services.ledger.transition("no-such-order", OrderStatus.PAID)


@pytest.mark.asyncio
async def test_transition_without_notification_sends_nothing(services, storage, products, telegram):
    order = await make_order(storage, products["widget"])
    result = await services.ledger.transition(order.id, OrderStatus.CANCELLED)
    await services.dispatcher.drain()
    assert result.applied is True
    assert telegram.messages == []


@pytest.mark.asyncio
async def test_concurrent_conflicting_transitions_apply_once(services, storage, products, telegram):
    order = await make_order(storage, products["widget"])

    results = await asyncio.gather(
        services.ledger.transition(order.id, OrderStatus.PAID, NotificationKind.PAYMENT_SUCCEEDED),
        services.ledger.transition(order.id, OrderStatus.CANCELLED, NotificationKind.PAYMENT_FAILED),
        services.ledger.transition(order.id, OrderStatus.PAID, NotificationKind.PAYMENT_SUCCEEDED),
    )
    await services.dispatcher.drain()

    assert sum(r.applied for r in results) == 1
    final = await storage.get_order(order.id)
    assert final.status in (OrderStatus.PAID, OrderStatus.CANCELLED)
    assert len(telegram.messages) == 1


@pytest.mark.asyncio
async def test_list_for_buyer_most_recent_first(services, storage, products):
    first = await make_order(storage, products["widget"], created_at=datetime(2024, 1, 1))
    second = await make_order(storage, products["widget"], created_at=datetime(2024, 2, 1))
    await make_order(storage, products["widget"], buyer_id="someone-else")

    orders = await services.ledger.list_for_buyer(BUYER_ID)
    assert [o.id for o in orders] == [second.id, first.id]
    assert len(await services.ledger.list_for_buyer(BUYER_ID, limit=1)) == 1


@pytest.mark.asyncio
async def test_find_by_payment_reference(services, storage, products):
    order = await make_order(storage, products["widget"], reference="pi_lookup")
    found = await services.ledger.find_by_payment_reference("pi_lookup")
    assert found.id == order.id
    assert await services.ledger.find_by_payment_reference("pi_missing") is None
