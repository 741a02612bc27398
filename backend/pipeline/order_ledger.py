"""
Order Ledger
============
Single owner of order status.

Transition table:
    pending -> paid
    pending -> cancelled
    paid    -> refunded

Any other request is a logged warning and a no-op, which is what makes
late, duplicated and out-of-order provider events safe: a stale
payment_failed arriving after payment_succeeded finds the order paid and
does nothing.

Every applied transition is a compare-and-set on the current status at
the storage layer, and is the only place notifications are triggered.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from pipeline.errors import OrderNotFound
from schemas.domain import NotificationKind, OrderStatus, OrderWithProduct
from storage.repository import IStorage

logger = structlog.get_logger(component="order_ledger")

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass
class TransitionResult:
    order: OrderWithProduct
    applied: bool


class OrderLedger:
    """
    Example:
        ledger = OrderLedger(storage, dispatcher)
        result = await ledger.transition(
            order_id, OrderStatus.PAID,
            notification=NotificationKind.PAYMENT_SUCCEEDED,
        )
        if result.applied:
            ...
    """

    def __init__(self, storage: IStorage, dispatcher=None):
        self.storage = storage
        self.dispatcher = dispatcher

    async def get(self, order_id: str) -> Optional[OrderWithProduct]:
        return await self.storage.get_order(order_id)

    async def find_by_payment_reference(self, reference: str) -> Optional[OrderWithProduct]:
        return await self.storage.get_order_by_payment_reference(reference)

    async def list_for_buyer(self, buyer_id: str, limit: Optional[int] = None) -> list[OrderWithProduct]:
        return await self.storage.get_orders_by_buyer(buyer_id, limit=limit)

    async def transition(
        self,
        order_id: str,
        target_status: OrderStatus,
        notification: Optional[NotificationKind] = None,
        **details,
    ) -> TransitionResult:
        """
        Move an order to `target_status` if the table allows it.

        Args:
            order_id: Order to transition
            target_status: Desired status
            notification: Kind of buyer notification to send when applied
            **details: Extra template data for the notification

        Returns:
            TransitionResult with the current order and whether it changed

        Raises:
            OrderNotFound: no such order
        """
        log = logger.bind(order_id=order_id, target=target_status.value)

        current = await self.storage.get_order(order_id)
        if current is None:
            raise OrderNotFound(order_id)

        if not can_transition(current.status, target_status):
            log.warning("transition_rejected", current=current.status.value)
            return TransitionResult(order=current, applied=False)

        updated = await self.storage.compare_and_set_status(order_id, current.status, target_status)
        if updated is None:
            # Another writer moved the order between our read and the CAS
            latest = await self.storage.get_order(order_id) or current
            log.warning(
                "transition_lost_race",
                expected=current.status.value,
                current=latest.status.value,
            )
            return TransitionResult(order=latest, applied=False)

        order = current.model_copy(update={
            "status": updated.status,
            "updated_at": updated.updated_at,
        })
        log.info("transition_applied", previous=current.status.value)

        if notification is not None and self.dispatcher is not None:
            self.dispatcher.notify(order, notification, **details)

        return TransitionResult(order=order, applied=True)
