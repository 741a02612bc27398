"""
Payment Intent Orchestrator
===========================
Creates (or re-uses) the provider-side payment intent for a pending order.

An order is bound to at most one intent: the reference is written with a
compare-and-set on NULL. When two creators race, the loser cancels the
intent it just made and returns the winner's.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import structlog

from pipeline.errors import (
    OrderNotFound,
    OrderNotPayable,
    PriceTooLow,
    ProductInactive,
    ProductNotFound,
)
from pipeline.payment_provider import IntentRecord, PaymentProvider
from schemas.domain import ZERO_DECIMAL_CURRENCIES, MessageType, Order, OrderStatus, OrderWithProduct
from services.data_hooks import on_payment_event
from storage.repository import IStorage

logger = structlog.get_logger(component="payment_orchestrator")

DEFAULT_MIN_CHARGE_MINOR_UNITS = 50


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Decimal amount -> integer minor units, rounding half up."""
    if currency.upper() not in ZERO_DECIMAL_CURRENCIES:
        amount = amount * 100
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass
class IntentHandle:
    client_secret: str
    payment_reference: str
    order_id: str
    amount: Decimal
    currency: str
    product_name: Optional[str] = None


class PaymentOrchestrator:
    """
    Example:
        orchestrator = PaymentOrchestrator(storage, provider)
        handle = await orchestrator.create_order_and_intent(product_id, buyer_id)
        # checkout page confirms with handle.client_secret
    """

    def __init__(
        self,
        storage: IStorage,
        provider: PaymentProvider,
        min_charge_minor_units: int = DEFAULT_MIN_CHARGE_MINOR_UNITS,
    ):
        self.storage = storage
        self.provider = provider
        self.min_charge_minor_units = min_charge_minor_units

    def _check_floor(self, amount: Decimal, currency: str) -> int:
        amount_minor = to_minor_units(amount, currency)
        if amount_minor < self.min_charge_minor_units:
            raise PriceTooLow(amount_minor, self.min_charge_minor_units)
        return amount_minor

    @staticmethod
    def _handle(order: OrderWithProduct, intent: IntentRecord) -> IntentHandle:
        return IntentHandle(
            client_secret=intent.client_secret,
            payment_reference=intent.id,
            order_id=order.id,
            amount=order.total_amount,
            currency=order.currency,
            product_name=order.product.name,
        )

    async def create_or_get_intent(self, order: OrderWithProduct) -> IntentHandle:
        """
        Return the intent bound to a pending order, creating it if needed.

        Raises:
            OrderNotPayable: order is not pending
            PriceTooLow: amount below the provider's minimum charge
        """
        log = logger.bind(order_id=order.id)

        if order.status != OrderStatus.PENDING:
            raise OrderNotPayable(order.id, order.status.value)

        if order.payment_reference:
            intent = await self.provider.retrieve_intent(order.payment_reference)
            log.info("intent_reused", payment_reference=intent.id)
            return self._handle(order, intent)

        amount_minor = self._check_floor(order.total_amount, order.currency)
        intent = await self.provider.create_intent(
            amount_minor,
            order.currency,
            metadata={
                "order_id": order.id,
                "buyer_id": order.buyer_id,
                "product_id": order.product_id,
                "product_name": order.product.name,
            },
        )

        bound = await self.storage.set_payment_reference(order.id, intent.id)
        if bound is not None:
            log.info("intent_bound", payment_reference=intent.id, amount_minor=amount_minor)
            return self._handle(order, intent)

        # A concurrent creator bound its intent first
        log.warning("intent_bind_conflict", discarded=intent.id)
        try:
            await self.provider.cancel_intent(intent.id)
        except Exception as e:
            log.error("intent_discard_failed", intent_id=intent.id, error=str(e))

        winner = await self.storage.get_order(order.id)
        if winner is None or not winner.payment_reference:
            raise OrderNotFound(order.id)
        existing = await self.provider.retrieve_intent(winner.payment_reference)
        return self._handle(winner, existing)

    async def create_order_and_intent(
        self,
        product_id: str,
        buyer_id: str,
        buyer_name: Optional[str] = None,
    ) -> IntentHandle:
        """
        Open a pending order for one unit of a product and create its intent.

        Raises:
            ProductNotFound: unknown product
            ProductInactive: product is switched off
            PriceTooLow: price below the minimum charge (no order is created)
        """
        product = await self.storage.get_product(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        if not product.active:
            raise ProductInactive(product_id)

        self._check_floor(product.price, product.currency)

        order = await self.storage.create_order(Order(
            buyer_id=str(buyer_id),
            buyer_name=buyer_name,
            product_id=product.id,
            quantity=1,
            total_amount=product.price,
            currency=product.currency,
        ))
        logger.info("order_created", order_id=order.id, product_id=product.id, buyer_id=order.buyer_id)

        joined = await self.storage.get_order(order.id)
        if joined is None:
            raise OrderNotFound(order.id)
        handle = await self.create_or_get_intent(joined)

        await on_payment_event(
            self.storage,
            order,
            MessageType.PAYMENT_CREATED,
            f"Payment intent created for {product.name} - {product.currency} {product.price}",
        )
        return handle

    async def get_intent_for_order(self, order_id: str) -> IntentHandle:
        order = await self.storage.get_order(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return await self.create_or_get_intent(order)
