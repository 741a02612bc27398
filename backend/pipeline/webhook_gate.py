"""
Webhook Ingestion Gate
======================
Entry point for payment-provider webhooks.

Pipeline per delivery:
1. Authenticate (provider signature) BEFORE parsing is trusted
2. Check-and-record the event id (at-most-once within the retention window)
3. Route by event type to a handler that drives the order ledger

A handler exception releases the event id so the provider's redelivery
is processed again; the ledger's transition guard absorbs any effect the
failed attempt already applied.
"""

from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional

import structlog

from pipeline.errors import AuthenticationFailure, OrderNotFound
from pipeline.idempotency import IIdempotencyGuard
from pipeline.order_ledger import OrderLedger
from pipeline.payment_provider import PaymentProvider
from schemas.domain import (
    ZERO_DECIMAL_CURRENCIES,
    MessageType,
    NotificationKind,
    OrderStatus,
    WebhookAck,
    format_amount,
)
from services.data_hooks import on_payment_event
from storage.repository import IStorage

logger = structlog.get_logger(component="webhook_gate")

WebhookHandler = Callable[[dict], Awaitable[WebhookAck]]


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

class WebhookRouter:
    """Event-type -> handler registry"""

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    async def route(self, event: dict) -> Optional[WebhookAck]:
        """Run the handler for the event's type. None when nothing is registered."""
        handler = self._handlers.get(event.get("type", "unknown"))
        if handler is None:
            return None
        return await handler(event)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())


def _event_object(event: dict) -> dict[str, Any]:
    return (event.get("data") or {}).get("object") or {}


def from_minor_units(amount: int, currency: str) -> Decimal:
    if currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return Decimal(amount) / 100


# =============================================================================
# GATE
# =============================================================================

class WebhookGate:
    """
    Example:
        gate = WebhookGate(provider, guard, ledger, storage)
        ack = await gate.handle(raw_body, request.headers.get("stripe-signature"))
    """

    def __init__(
        self,
        provider: PaymentProvider,
        guard: IIdempotencyGuard,
        ledger: OrderLedger,
        storage: IStorage,
    ):
        self.provider = provider
        self.guard = guard
        self.ledger = ledger
        self.storage = storage

        self.router = WebhookRouter()
        self._register_handlers()

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookAck:
        """
        Authenticate, deduplicate and process one webhook delivery.

        Raises:
            AuthenticationFailure: bad signature or malformed event
            Exception: whatever a handler raised (event id already released)
        """
        event = self.provider.verify_webhook(payload, signature)

        event_id = event.get("id")
        event_type = event.get("type", "unknown")
        if not event_id:
            raise AuthenticationFailure("Invalid payload")

        log = logger.bind(event_id=event_id, event_type=event_type)
        log.info("webhook_received")

        if not await self.guard.check_and_record(event_id):
            log.info("webhook_duplicate")
            return WebhookAck(status="already_processed", event_id=event_id, event_type=event_type)

        try:
            ack = await self.router.route(event)
        except Exception as e:
            await self.guard.release(event_id)
            log.error("webhook_handler_failed", error=str(e), error_type=type(e).__name__)
            raise

        if ack is None:
            log.info("webhook_ignored", reason="unhandled_event_type")
            return WebhookAck(status="ignored", event_id=event_id, event_type=event_type)

        ack.event_id = event_id
        ack.event_type = event_type
        log.info("webhook_processed", status=ack.status)
        return ack

    # =========================================================================
    # HANDLERS
    # =========================================================================

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register("payment_intent.succeeded")
        async def handle_succeeded(event: dict) -> WebhookAck:
            intent = _event_object(event)
            return await self._apply(
                intent.get("id"),
                OrderStatus.PAID,
                NotificationKind.PAYMENT_SUCCEEDED,
                MessageType.PAYMENT_SUCCESS,
                "Payment successful",
            )

        @self.router.register("payment_intent.payment_failed")
        async def handle_failed(event: dict) -> WebhookAck:
            intent = _event_object(event)
            return await self._apply(
                intent.get("id"),
                OrderStatus.CANCELLED,
                NotificationKind.PAYMENT_FAILED,
                MessageType.PAYMENT_FAILED,
                "Payment failed",
            )

        @self.router.register("payment_intent.canceled")
        async def handle_canceled(event: dict) -> WebhookAck:
            intent = _event_object(event)
            return await self._apply(
                intent.get("id"),
                OrderStatus.CANCELLED,
                NotificationKind.PAYMENT_CANCELED,
                MessageType.PAYMENT_CANCELED,
                "Payment canceled",
            )

        @self.router.register("charge.refunded")
        async def handle_refund(event: dict) -> WebhookAck:
            charge = _event_object(event)
            currency = charge.get("currency") or "usd"
            refunded = from_minor_units(charge.get("amount_refunded") or 0, currency)
            return await self._apply(
                charge.get("payment_intent"),
                OrderStatus.REFUNDED,
                NotificationKind.PAYMENT_REFUNDED,
                MessageType.PAYMENT_REFUNDED,
                "Refund processed",
                refunded_amount=refunded,
                refund_currency=currency,
            )

    async def _apply(
        self,
        reference: Optional[str],
        target: OrderStatus,
        notification: NotificationKind,
        message_type: MessageType,
        summary: str,
        **details,
    ) -> WebhookAck:
        log = logger.bind(payment_reference=reference, target=target.value)

        order = await self.ledger.find_by_payment_reference(reference) if reference else None
        if order is None:
            log.warning("webhook_order_not_found")
            return WebhookAck(status="no_order", detail={"payment_reference": reference})

        try:
            result = await self.ledger.transition(order.id, target, notification, **details)
        except OrderNotFound:
            log.warning("webhook_order_not_found", order_id=order.id)
            return WebhookAck(status="no_order", detail={"payment_reference": reference})

        if result.applied:
            if "refunded_amount" in details:
                currency = details["refund_currency"].upper()
                amount = f"{currency} {format_amount(details['refunded_amount'], currency)}"
            else:
                amount = f"{order.currency} {order.total_amount}"
            await on_payment_event(
                self.storage,
                result.order,
                message_type,
                f"{summary} for {order.product.name} - {amount}",
            )

        return WebhookAck(
            status="processed",
            detail={
                "order_id": order.id,
                "applied": result.applied,
                "order_status": result.order.status.value,
            },
        )
