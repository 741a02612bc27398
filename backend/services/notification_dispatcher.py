# services/notification_dispatcher.py
# ============================================================================
# STOREFRONT BOT v1.0 — NOTIFICATION DISPATCHER
# ============================================================================
# Renders payment lifecycle messages and sends them to the buyer's chat.
#
# DELIVERY SEMANTICS:
# - Best effort: each send runs as its own asyncio task
# - Failures are logged, never retried, never propagated
# - A failed send never rolls back the transition that triggered it
# ============================================================================

import asyncio
from datetime import datetime
from typing import Any, Optional

import structlog

from schemas.domain import NotificationKind, OrderWithProduct, format_amount
from schemas.telegram import InlineKeyboardMarkup

logger = structlog.get_logger(component="notification_dispatcher")


# =============================================================================
# TEMPLATES
# =============================================================================

class TemplateManager:
    """HTML message templates per notification kind."""

    TEMPLATES = {
        NotificationKind.PAYMENT_CREATED: (
            "💳 <b>Payment Details</b>\n\n"
            "📦 <b>Product:</b> {product_name}\n"
            "💰 <b>Amount:</b> {currency} {amount}\n"
            "🆔 <b>Order ID:</b> {order_id}\n\n"
            "🔗 Complete your payment using this secure link:\n"
            "{checkout_url}\n\n"
            "⏱️ Your order will be confirmed once payment is completed.\n"
            "🔒 Payments are securely processed by Stripe."
        ),
        NotificationKind.PAYMENT_SUCCEEDED: (
            "🎉 <b>Payment Successful!</b>\n\n"
            "✅ Your payment for <b>{product_name}</b> has been processed successfully.\n\n"
            "💰 <b>Amount:</b> {currency} {amount}\n"
            "🆔 <b>Order ID:</b> {order_id}\n"
            "📅 <b>Date:</b> {date}\n\n"
            "Thank you for your purchase! 🛍️"
        ),
        NotificationKind.PAYMENT_FAILED: (
            "❌ <b>Payment Failed</b>\n\n"
            "💳 Unfortunately, your payment for <b>{product_name}</b> could not be processed.\n\n"
            "💰 <b>Amount:</b> {currency} {amount}\n"
            "🆔 <b>Order ID:</b> {order_id}\n\n"
            "Please try again or contact support if the issue persists."
        ),
        NotificationKind.PAYMENT_CANCELED: (
            "⏹️ <b>Payment Canceled</b>\n\n"
            "🚫 Your payment for <b>{product_name}</b> was canceled.\n\n"
            "💰 <b>Amount:</b> {currency} {amount}\n"
            "🆔 <b>Order ID:</b> {order_id}\n\n"
            "You can restart the payment process anytime by visiting the product again."
        ),
        NotificationKind.PAYMENT_REFUNDED: (
            "🔄 <b>Refund Processed</b>\n\n"
            "✅ Your refund for <b>{product_name}</b> has been processed successfully.\n\n"
            "💰 <b>Refunded Amount:</b> {refund_currency} {refunded_amount}\n"
            "🆔 <b>Order ID:</b> {order_id}\n"
            "📅 <b>Date:</b> {date}\n\n"
            "The refund will appear in your account within 5-10 business days."
        ),
    }

    def build_template_data(self, order: OrderWithProduct, details: dict[str, Any]) -> dict[str, Any]:
        refunded = details.get("refunded_amount")
        refund_currency = (details.get("refund_currency") or order.currency).upper()
        return {
            "product_name": order.product.name,
            "currency": order.currency,
            "amount": order.total_amount,
            "order_id": order.id,
            "date": datetime.utcnow().strftime("%Y-%m-%d %H:%M UTC"),
            "checkout_url": details.get("checkout_url", ""),
            "refund_currency": refund_currency,
            "refunded_amount": format_amount(
                refunded if refunded is not None else order.total_amount, refund_currency
            ),
        }

    def render(self, order: OrderWithProduct, kind: NotificationKind, details: dict[str, Any]) -> str:
        return self.TEMPLATES[kind].format(**self.build_template_data(order, details))


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    """
    Fire-and-forget delivery of lifecycle messages to the buyer's chat.

    Example:
        dispatcher = NotificationDispatcher(telegram_client)
        dispatcher.notify(order, NotificationKind.PAYMENT_SUCCEEDED)
        await dispatcher.drain()  # shutdown / tests only
    """

    def __init__(self, channel, template_manager: Optional[TemplateManager] = None):
        self._channel = channel
        self.templates = template_manager or TemplateManager()
        self._in_flight: set[asyncio.Task] = set()

    def render(self, order: OrderWithProduct, kind: NotificationKind, **details) -> str:
        return self.templates.render(order, kind, details)

    def notify(
        self,
        order: OrderWithProduct,
        kind: NotificationKind,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
        **details,
    ) -> asyncio.Task:
        """Schedule a send and return immediately."""
        text = self.render(order, kind, **details)
        task = asyncio.create_task(self._send(order, kind, text, reply_markup))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _send(
        self,
        order: OrderWithProduct,
        kind: NotificationKind,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup],
    ) -> bool:
        log = logger.bind(order_id=order.id, kind=kind.value)
        try:
            await self._channel.send_message(order.buyer_id, text, reply_markup=reply_markup)
        except Exception as e:
            log.warning("notification_failed", error=str(e), error_type=type(e).__name__)
            return False

        log.info("notification_sent")
        return True

    async def drain(self) -> None:
        """Wait for in-flight sends."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._in_flight)
