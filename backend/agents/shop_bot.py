"""
Shop Bot Agent
==============
Conversational storefront on Telegram.

Commands:  /start, /products, /help, anything else -> fallback menu
Callbacks: show_products, my_orders, help, info_<product_id>, buy_<product_id>

Replies are best-effort: a failed sendMessage is logged and the update
still counts as handled.

pip install structlog httpx
"""

from typing import Awaitable, Callable, Optional

import structlog

from pipeline.errors import LifecycleError, PriceTooLow, ProductInactive, ProductNotFound
from pipeline.order_ledger import OrderLedger
from pipeline.payment_orchestrator import PaymentOrchestrator
from schemas.domain import STATUS_EMOJI, MessageType, NotificationKind
from schemas.telegram import (
    InlineKeyboardButton,
    InlineKeyboardMarkup,
    TelegramCallbackQuery,
    TelegramMessage,
    TelegramUser,
)
from services.data_hooks import on_bot_interaction
from storage.repository import IStorage

logger = structlog.get_logger(agent="shop_bot")

MAX_LISTED_PRODUCTS = 10
MAX_LISTED_ORDERS = 5


# =============================================================================
# MESSAGE TEXT
# =============================================================================

WELCOME_TEXT = (
    "🎉 <b>Welcome to our store!</b>\n\n"
    "I'm your personal shopping assistant bot. Here's what I can help you with:\n\n"
    "🛍️ Browse our products\n"
    "💳 Process secure payments\n"
    "📦 Track your orders\n"
    "❓ Get support\n\n"
    "Ready to start shopping?"
)

HELP_TEXT = (
    "🤖 <b>Bot Commands:</b>\n\n"
    "/start - Welcome message and main menu\n"
    "/products - Browse available products\n"
    "/help - Show this help message\n\n"
    "💡 <b>How to buy:</b>\n"
    "1. Use /products or click \"View Products\"\n"
    "2. Select a product you want\n"
    "3. Complete payment via secure Stripe checkout\n"
    "4. Receive confirmation and access\n\n"
    "🔒 All payments are processed securely through Stripe."
)

UNKNOWN_TEXT = (
    "❓ I didn't understand that command.\n\n"
    "Use /help to see available commands or click the buttons below:"
)

NO_PRODUCTS_TEXT = "🚫 No products available at the moment. Please check back later!"
NO_ORDERS_TEXT = "📦 You have no orders yet. Start shopping to see your orders here!"
PRODUCT_UNAVAILABLE_TEXT = "❌ Product not found or unavailable."
PURCHASE_UNAVAILABLE_TEXT = "❌ Sorry, this product is no longer available."
PRICE_TOO_LOW_TEXT = "❌ Sorry, this product can't be paid for online right now."
PURCHASE_ERROR_TEXT = "❌ Sorry, there was an error processing your request. Please try again later."
PRODUCTS_ERROR_TEXT = "❌ Sorry, there was an error loading products. Please try again later."
ORDERS_ERROR_TEXT = "❌ Sorry, there was an error loading your orders."


def _button(text: str, callback_data: Optional[str] = None, url: Optional[str] = None) -> InlineKeyboardButton:
    return InlineKeyboardButton(text=text, callback_data=callback_data, url=url)


BACK_TO_PRODUCTS = [_button("🛍️ Back to Products", "show_products")]


def display_name(user: Optional[TelegramUser]) -> Optional[str]:
    if user is None:
        return None
    return user.username or user.first_name or None


# =============================================================================
# SHOP BOT
# =============================================================================

class ShopBot:
    """
    Example:
        bot = ShopBot(telegram, storage, ledger, orchestrator, dispatcher, app_url)
        await bot.handle_message(update.message)
    """

    def __init__(
        self,
        channel,
        storage: IStorage,
        ledger: OrderLedger,
        orchestrator: PaymentOrchestrator,
        dispatcher,
        app_url: str,
    ):
        self.channel = channel
        self.storage = storage
        self.ledger = ledger
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher
        self.app_url = app_url.rstrip("/")

        self._commands: dict[str, Callable[[int, str], Awaitable[str]]] = {
            "/start": self.send_welcome,
            "/products": self.send_products,
            "/help": self.send_help,
        }
        self._callbacks: dict[str, Callable[[int, str], Awaitable[str]]] = {
            "show_products": self.send_products,
            "my_orders": self.send_orders,
            "help": self.send_help,
        }

    def checkout_url(self, order_id: str) -> str:
        return f"{self.app_url}/checkout?order={order_id}"

    async def _reply(self, chat_id: int, text: str, keyboard: Optional[InlineKeyboardMarkup] = None) -> str:
        try:
            await self.channel.send_message(chat_id, text, reply_markup=keyboard)
        except Exception as e:
            logger.warning("reply_failed", chat_id=chat_id, error=str(e))
        return text

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def handle_message(self, message: TelegramMessage) -> None:
        user = message.from_user
        actor_id = str(user.id if user else message.chat.id)
        text = message.text or ""

        command = text.split()[0].split("@")[0].lower() if text.startswith("/") else None
        if not text:
            response = ""
        else:
            handler = self._commands.get(command, self.send_unknown)
            response = await handler(message.chat.id, actor_id)

        await on_bot_interaction(
            self.storage,
            actor_id,
            display_name(user),
            MessageType.COMMAND if command else MessageType.TEXT,
            text,
            response,
        )

    async def handle_callback(self, callback: TelegramCallbackQuery) -> None:
        actor_id = str(callback.from_user.id)
        data = callback.data or ""
        chat_id = callback.message.chat.id if callback.message else None

        try:
            if not data or chat_id is None:
                logger.info("callback_skipped", has_data=bool(data), has_chat=chat_id is not None)
                response = ""
            elif data.startswith("buy_"):
                response = await self.purchase(chat_id, callback.from_user, data[len("buy_"):])
            elif data.startswith("info_"):
                response = await self.send_product_info(chat_id, data[len("info_"):])
            elif data in self._callbacks:
                response = await self._callbacks[data](chat_id, actor_id)
            else:
                logger.info("unknown_callback", data=data)
                response = ""

            await on_bot_interaction(
                self.storage,
                actor_id,
                display_name(callback.from_user),
                MessageType.CALLBACK,
                data,
                response,
            )
        finally:
            try:
                await self.channel.answer_callback_query(callback.id)
            except Exception as e:
                logger.warning("callback_answer_failed", callback_id=callback.id, error=str(e))

    # =========================================================================
    # HANDLERS
    # =========================================================================

    async def send_welcome(self, chat_id: int, actor_id: str) -> str:
        keyboard = InlineKeyboardMarkup.rows(
            [_button("🛍️ View Products", "show_products")],
            [_button("📦 My Orders", "my_orders")],
        )
        return await self._reply(chat_id, WELCOME_TEXT, keyboard)

    async def send_help(self, chat_id: int, actor_id: str) -> str:
        return await self._reply(chat_id, HELP_TEXT)

    async def send_unknown(self, chat_id: int, actor_id: str) -> str:
        keyboard = InlineKeyboardMarkup.rows(
            [_button("🛍️ View Products", "show_products")],
            [_button("❓ Help", "help")],
        )
        return await self._reply(chat_id, UNKNOWN_TEXT, keyboard)

    async def send_products(self, chat_id: int, actor_id: str) -> str:
        try:
            products = await self.storage.get_active_products(limit=MAX_LISTED_PRODUCTS)
        except Exception as e:
            logger.error("products_load_failed", error=str(e))
            return await self._reply(chat_id, PRODUCTS_ERROR_TEXT)

        if not products:
            return await self._reply(chat_id, NO_PRODUCTS_TEXT)

        lines = ["🛍️ <b>Available Products:</b>\n"]
        rows = []
        for index, product in enumerate(products, start=1):
            lines.append(
                f"{index}. <b>{product.name}</b>\n"
                f"💰 {product.currency} {product.price}\n"
                f"📝 {product.description}\n"
            )
            rows.append([
                _button(f"💳 Buy {product.name}", f"buy_{product.id}"),
                _button("ℹ️ More Info", f"info_{product.id}"),
            ])
        rows.append([_button("📦 My Orders", "my_orders")])

        return await self._reply(chat_id, "\n".join(lines), InlineKeyboardMarkup.rows(*rows))

    async def send_product_info(self, chat_id: int, product_id: str) -> str:
        product = await self.storage.get_product(product_id)
        if product is None or not product.active:
            return await self._reply(chat_id, PRODUCT_UNAVAILABLE_TEXT)

        text = (
            f"📦 <b>{product.name}</b>\n\n"
            f"💰 <b>Price:</b> {product.currency} {product.price}\n\n"
            f"📝 <b>Description:</b>\n{product.description}\n\n"
            "Ready to purchase?"
        )
        keyboard = InlineKeyboardMarkup.rows(
            [_button(f"💳 Buy Now - {product.currency} {product.price}", f"buy_{product.id}")],
            BACK_TO_PRODUCTS,
        )
        return await self._reply(chat_id, text, keyboard)

    async def send_orders(self, chat_id: int, actor_id: str) -> str:
        try:
            orders = await self.ledger.list_for_buyer(actor_id, limit=MAX_LISTED_ORDERS)
        except Exception as e:
            logger.error("orders_load_failed", buyer_id=actor_id, error=str(e))
            return await self._reply(chat_id, ORDERS_ERROR_TEXT)

        if not orders:
            return await self._reply(chat_id, NO_ORDERS_TEXT)

        lines = ["📦 <b>Your Orders:</b>\n"]
        for index, order in enumerate(orders, start=1):
            lines.append(
                f"{index}. <b>{order.product.name}</b>\n"
                f"💰 {order.currency} {order.total_amount}\n"
                f"📅 {order.created_at.strftime('%Y-%m-%d')}\n"
                f"{STATUS_EMOJI.get(order.status, '❓')} Status: {order.status.value.upper()}\n"
            )
        keyboard = InlineKeyboardMarkup.rows([_button("🛍️ Shop More", "show_products")])
        return await self._reply(chat_id, "\n".join(lines), keyboard)

    async def purchase(self, chat_id: int, user: TelegramUser, product_id: str) -> str:
        """Open an order with a payment intent and send the checkout link."""
        buyer_id = str(user.id)
        log = logger.bind(buyer_id=buyer_id, product_id=product_id)

        try:
            handle = await self.orchestrator.create_order_and_intent(
                product_id, buyer_id, buyer_name=display_name(user)
            )
        except (ProductNotFound, ProductInactive):
            return await self._reply(chat_id, PURCHASE_UNAVAILABLE_TEXT)
        except PriceTooLow:
            return await self._reply(chat_id, PRICE_TOO_LOW_TEXT)
        except LifecycleError as e:
            log.warning("purchase_rejected", error=e.message)
            return await self._reply(chat_id, PURCHASE_ERROR_TEXT)
        except Exception as e:
            log.error("purchase_failed", error=str(e), error_type=type(e).__name__)
            return await self._reply(chat_id, PURCHASE_ERROR_TEXT)

        order = await self.ledger.get(handle.order_id)
        url = self.checkout_url(handle.order_id)
        keyboard = InlineKeyboardMarkup.rows(
            [_button("🔗 Open Payment Link", url=url)],
            BACK_TO_PRODUCTS,
        )
        self.dispatcher.notify(order, NotificationKind.PAYMENT_CREATED, reply_markup=keyboard, checkout_url=url)
        log.info("purchase_initiated", order_id=handle.order_id)

        return f"Payment link sent for order {handle.order_id}"
