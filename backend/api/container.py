# api/container.py
# ============================================================================
# STOREFRONT BOT v1.0 — SERVICE CONTAINER
# ============================================================================
# Explicit construction of every lifecycle component from ServerConfig.
# The FastAPI lifespan owns the result; tests build their own.
# ============================================================================

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import structlog

from agents.shop_bot import ShopBot
from config import ServerConfig
from pipeline.bot_gate import BotGate
from pipeline.idempotency import IIdempotencyGuard, build_guard
from pipeline.order_ledger import OrderLedger
from pipeline.payment_orchestrator import PaymentOrchestrator
from pipeline.payment_provider import FakePaymentProvider, PaymentProvider, StripePaymentProvider
from pipeline.webhook_gate import WebhookGate
from schemas.domain import Product
from services.notification_dispatcher import NotificationDispatcher
from services.telegram_client import TelegramClient, TelegramConfig
from storage.repository import InMemoryStorage, IStorage

logger = structlog.get_logger(component="container")

WEBHOOK_NAMESPACE = "stripe_events"
BOT_NAMESPACE = "telegram_updates"

DEMO_PRODUCTS = [
    Product(name="Starter Pack", description="Everything you need to get going", price=Decimal("9.99")),
    Product(name="Pro Bundle", description="Our most popular bundle", price=Decimal("29.00")),
    Product(name="Sticker", description="A single sticker", price=Decimal("0.25")),
]


@dataclass
class Services:
    storage: IStorage
    provider: PaymentProvider
    telegram: Any
    dispatcher: NotificationDispatcher
    ledger: OrderLedger
    orchestrator: PaymentOrchestrator
    webhook_guard: IIdempotencyGuard
    bot_guard: IIdempotencyGuard
    webhook_gate: WebhookGate
    bot_gate: BotGate
    bot: ShopBot
    redis: Optional[Any] = None
    postgres: bool = False

    @property
    def guards(self) -> list[IIdempotencyGuard]:
        return [self.webhook_guard, self.bot_guard]

    async def close(self):
        """Flush pending notifications and release connections"""
        await self.dispatcher.drain()
        close = getattr(self.telegram, "close", None)
        if close is not None:
            await close()
        if self.redis is not None:
            await self.redis.aclose()
        if self.postgres:
            from database import Database
            await Database.close()


def build_provider(cfg: ServerConfig) -> PaymentProvider:
    if cfg.PAYMENT_PROVIDER == "fake":
        return FakePaymentProvider()
    return StripePaymentProvider(
        api_key=cfg.STRIPE_SECRET_KEY or "",
        webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
        api_version=cfg.STRIPE_API_VERSION,
    )


def assemble(
    storage: IStorage,
    provider: PaymentProvider,
    telegram,
    app_url: str,
    webhook_guard: IIdempotencyGuard,
    bot_guard: IIdempotencyGuard,
    telegram_secret: Optional[str] = None,
    min_charge_minor_units: int = 50,
) -> Services:
    """Wire components together from already-built adapters."""
    dispatcher = NotificationDispatcher(telegram)
    ledger = OrderLedger(storage, dispatcher)
    orchestrator = PaymentOrchestrator(storage, provider, min_charge_minor_units)
    bot = ShopBot(telegram, storage, ledger, orchestrator, dispatcher, app_url)
    return Services(
        storage=storage,
        provider=provider,
        telegram=telegram,
        dispatcher=dispatcher,
        ledger=ledger,
        orchestrator=orchestrator,
        webhook_guard=webhook_guard,
        bot_guard=bot_guard,
        webhook_gate=WebhookGate(provider, webhook_guard, ledger, storage),
        bot_gate=BotGate(bot_guard, bot, secret_token=telegram_secret),
        bot=bot,
    )


async def build_services(cfg: ServerConfig) -> Services:
    """Build adapters from configuration, then wire them."""
    postgres = cfg.STORAGE_BACKEND == "postgres"
    if postgres:
        from database import Database
        from storage.postgres_storage import PostgresStorage
        await Database.initialize(cfg.DATABASE_URL)
        storage: IStorage = PostgresStorage(Database)
    else:
        storage = InMemoryStorage()

    redis_client = None
    if cfg.IDEMPOTENCY_BACKEND == "redis":
        import redis.asyncio as redis
        redis_client = redis.from_url(cfg.REDIS_URL)
        await redis_client.ping()
        logger.info("redis_connected", url=cfg.REDIS_URL[:20] + "...")

    telegram = TelegramClient(TelegramConfig(
        bot_token=cfg.TELEGRAM_BOT_TOKEN or "",
        timeout_seconds=cfg.TELEGRAM_TIMEOUT,
    ))

    services = assemble(
        storage=storage,
        provider=build_provider(cfg),
        telegram=telegram,
        app_url=cfg.APP_URL,
        webhook_guard=build_guard(WEBHOOK_NAMESPACE, cfg.IDEMPOTENCY_TTL_SECONDS, redis_client),
        bot_guard=build_guard(BOT_NAMESPACE, cfg.IDEMPOTENCY_TTL_SECONDS, redis_client),
        telegram_secret=cfg.TELEGRAM_WEBHOOK_SECRET,
        min_charge_minor_units=cfg.STRIPE_MIN_CHARGE_MINOR_UNITS,
    )
    services.redis = redis_client
    services.postgres = postgres

    if cfg.SEED_DEMO_PRODUCTS:
        await seed_demo_products(storage)

    logger.info(
        "services_built",
        storage=cfg.STORAGE_BACKEND,
        idempotency=cfg.IDEMPOTENCY_BACKEND,
        provider=cfg.PAYMENT_PROVIDER,
    )
    return services


async def seed_demo_products(storage: IStorage) -> int:
    """Insert the demo catalog if no products are active yet."""
    if await storage.get_active_products(limit=1):
        return 0
    for product in DEMO_PRODUCTS:
        await storage.create_product(product.model_copy())
    logger.info("demo_products_seeded", count=len(DEMO_PRODUCTS))
    return len(DEMO_PRODUCTS)
