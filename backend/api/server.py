# api/server.py
# ============================================================================
# STOREFRONT BOT v1.0 — FASTAPI SERVER
# ============================================================================
# HTTP surface for the order/payment lifecycle:
# Stripe webhooks, Telegram updates, payment intents, public order reads.
# ============================================================================

import asyncio
import hmac
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
from urllib.parse import urlparse

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import structlog
import uvicorn

from api.container import Services, build_services
from config import ServerConfig, config
from pipeline.errors import AuthenticationFailure, LifecycleError, OrderNotFound
from schemas.domain import (
    CreatePaymentIntentRequest,
    PaymentIntentResponse,
    PublicOrder,
    SetTelegramWebhookRequest,
)
from tasks.idempotency_sweeper import sweeper_loop

VERSION = "1.0.0"


def configure_logging(cfg: ServerConfig = config):
    """structlog for the lifecycle engine, stdlib logging for hooks"""
    renderer = (
        structlog.processors.JSONRenderer()
        if cfg.is_production
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    )
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    )


logger = structlog.get_logger(component="server")


# ============================================================================
# HELPERS
# ============================================================================

BLOCKED_HOST_PREFIXES = ("192.168.", "10.", "172.16.")
BLOCKED_HOSTS = {"127.0.0.1", "::1", "metadata.google.internal"}


def is_valid_webhook_url(url: str) -> bool:
    """HTTPS only (plain http allowed for localhost), no private or metadata hosts."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False

    hostname = (parsed.hostname or "").lower()
    if not hostname:
        return False
    if parsed.scheme != "https" and hostname != "localhost":
        return False
    if hostname in BLOCKED_HOSTS or hostname.startswith(BLOCKED_HOST_PREFIXES):
        return False
    return True


def error_response(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def get_services(request: Request) -> Services:
    return request.app.state.services


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    uptime_seconds: float
    processed_events: dict[str, int]


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(services: Optional[Services] = None, settings: ServerConfig = config) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        services: Pre-built components (tests). Built from settings when None.
        settings: Server configuration
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        logger.info("server_starting", version=VERSION, env=settings.ENV)

        if services is None:
            for warning in settings.validate():
                logger.warning("config_warning", detail=warning)
            app.state.services = await build_services(settings)
        else:
            app.state.services = services
        app.state.started_at = datetime.utcnow()
        sweeper = asyncio.create_task(
            sweeper_loop(app.state.services.guards, settings.IDEMPOTENCY_SWEEP_INTERVAL)
        )

        yield

        logger.info("server_stopping")
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        await app.state.services.close()

    app = FastAPI(
        title="Storefront Bot",
        description="Order and payment lifecycle for a Telegram storefront",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    # ------------------------------------------------------------------------
    # Error mapping
    # ------------------------------------------------------------------------

    @app.exception_handler(LifecycleError)
    async def lifecycle_error_handler(request: Request, exc: LifecycleError):
        return error_response(exc.status_code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return error_response(400, "Invalid request data", details=jsonable_encoder(exc.errors()))

    # ------------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------------

    @app.get("/health", response_model=HealthResponse)
    async def health_check(services: Services = Depends(get_services)):
        """Health check endpoint."""
        uptime = (datetime.utcnow() - app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            processed_events={g.namespace: await g.size() for g in services.guards},
        )

    @app.post("/api/stripe-webhook")
    async def stripe_webhook(request: Request, services: Services = Depends(get_services)):
        """Stripe webhook handler for payment events."""
        payload = await request.body()
        signature = request.headers.get("stripe-signature")

        try:
            ack = await services.webhook_gate.handle(payload, signature)
        except AuthenticationFailure:
            raise
        except Exception as e:
            logger.error("stripe_webhook_error", error=str(e), error_type=type(e).__name__)
            return error_response(500, "Webhook processing failed")

        return ack.model_dump(exclude_none=True)

    @app.post("/api/telegram-webhook")
    async def telegram_webhook(request: Request, services: Services = Depends(get_services)):
        """Telegram update handler. Always {ok: true} once authenticated."""
        secret = request.headers.get("x-telegram-bot-api-secret-token")
        try:
            services.bot_gate.authenticate(secret)
        except AuthenticationFailure:
            logger.warning("telegram_webhook_unauthorized", client=request.client.host if request.client else None)
            return error_response(401, "Unauthorized")

        try:
            update = await request.json()
        except ValueError:
            logger.warning("telegram_update_invalid_json")
            return {"ok": True}

        if isinstance(update, dict):
            await services.bot_gate.handle(update, secret)
        else:
            logger.warning("telegram_update_not_object")
        return {"ok": True}

    @app.post(
        "/api/create-payment-intent",
        response_model=PaymentIntentResponse,
        response_model_exclude_none=True,
    )
    async def create_payment_intent(
        body: CreatePaymentIntentRequest,
        services: Services = Depends(get_services),
    ):
        """Open a pending order for a product and return its client secret."""
        try:
            handle = await services.orchestrator.create_order_and_intent(
                body.product_id, body.buyer_id, buyer_name=body.buyer_name
            )
        except LifecycleError:
            raise
        except Exception as e:
            logger.error("create_payment_intent_failed", error=str(e), error_type=type(e).__name__)
            return error_response(500, "Failed to create payment intent")

        return PaymentIntentResponse(
            client_secret=handle.client_secret,
            order_id=handle.order_id,
            product_name=handle.product_name,
            amount=handle.amount,
            currency=handle.currency,
        )

    @app.get("/api/orders/{order_id}", response_model=PublicOrder)
    async def get_order(order_id: str, services: Services = Depends(get_services)):
        """Public order view for the checkout page."""
        order = await services.ledger.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return PublicOrder.from_order(order)

    @app.post(
        "/api/orders/{order_id}/payment-intent",
        response_model=PaymentIntentResponse,
        response_model_exclude_none=True,
    )
    async def order_payment_intent(order_id: str, services: Services = Depends(get_services)):
        """Client secret for an existing pending order (reuses a bound intent)."""
        try:
            handle = await services.orchestrator.get_intent_for_order(order_id)
        except LifecycleError:
            raise
        except Exception as e:
            logger.error("order_payment_intent_failed", order_id=order_id, error=str(e))
            return error_response(500, "Failed to create payment intent")

        return PaymentIntentResponse(client_secret=handle.client_secret, order_id=handle.order_id)

    @app.post("/api/set-telegram-webhook")
    async def set_telegram_webhook(
        request: Request,
        body: Optional[SetTelegramWebhookRequest] = None,
        services: Services = Depends(get_services),
    ):
        """Register this server's Telegram webhook (admin only)."""
        admin_key = request.headers.get("x-admin-api-key") or ""
        if not settings.ADMIN_API_KEY or not hmac.compare_digest(
            admin_key.encode("utf-8"), settings.ADMIN_API_KEY.encode("utf-8")
        ):
            logger.warning("webhook_management_unauthorized", client=request.client.host if request.client else None)
            return error_response(401, "Unauthorized - Admin API key required")

        url = body.url if body else None
        if url and not is_valid_webhook_url(url):
            return error_response(400, "Invalid webhook URL format")

        webhook_url = url or f"{settings.APP_URL.rstrip('/')}/api/telegram-webhook"
        try:
            await services.telegram.set_webhook(webhook_url, settings.TELEGRAM_WEBHOOK_SECRET)
        except Exception as e:
            logger.error("set_webhook_failed", error=str(e))
            return error_response(400, getattr(e, "description", str(e)))

        return {
            "success": True,
            "webhook_url": webhook_url,
            "secret_configured": bool(settings.TELEGRAM_WEBHOOK_SECRET),
        }

    return app


configure_logging()
app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.ENV == "development",
        log_level="info"
    )
