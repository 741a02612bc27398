# services/__init__.py
# ============================================================================
# STOREFRONT BOT v1.0 — SERVICES MODULE
# ============================================================================
# Outbound messaging, notifications and interaction-log hooks
# ============================================================================

from services.telegram_client import (
    TelegramClient,
    TelegramConfig,
    TelegramAPIError,
)

from services.notification_dispatcher import (
    NotificationDispatcher,
    TemplateManager,
)

from services.data_hooks import (
    record_interaction,
    on_bot_interaction,
    on_payment_event,
)

__all__ = [
    # Telegram
    "TelegramClient",
    "TelegramConfig",
    "TelegramAPIError",
    # Notifications
    "NotificationDispatcher",
    "TemplateManager",
    # Hooks
    "record_interaction",
    "on_bot_interaction",
    "on_payment_event",
]
