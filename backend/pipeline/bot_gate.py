"""
Bot Update Ingestion Gate
=========================
Entry point for Telegram webhook updates.

1. Shared-secret check on X-Telegram-Bot-Api-Secret-Token (when configured)
2. Check-and-record update_id before any handling
3. Dispatch to the shop bot

Once authenticated, internal failures are logged and swallowed: Telegram
only needs to know the update arrived, and a retry would re-run side
effects the bot already performed (orders, payment links).
"""

import hmac
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from agents.shop_bot import ShopBot
from pipeline.errors import AuthenticationFailure
from pipeline.idempotency import IIdempotencyGuard
from schemas.telegram import TelegramUpdate

logger = structlog.get_logger(component="bot_gate")


class BotGate:
    def __init__(self, guard: IIdempotencyGuard, bot: ShopBot, secret_token: Optional[str] = None):
        self.guard = guard
        self.bot = bot
        self.secret_token = secret_token

    def authenticate(self, secret_token: Optional[str]) -> None:
        if not self.secret_token:
            return
        if not hmac.compare_digest(
            (secret_token or "").encode("utf-8"),
            self.secret_token.encode("utf-8"),
        ):
            logger.warning("bot_secret_mismatch")
            raise AuthenticationFailure("Unauthorized")

    async def handle(self, update: dict[str, Any], secret_token: Optional[str]) -> bool:
        """
        Process one update.

        Returns:
            True if the update was dispatched, False if it was a duplicate,
            could not be parsed, or could not be checked against the guard

        Raises:
            AuthenticationFailure: secret token mismatch
        """
        self.authenticate(secret_token)

        try:
            parsed = TelegramUpdate.model_validate(update)
        except ValidationError as e:
            logger.warning("update_malformed", error_count=e.error_count())
            return False

        log = logger.bind(update_id=parsed.update_id)

        try:
            if not await self.guard.check_and_record(str(parsed.update_id)):
                log.info("update_duplicate")
                return False
        except Exception as e:
            log.error("update_failed", stage="dedup", error=str(e), error_type=type(e).__name__)
            return False

        try:
            if parsed.message is not None:
                await self.bot.handle_message(parsed.message)
            elif parsed.callback_query is not None:
                await self.bot.handle_callback(parsed.callback_query)
            else:
                log.info("update_ignored", reason="no_message_or_callback")
        except Exception as e:
            log.error("update_failed", stage="dispatch", error=str(e), error_type=type(e).__name__)

        return True
