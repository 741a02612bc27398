# services/telegram_client.py
# ============================================================================
# STOREFRONT BOT v1.0 — TELEGRAM BOT API CLIENT
# ============================================================================
# Thin async wrapper over the Bot API methods the store uses:
# sendMessage, answerCallbackQuery, setWebhook.
#
# FAILURE HANDLING:
# - Transport errors and {"ok": false} replies raise TelegramAPIError
# - Callers decide whether a failure is fatal (setWebhook) or best-effort
#   (notifications, chat replies)
# ============================================================================

import os
from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from schemas.telegram import InlineKeyboardMarkup

logger = structlog.get_logger(component="telegram_client")

TELEGRAM_API_BASE = "https://api.telegram.org"


class TelegramAPIError(Exception):
    def __init__(self, method: str, description: str, status_code: Optional[int] = None):
        super().__init__(f"{method}: {description}")
        self.method = method
        self.description = description
        self.status_code = status_code


@dataclass
class TelegramConfig:
    """Configuration for the Bot API connection."""
    bot_token: str
    timeout_seconds: float = 10.0
    api_base: str = TELEGRAM_API_BASE

    @classmethod
    def from_env(cls) -> "TelegramConfig":
        return cls(
            bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
            timeout_seconds=float(os.getenv("TELEGRAM_TIMEOUT", "10.0")),
        )


class TelegramClient:
    """Async Bot API client with a shared connection pool"""

    def __init__(self, config: TelegramConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._client = client or httpx.AsyncClient(
            base_url=f"{config.api_base}/bot{config.bot_token}/",
            timeout=config.timeout_seconds,
        )

    async def close(self):
        await self._client.aclose()

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        try:
            response = await self._client.post(method, json=payload)
        except httpx.HTTPError as e:
            raise TelegramAPIError(method, f"transport error: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {"ok": False, "description": response.text}

        if response.status_code >= 400 or not body.get("ok", False):
            raise TelegramAPIError(
                method,
                body.get("description", "unknown error"),
                status_code=response.status_code,
            )
        return body.get("result")

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        reply_markup: Optional[InlineKeyboardMarkup] = None,
    ) -> Any:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
        }
        if reply_markup:
            payload["reply_markup"] = reply_markup.to_payload()
        return await self._call("sendMessage", payload)

    async def answer_callback_query(self, callback_query_id: str, text: Optional[str] = None) -> Any:
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        return await self._call("answerCallbackQuery", payload)

    async def set_webhook(self, url: str, secret_token: Optional[str] = None) -> Any:
        payload: dict[str, Any] = {"url": url}
        if secret_token:
            payload["secret_token"] = secret_token
        result = await self._call("setWebhook", payload)
        logger.info("telegram_webhook_set", url=url, secret_configured=bool(secret_token))
        return result
