"""
Payment Provider Port
=====================
The slice of the payment processor the lifecycle engine talks to:
intent create / retrieve / cancel and webhook authentication.

- StripePaymentProvider: the stripe SDK. SDK calls are blocking, so they
  run in a worker thread via asyncio.to_thread.
- FakePaymentProvider: deterministic in-process double for local runs
  (PAYMENT_PROVIDER=fake) and tests.

pip install stripe structlog
"""

import asyncio
import itertools
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import stripe
import structlog

from pipeline.errors import AuthenticationFailure

logger = structlog.get_logger(component="payment_provider")


@dataclass
class IntentRecord:
    """Provider-side view of a payment intent"""
    id: str
    client_secret: str
    status: str
    amount: int  # minor units
    currency: str
    metadata: dict[str, str] = field(default_factory=dict)


# =============================================================================
# INTERFACE
# =============================================================================

class PaymentProvider(ABC):
    """Payment processor port (swap Stripe / fake without code changes)"""

    @abstractmethod
    async def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict[str, str],
    ) -> IntentRecord:
        pass

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> IntentRecord:
        pass

    @abstractmethod
    async def cancel_intent(self, intent_id: str) -> IntentRecord:
        pass

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        """
        Authenticate a webhook delivery and return the parsed event.

        Raises:
            AuthenticationFailure: missing or invalid signature, or a body
                that is not a JSON event
        """
        pass


def _parse_event(payload: bytes) -> dict[str, Any]:
    try:
        event = json.loads(payload)
    except ValueError as e:
        raise AuthenticationFailure("Invalid payload") from e
    if not isinstance(event, dict):
        raise AuthenticationFailure("Invalid payload")
    return event


# =============================================================================
# STRIPE
# =============================================================================

class StripePaymentProvider(PaymentProvider):
    """
    Stripe PaymentIntents with automatic payment methods.

    When no webhook secret is configured, signature verification is skipped
    with a warning. Startup refuses to run that way in production
    (see ServerConfig.validate).
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        api_version: Optional[str] = None,
        tolerance_seconds: int = 300,
    ):
        stripe.api_key = api_key
        if api_version:
            stripe.api_version = api_version
        self.webhook_secret = webhook_secret
        self.tolerance_seconds = tolerance_seconds

    @staticmethod
    def _to_record(intent: Any) -> IntentRecord:
        return IntentRecord(
            id=intent["id"],
            client_secret=intent["client_secret"],
            status=intent["status"],
            amount=intent["amount"],
            currency=intent["currency"],
            metadata=dict(intent.get("metadata") or {}),
        )

    async def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict[str, str],
    ) -> IntentRecord:
        try:
            intent = await asyncio.to_thread(
                stripe.PaymentIntent.create,
                amount=amount,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            logger.error("intent_create_failed", error=str(e), error_type=type(e).__name__)
            raise

        logger.info("intent_created", intent_id=intent["id"], amount=amount, currency=currency)
        return self._to_record(intent)

    async def retrieve_intent(self, intent_id: str) -> IntentRecord:
        intent = await asyncio.to_thread(stripe.PaymentIntent.retrieve, intent_id)
        return self._to_record(intent)

    async def cancel_intent(self, intent_id: str) -> IntentRecord:
        intent = await asyncio.to_thread(stripe.PaymentIntent.cancel, intent_id)
        logger.info("intent_cancelled", intent_id=intent_id)
        return self._to_record(intent)

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        if not self.webhook_secret:
            logger.warning("webhook_verification_skipped", reason="no_webhook_secret")
            return _parse_event(payload)

        if not signature:
            logger.warning("webhook_signature_missing")
            raise AuthenticationFailure("Missing stripe-signature header")

        # CRITICAL: verify the raw body before parsing
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self.webhook_secret,
                self.tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning("webhook_signature_invalid", error=str(e))
            raise AuthenticationFailure("Invalid signature") from e

        return _parse_event(payload)


# =============================================================================
# FAKE
# =============================================================================

class FakePaymentProvider(PaymentProvider):
    """
    In-process provider double.

    Webhooks authenticate when the signature equals `valid_signature`.
    Set `create_error` to make the next create_intent call raise it.
    """

    def __init__(self, valid_signature: str = "test-signature", currency_default: str = "usd"):
        self.valid_signature = valid_signature
        self.currency_default = currency_default
        self.intents: dict[str, IntentRecord] = {}
        self.created: list[IntentRecord] = []
        self.cancelled: list[str] = []
        self.create_error: Optional[Exception] = None
        self._ids = itertools.count(1)

    async def create_intent(
        self,
        amount: int,
        currency: str,
        metadata: dict[str, str],
    ) -> IntentRecord:
        if self.create_error is not None:
            error, self.create_error = self.create_error, None
            raise error

        intent_id = f"pi_fake_{next(self._ids)}"
        record = IntentRecord(
            id=intent_id,
            client_secret=f"{intent_id}_secret_fake",
            status="requires_payment_method",
            amount=amount,
            currency=(currency or self.currency_default).lower(),
            metadata=dict(metadata),
        )
        self.intents[intent_id] = record
        self.created.append(record)
        return record

    async def retrieve_intent(self, intent_id: str) -> IntentRecord:
        return self.intents[intent_id]

    async def cancel_intent(self, intent_id: str) -> IntentRecord:
        record = self.intents[intent_id]
        record.status = "canceled"
        self.cancelled.append(intent_id)
        return record

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> dict[str, Any]:
        if signature != self.valid_signature:
            raise AuthenticationFailure("Invalid signature")
        return _parse_event(payload)
