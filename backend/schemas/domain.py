# schemas/domain.py
# ============================================================================
# STOREFRONT BOT v1.0 — DOMAIN SCHEMAS
# ============================================================================
# Orders, products, interaction log entries and the public API payloads
# ============================================================================

import uuid
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class MessageType(str, Enum):
    COMMAND = "command"
    CALLBACK = "callback"
    TEXT = "text"
    PAYMENT_CREATED = "payment_created"
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELED = "payment_canceled"
    PAYMENT_REFUNDED = "payment_refunded"


class NotificationKind(str, Enum):
    PAYMENT_CREATED = "payment_created"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_CANCELED = "payment_canceled"
    PAYMENT_REFUNDED = "payment_refunded"


STATUS_EMOJI = {
    OrderStatus.PENDING: "⏳",
    OrderStatus.PAID: "✅",
    OrderStatus.CANCELLED: "❌",
    OrderStatus.REFUNDED: "🔄",
}


# ISO 4217 codes Stripe charges in whole units
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def format_amount(amount: Decimal, currency: str) -> str:
    """Amount with the currency's display precision (no cents for JPY etc.)"""
    places = "1" if currency.upper() in ZERO_DECIMAL_CURRENCIES else "0.01"
    return str(Decimal(amount).quantize(Decimal(places), rounding=ROUND_HALF_UP))


# ============================================================================
# SECTION 2: CATALOG + ORDERS
# ============================================================================

class Product(BaseModel):
    """Catalog entry. Read-only from the lifecycle engine's perspective."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    description: str = ""
    price: Decimal = Field(decimal_places=2)
    currency: str = "USD"
    image_url: Optional[str] = None
    active: bool = True
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class Order(BaseModel):
    """A single purchase attempt moving through the payment lifecycle."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    buyer_id: str
    buyer_name: Optional[str] = None
    product_id: str
    quantity: int = Field(default=1, ge=1)
    total_amount: Decimal
    currency: str = "USD"
    status: OrderStatus = OrderStatus.PENDING
    payment_reference: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @computed_field
    @property
    def is_terminal(self) -> bool:
        return self.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED)

    def with_status(self, status: OrderStatus) -> "Order":
        return self.model_copy(update={"status": status, "updated_at": datetime.utcnow()})


class OrderWithProduct(Order):
    """Order joined with its product snapshot"""
    product: Product


class InteractionLogEntry(BaseModel):
    """Append-only audit record of bot and payment activity"""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    actor_id: str
    actor_name: Optional[str] = None
    message_type: MessageType
    content: str = ""
    response_sent: str = ""
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ============================================================================
# SECTION 3: PUBLIC PROJECTIONS
# ============================================================================

class PublicProduct(BaseModel):
    id: str
    name: str
    description: str
    price: Decimal
    currency: str
    image_url: Optional[str] = None


class PublicOrder(BaseModel):
    """Order projection safe for the checkout page (no buyer identity, no payment reference)"""
    id: str
    product_id: str
    quantity: int
    total_amount: Decimal
    currency: str
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    product: PublicProduct

    @classmethod
    def from_order(cls, order: OrderWithProduct) -> "PublicOrder":
        return cls(
            id=order.id,
            product_id=order.product_id,
            quantity=order.quantity,
            total_amount=order.total_amount,
            currency=order.currency,
            status=order.status,
            created_at=order.created_at,
            updated_at=order.updated_at,
            product=PublicProduct(
                id=order.product.id,
                name=order.product.name,
                description=order.product.description,
                price=order.product.price,
                currency=order.product.currency,
                image_url=order.product.image_url,
            ),
        )


# ============================================================================
# SECTION 4: API REQUEST / RESPONSE MODELS
# ============================================================================

class CreatePaymentIntentRequest(BaseModel):
    """Direct purchase request (conversational channel or API client)"""
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(..., min_length=1, alias="productId")
    buyer_id: str = Field(..., min_length=1, alias="buyerId")
    buyer_name: Optional[str] = Field(default=None, alias="buyerName")


class PaymentIntentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    client_secret: str = Field(alias="clientSecret")
    order_id: str = Field(alias="orderId")
    product_name: Optional[str] = Field(default=None, alias="productName")
    amount: Optional[Decimal] = None
    currency: Optional[str] = None


class SetTelegramWebhookRequest(BaseModel):
    url: Optional[str] = None


class WebhookAck(BaseModel):
    """Acknowledgment returned to the payment provider"""
    received: bool = True
    status: str = "processed"  # processed | already_processed | ignored | no_order
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    detail: Optional[dict[str, Any]] = None
