# services/data_hooks.py
# ============================================================================
# STOREFRONT BOT v1.0 — DATA HOOKS
# ============================================================================
# Interaction-log hooks for bot conversations and payment events.
# The log is an audit trail: a failed write is logged, never raised.
# ============================================================================

import logging
from typing import Optional

from schemas.domain import InteractionLogEntry, MessageType, Order
from storage.repository import IStorage

logger = logging.getLogger("Storefront.DataHooks")

# Trim stored bot replies so one long product list does not bloat the log
MAX_RESPONSE_CHARS = 1000


async def record_interaction(
    storage: IStorage,
    actor_id: str,
    message_type: MessageType,
    content: str = "",
    response_sent: str = "",
    actor_name: Optional[str] = None,
) -> Optional[InteractionLogEntry]:
    """
    Append one entry to the interaction log.

    Returns:
        The stored entry, or None if the write failed
    """
    entry = InteractionLogEntry(
        actor_id=str(actor_id),
        actor_name=actor_name,
        message_type=message_type,
        content=content,
        response_sent=response_sent[:MAX_RESPONSE_CHARS],
    )
    try:
        return await storage.log_interaction(entry)
    except Exception as e:
        logger.error(f"Failed to log {message_type.value} interaction for {actor_id}: {e}")
        return None


async def on_bot_interaction(
    storage: IStorage,
    actor_id: str,
    actor_name: Optional[str],
    message_type: MessageType,
    content: str,
    response_sent: str,
) -> Optional[InteractionLogEntry]:
    """
    Hook called after the bot answers a message or callback.

    Args:
        storage: Interaction log storage
        actor_id: Telegram user id
        actor_name: Display name (first name or username)
        message_type: COMMAND, CALLBACK or TEXT
        content: Incoming text or callback data
        response_sent: Text the bot replied with
    """
    return await record_interaction(
        storage,
        actor_id,
        message_type,
        content=content,
        response_sent=response_sent,
        actor_name=actor_name,
    )


async def on_payment_event(
    storage: IStorage,
    order: Order,
    message_type: MessageType,
    content: str,
) -> Optional[InteractionLogEntry]:
    """
    Hook called when an order's payment state changes.

    Args:
        storage: Interaction log storage
        order: Order the event belongs to (buyer is the actor)
        message_type: One of the PAYMENT_* message types
        content: Human-readable event summary
    """
    entry = await record_interaction(
        storage,
        order.buyer_id,
        message_type,
        content=content,
        response_sent=f"order:{order.id}",
        actor_name=order.buyer_name,
    )
    if entry:
        logger.info(f"Payment event {message_type.value} logged for order {order.id[:8]}...")
    return entry
