# agents/__init__.py
from agents.shop_bot import (
    ShopBot,
    display_name,
    MAX_LISTED_PRODUCTS,
    MAX_LISTED_ORDERS,
)

__all__ = [
    "ShopBot",
    "display_name",
    "MAX_LISTED_PRODUCTS",
    "MAX_LISTED_ORDERS",
]
