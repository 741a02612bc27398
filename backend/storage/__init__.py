# storage/__init__.py
# ============================================================================
# STOREFRONT BOT v1.0 — STORAGE MODULE
# ============================================================================
# Repository interface and the in-memory backend.
# PostgresStorage lives in storage.postgres_storage (imports asyncpg).
# ============================================================================

from storage.repository import (
    IStorage,
    InMemoryStorage,
)

__all__ = [
    "IStorage",
    "InMemoryStorage",
]
