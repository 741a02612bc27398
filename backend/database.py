"""
Database Module
===============
AsyncPG connection pool and schema migrations for the order book.

This module provides:
- AsyncPG connection pool for PostgreSQL
- Idempotent migrations for products, orders and bot_interactions
- Thin execute/fetch helpers used by storage.postgres_storage

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import Optional, List

import structlog
import asyncpg

from config import config

# Configure logger
logger = structlog.get_logger(component="database")


# =============================================================================
# MIGRATIONS
# =============================================================================

MIGRATIONS = [
    # Catalog (managed out of band; read here)
    """
    CREATE TABLE IF NOT EXISTS products (
        id VARCHAR PRIMARY KEY DEFAULT gen_random_uuid()::text,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        price NUMERIC(10, 2) NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'USD',
        image_url TEXT,
        active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMP NOT NULL DEFAULT NOW()
    )
    """,

    # Orders
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR PRIMARY KEY DEFAULT gen_random_uuid()::text,
        buyer_id TEXT NOT NULL,
        buyer_name TEXT,
        product_id VARCHAR NOT NULL REFERENCES products(id),
        quantity INTEGER NOT NULL DEFAULT 1,
        total_amount NUMERIC(10, 2) NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'USD',
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        payment_reference TEXT UNIQUE,
        created_at TIMESTAMP NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMP NOT NULL DEFAULT NOW()
    )
    """,

    # Interaction log (write-only from the core)
    """
    CREATE TABLE IF NOT EXISTS bot_interactions (
        id VARCHAR PRIMARY KEY DEFAULT gen_random_uuid()::text,
        actor_id TEXT NOT NULL,
        actor_name TEXT,
        message_type VARCHAR(50) NOT NULL,
        content TEXT,
        response_sent TEXT,
        created_at TIMESTAMP NOT NULL DEFAULT NOW()
    )
    """,

    # Indexes
    "CREATE INDEX IF NOT EXISTS idx_orders_buyer ON orders(buyer_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status)",
    "CREATE INDEX IF NOT EXISTS idx_interactions_created ON bot_interactions(created_at DESC)",
]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls, dsn: Optional[str] = None):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(
                dsn or config.DATABASE_URL,
                min_size=config.DB_MIN_POOL_SIZE,
                max_size=config.DB_MAX_POOL_SIZE,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            # Run migrations on startup
            await cls._run_migrations()

        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            raise

    @classmethod
    async def close(cls):
        """Close the connection pool"""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None
            cls._initialized = False
            logger.info("database_pool_closed")

    @classmethod
    @asynccontextmanager
    async def acquire(cls):
        """Acquire a connection from the pool"""
        if not cls._pool:
            await cls.initialize()

        async with cls._pool.acquire() as conn:
            yield conn

    @classmethod
    async def execute(cls, query: str, *args) -> str:
        """Execute a query"""
        async with cls.acquire() as conn:
            return await conn.execute(query, *args)

    @classmethod
    async def fetch_one(cls, query: str, *args) -> Optional[asyncpg.Record]:
        """Fetch a single row"""
        async with cls.acquire() as conn:
            return await conn.fetchrow(query, *args)

    @classmethod
    async def fetch_all(cls, query: str, *args) -> List[asyncpg.Record]:
        """Fetch all rows"""
        async with cls.acquire() as conn:
            return await conn.fetch(query, *args)

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        async with cls.acquire() as conn:
            for migration in MIGRATIONS:
                try:
                    await conn.execute(migration)
                except asyncpg.PostgresError as e:
                    # Index might already exist, that's fine
                    if "already exists" not in str(e):
                        logger.warning("migration_warning", error=str(e))

        logger.info("database_migrations_complete", count=len(MIGRATIONS))
