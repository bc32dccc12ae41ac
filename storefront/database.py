"""
Database Module
===============
AsyncPG connection pool for PostgreSQL plus the idempotent schema migrations
the order store relies on.

Uniqueness lives in the schema:
- orders.order_id and orders.gateway_order_id
- payment_records.gateway_payment_id

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg
import structlog

logger = structlog.get_logger().bind(component="database")


MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS order_drafts (
        draft_id VARCHAR(64) PRIMARY KEY,
        gateway_order_id VARCHAR(64) UNIQUE,
        payload JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        order_id VARCHAR(32) PRIMARY KEY,
        gateway_order_id VARCHAR(64) NOT NULL UNIQUE,
        gateway_payment_id VARCHAR(64) UNIQUE,
        draft_id VARCHAR(64) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        payment_status VARCHAR(20) NOT NULL DEFAULT 'pending',
        grand_total INTEGER NOT NULL,
        currency VARCHAR(3) NOT NULL,
        payload JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        paid_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_records (
        gateway_payment_id VARCHAR(64) PRIMARY KEY,
        gateway_order_id VARCHAR(64) NOT NULL,
        signature VARCHAR(128),
        status VARCHAR(20) NOT NULL,
        amount_minor_units INTEGER NOT NULL DEFAULT 0,
        currency VARCHAR(3) NOT NULL,
        method VARCHAR(32),
        reason TEXT,
        captured_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS review_flags (
        flag_id UUID PRIMARY KEY,
        gateway_payment_id VARCHAR(64) NOT NULL,
        gateway_order_id VARCHAR(64) NOT NULL,
        reason VARCHAR(50) NOT NULL,
        details JSONB NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_drafts_expires ON order_drafts(expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_payments_status ON payment_records(status, updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_payments_order ON payment_records(gateway_order_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_payment_status ON orders(payment_status)",
    "CREATE INDEX IF NOT EXISTS idx_review_flags_created ON review_flags(created_at DESC)",
]


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False
    _dsn: Optional[str] = None
    _min_size: int = 2
    _max_size: int = 10
    _command_timeout: float = 5.0

    @classmethod
    def configure(cls, settings) -> None:
        cls._dsn = settings.database_url
        cls._min_size = settings.db_min_pool_size
        cls._max_size = settings.db_max_pool_size
        cls._command_timeout = settings.db_command_timeout

    @classmethod
    async def initialize(cls):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(
                cls._dsn,
                min_size=cls._min_size,
                max_size=cls._max_size,
                command_timeout=cls._command_timeout,
            )
            cls._initialized = True
            logger.info("database_pool_initialized", min_size=cls._min_size, max_size=cls._max_size)

            await cls._run_migrations()

        except (OSError, asyncpg.PostgresError) as e:
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
    @asynccontextmanager
    async def transaction(cls):
        """Acquire a connection inside a transaction; rolls back on exception."""
        async with cls.acquire() as conn:
            async with conn.transaction():
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
    async def health_check(cls) -> bool:
        try:
            return await cls.fetch_one("SELECT 1 AS ok") is not None
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.warning("database_health_check_failed", error=str(e))
            return False

    @classmethod
    async def _run_migrations(cls):
        """Run database migrations"""
        async with cls.acquire() as conn:
            for migration in MIGRATIONS:
                try:
                    await conn.execute(migration)
                except asyncpg.PostgresError as e:
                    # Concurrent starters can race on CREATE ... IF NOT EXISTS
                    if "already exists" not in str(e):
                        logger.warning("migration_warning", error=str(e))


# =============================================================================
# LIFECYCLE
# =============================================================================

async def init_database(settings):
    """Initialize database on application startup"""
    Database.configure(settings)
    await Database.initialize()


async def close_database():
    """Close database on application shutdown"""
    await Database.close()
