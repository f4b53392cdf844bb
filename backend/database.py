"""
Database Module - Reconciliation Ledger
=======================================
asyncpg connection pool and schema for the reconciliation service.

This module provides:
- AsyncPG connection pool for PostgreSQL
- Idempotent migrations for orders, memberships, lmn_records, invoice_records
- Unique constraints that serve as the only cross-request mutual exclusion

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg
import structlog

from config import Settings

# Configure logger
logger = structlog.get_logger().bind(component="database")


# =============================================================================
# SCHEMA
# =============================================================================

MIGRATIONS = [
    # Orders: one row per external payment reference
    """
    CREATE TABLE IF NOT EXISTS orders (
        id UUID PRIMARY KEY,
        order_number VARCHAR(64) NOT NULL,
        customer_email VARCHAR(320) NOT NULL DEFAULT '',
        customer_name VARCHAR(255),
        external_payment_reference VARCHAR(255) NOT NULL,
        provider VARCHAR(32) NOT NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'paid',
        total_amount NUMERIC(12, 2) NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'USD',
        items JSONB NOT NULL DEFAULT '[]',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT orders_order_number_key UNIQUE (order_number),
        CONSTRAINT orders_external_payment_reference_key UNIQUE (external_payment_reference)
    )
    """,

    # Memberships: one row per subscription
    """
    CREATE TABLE IF NOT EXISTS memberships (
        id UUID PRIMARY KEY,
        subscription_id VARCHAR(255) NOT NULL,
        customer_id VARCHAR(255),
        customer_email VARCHAR(320),
        plan_tier VARCHAR(64),
        subscription_status VARCHAR(20) NOT NULL DEFAULT 'active',
        provider VARCHAR(32) NOT NULL,
        cancelled_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT memberships_subscription_id_key UNIQUE (subscription_id)
    )
    """,

    # Letters of Medical Necessity: at most one per order
    """
    CREATE TABLE IF NOT EXISTS lmn_records (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        lmn_number VARCHAR(32) NOT NULL,
        order_id UUID,
        order_number VARCHAR(64) NOT NULL,
        customer_email VARCHAR(320) NOT NULL DEFAULT '',
        customer_name VARCHAR(255),
        items JSONB NOT NULL DEFAULT '[]',
        eligible_total NUMERIC(12, 2) NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'USD',
        issue_date TIMESTAMPTZ NOT NULL,
        attestation_text TEXT,
        provider_reference TEXT,
        pdf BYTEA,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT lmn_records_lmn_number_key UNIQUE (lmn_number),
        CONSTRAINT lmn_records_order_number_key UNIQUE (order_number)
    )
    """,

    # Invoices: at most one per order
    """
    CREATE TABLE IF NOT EXISTS invoice_records (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        invoice_number VARCHAR(32) NOT NULL,
        order_id UUID,
        order_number VARCHAR(64) NOT NULL,
        customer_email VARCHAR(320) NOT NULL DEFAULT '',
        customer_name VARCHAR(255),
        items JSONB NOT NULL DEFAULT '[]',
        subtotal NUMERIC(12, 2) NOT NULL,
        tax NUMERIC(12, 2) NOT NULL DEFAULT 0,
        total NUMERIC(12, 2) NOT NULL,
        currency VARCHAR(3) NOT NULL DEFAULT 'USD',
        payment_method VARCHAR(64) NOT NULL,
        payment_provider VARCHAR(64) NOT NULL,
        issue_date TIMESTAMPTZ NOT NULL,
        pdf BYTEA,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT invoice_records_invoice_number_key UNIQUE (invoice_number),
        CONSTRAINT invoice_records_order_number_key UNIQUE (order_number)
    )
    """,

    "CREATE INDEX IF NOT EXISTS idx_orders_status_created ON orders(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_orders_email ON orders(customer_email)",
    "CREATE INDEX IF NOT EXISTS idx_lmn_records_email ON lmn_records(customer_email)",
    "CREATE INDEX IF NOT EXISTS idx_invoice_records_email ON invoice_records(customer_email)",
]

# Postgres constraint name -> column reported in DuplicateKeyError
CONSTRAINT_COLUMNS = {
    "orders_order_number_key": "order_number",
    "orders_external_payment_reference_key": "external_payment_reference",
    "memberships_subscription_id_key": "subscription_id",
    "lmn_records_lmn_number_key": "lmn_number",
    "lmn_records_order_number_key": "order_number",
    "invoice_records_invoice_number_key": "invoice_number",
    "invoice_records_order_number_key": "order_number",
}


# =============================================================================
# CONNECTION POOL
# =============================================================================

class Database:
    """Async database connection pool manager"""

    _pool: Optional[asyncpg.Pool] = None
    _initialized: bool = False

    @classmethod
    async def initialize(cls, settings: Settings):
        """Initialize the connection pool"""
        if cls._initialized:
            return

        try:
            cls._pool = await asyncpg.create_pool(
                settings.database_url,
                min_size=settings.db_min_pool_size,
                max_size=settings.db_max_pool_size,
            )
            cls._initialized = True
            logger.info("database_pool_initialized")

            # Run migrations on startup
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
            raise RuntimeError("Database.initialize() has not been called")

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
                except (asyncpg.DuplicateTableError, asyncpg.DuplicateObjectError, asyncpg.UniqueViolationError) as e:
                    # Concurrent startups may race on CREATE ... IF NOT EXISTS
                    logger.info("migration_already_applied", error=str(e))
                except asyncpg.PostgresError as e:
                    logger.error("migration_failed", error=str(e), statement=migration.strip().splitlines()[0])
                    raise

        logger.info("database_migrations_complete")


# =============================================================================
# INITIALIZATION
# =============================================================================

async def init_database(settings: Settings):
    """Initialize database on app startup"""
    await Database.initialize(settings)


async def close_database():
    """Close database on app shutdown"""
    await Database.close()
