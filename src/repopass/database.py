"""Database connection management for RepoPass."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import asyncpg
from asyncpg import Pool

logger = logging.getLogger(__name__)


class Database:
    """PostgreSQL database connection manager."""

    _pool: Optional[Pool] = None

    @classmethod
    async def get_pool(cls, database_url: str) -> Pool:
        """Get or create the connection pool for the configured DSN."""
        if cls._pool is None:
            # Heroku/Railway style URLs
            if database_url.startswith("postgres://"):
                database_url = database_url.replace("postgres://", "postgresql://", 1)

            cls._pool = await asyncpg.create_pool(
                database_url,
                min_size=1,
                max_size=10,
                command_timeout=60,
            )
        return cls._pool

    @classmethod
    async def close(cls) -> None:
        """Close the connection pool."""
        if cls._pool:
            await cls._pool.close()
            cls._pool = None

    @classmethod
    @asynccontextmanager
    async def transaction(cls, database_url: str) -> AsyncGenerator[asyncpg.Connection, None]:
        """Get a connection with an active transaction."""
        pool = await cls.get_pool(database_url)
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield conn


async def init_database(database_url: str, environment: str = "dev") -> None:
    """Initialize database schema.

    In production, expects migrations to have been applied already.
    In dev/test, falls back to running SCHEMA_SQL directly. The pool is
    opened either way so the store shares it.
    """
    if environment == "prod":
        await Database.get_pool(database_url)
        logger.info("Skipping schema bootstrap in production")
        return
    async with Database.transaction(database_url) as conn:
        await conn.execute(SCHEMA_SQL)
    logger.info("Database schema ready")


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS owners (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL,
    email_notifications BOOLEAN NOT NULL DEFAULT TRUE,
    encrypted_github_token TEXT
);

CREATE TABLE IF NOT EXISTS payment_credentials (
    owner_id TEXT PRIMARY KEY REFERENCES owners(id) ON DELETE CASCADE,
    provider TEXT NOT NULL,
    encrypted_fields JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS repositories (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    github_owner TEXT NOT NULL,
    github_repo_name TEXT NOT NULL,
    slug TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    pricing_type TEXT NOT NULL CHECK (pricing_type IN ('one-time', 'subscription', 'free')),
    price_cents INTEGER NOT NULL DEFAULT 0 CHECK (price_cents >= 0),
    subscription_cadence TEXT CHECK (subscription_cadence IN ('monthly', 'yearly', 'custom')),
    custom_cadence_days INTEGER,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    require_email_for_free BOOLEAN NOT NULL DEFAULT FALSE,
    payment_provider TEXT NOT NULL DEFAULT 'stripe',
    external_product_id TEXT,
    external_price_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK ((pricing_type = 'subscription') = (subscription_cadence IS NOT NULL))
);

CREATE UNIQUE INDEX IF NOT EXISTS repositories_live_github_idx
    ON repositories (github_owner, github_repo_name) WHERE is_active;

CREATE TABLE IF NOT EXISTS purchases (
    id TEXT PRIMARY KEY,
    repository_id TEXT NOT NULL REFERENCES repositories(id),
    product_id TEXT,
    github_username TEXT NOT NULL,
    email TEXT NOT NULL,
    purchase_type TEXT NOT NULL,
    amount_cents INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'completed', 'failed', 'canceled')),
    access_status TEXT NOT NULL DEFAULT 'pending'
        CHECK (access_status IN ('pending', 'active', 'revoked')),
    customer_id TEXT,
    payment_intent_id TEXT,
    subscription_id TEXT,
    revocation_reason TEXT,
    revoked_by TEXT,
    revoked_at TIMESTAMPTZ,
    access_granted_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK (access_status <> 'active' OR status = 'completed')
);

CREATE INDEX IF NOT EXISTS purchases_lookup_idx
    ON purchases (repository_id, github_username, status, created_at DESC);
CREATE INDEX IF NOT EXISTS purchases_subscription_idx ON purchases (subscription_id);
CREATE INDEX IF NOT EXISTS purchases_payment_idx ON purchases (payment_intent_id);

CREATE TABLE IF NOT EXISTS access_logs (
    id TEXT PRIMARY KEY,
    purchase_id TEXT NOT NULL REFERENCES purchases(id),
    action TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('success', 'failed', 'retry')),
    error_message TEXT,
    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS access_logs_purchase_idx ON access_logs (purchase_id, created_at);

CREATE TABLE IF NOT EXISTS pricing_history (
    id TEXT PRIMARY KEY,
    repository_id TEXT NOT NULL REFERENCES repositories(id),
    price_cents INTEGER NOT NULL,
    pricing_type TEXT NOT NULL,
    subscription_cadence TEXT,
    custom_cadence_days INTEGER,
    changed_by TEXT NOT NULL,
    effective_from TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    effective_until TIMESTAMPTZ
);

CREATE UNIQUE INDEX IF NOT EXISTS pricing_history_open_idx
    ON pricing_history (repository_id) WHERE effective_until IS NULL;
"""
