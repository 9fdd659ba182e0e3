"""
Database helpers: connection pool management, schema initialisation,
and health checks.

Uses ``asyncpg`` for async PostgreSQL access.  Tables:

- ``channel_permissions``: one row per (channel, user) administrator,
  with the capability flags Telegram reported and sync bookkeeping.
- ``audit_log``: structured audit events (see :mod:`shared.audit`).
"""

from __future__ import annotations

import logging
from typing import Any, Dict

import asyncpg

logger = logging.getLogger("shared.db")

_SCHEMA_SQL = (
    """
    CREATE TABLE IF NOT EXISTS channel_permissions (
        id                  UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        channel_id          BIGINT NOT NULL,
        user_id             BIGINT NOT NULL,
        telegram_status     TEXT NOT NULL
            CHECK (telegram_status IN ('creator', 'administrator')),
        can_post_messages   BOOLEAN NOT NULL DEFAULT FALSE,
        can_edit_messages   BOOLEAN NOT NULL DEFAULT FALSE,
        can_delete_messages BOOLEAN NOT NULL DEFAULT FALSE,
        can_change_info     BOOLEAN NOT NULL DEFAULT FALSE,
        can_invite_users    BOOLEAN NOT NULL DEFAULT FALSE,
        last_synced_at      TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        sync_error          TEXT,
        created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (channel_id, user_id)
    );
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_channel_permissions_user
    ON channel_permissions (user_id);
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_channel_permissions_needs_sync
    ON channel_permissions (last_synced_at)
    WHERE sync_error IS NULL;
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id         BIGSERIAL PRIMARY KEY,
        timestamp  TIMESTAMPTZ DEFAULT NOW(),
        service    TEXT NOT NULL,
        action     TEXT NOT NULL,
        channel_id BIGINT,
        details    JSONB,
        success    BOOLEAN NOT NULL
    );
    """,
)


# ---------------------------------------------------------------------------
# Connection pool
# ---------------------------------------------------------------------------


async def get_connection_pool(config: Dict[str, Any]) -> asyncpg.Pool:
    """Create and return an ``asyncpg`` connection pool.

    Args:
        config: Database configuration dict with keys:
                ``host``, ``port``, ``database``, ``user``, ``password``,
                and optionally ``min_size``, ``max_size``.

    Returns:
        An ``asyncpg.Pool`` instance.

    Raises:
        asyncpg.PostgresError: If the connection cannot be established.
    """
    pool = await asyncpg.create_pool(
        host=config.get("host"),
        port=config.get("port", 5432),
        database=config["database"],
        user=config.get("user"),
        password=config.get("password"),
        min_size=config.get("min_size", 2),
        max_size=config.get("max_size", 10),
    )
    logger.info(
        "Database pool created: %s@%s/%s",
        config.get("user"),
        config.get("host"),
        config["database"],
    )
    return pool


# ---------------------------------------------------------------------------
# Schema initialisation
# ---------------------------------------------------------------------------


async def init_database(pool: asyncpg.Pool) -> None:
    """Create tables and indexes if they do not exist.

    Executed once at service startup.  Idempotent (uses IF NOT EXISTS).
    ``gen_random_uuid()`` is built in from PostgreSQL 13.
    """
    async with pool.acquire() as conn:
        async with conn.transaction():
            for statement in _SCHEMA_SQL:
                await conn.execute(statement)
    logger.info("Database schema ready.")


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------


async def health_check(pool: asyncpg.Pool) -> bool:
    """Verify the database is reachable and responsive.

    Returns:
        ``True`` if a simple query succeeds, ``False`` otherwise.
    """
    try:
        async with pool.acquire() as conn:
            result = await conn.fetchval("SELECT 1;")
            return result == 1
    except Exception:
        logger.exception("Database health check failed")
        return False
