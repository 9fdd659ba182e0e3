"""
PostgreSQL persistence for ``channel_permissions`` rows.

Uses ``asyncpg`` with parameterized placeholders ($1, $2, ...) only.
Column names that vary per query (capability filters, partial updates)
come from fixed allowlists, never from caller strings.

Every operation is independent and idempotent; failures propagate as
``asyncpg`` exceptions and are handled by the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional
from uuid import UUID

import asyncpg

from permsync.capabilities import access_level
from permsync.models import (
    STALENESS_WINDOW,
    Capability,
    ChannelSummary,
    PermissionFilter,
    PermissionGrant,
    PermissionRecord,
    TelegramStatus,
    UserChannelAccess,
)

logger = logging.getLogger("permsync.store")

_COLUMNS = (
    "id, channel_id, user_id, telegram_status, "
    "can_post_messages, can_edit_messages, can_delete_messages, "
    "can_change_info, can_invite_users, "
    "last_synced_at, sync_error, created_at, updated_at"
)

_INSERT_SQL = f"""
    INSERT INTO channel_permissions (
        channel_id, user_id, telegram_status,
        can_post_messages, can_edit_messages, can_delete_messages,
        can_change_info, can_invite_users, last_synced_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, NOW())
    RETURNING {_COLUMNS}
"""

_UPSERT_SQL = f"""
    INSERT INTO channel_permissions (
        channel_id, user_id, telegram_status,
        can_post_messages, can_edit_messages, can_delete_messages,
        can_change_info, can_invite_users, last_synced_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, NOW())
    ON CONFLICT (channel_id, user_id)
    DO UPDATE SET
        telegram_status = EXCLUDED.telegram_status,
        can_post_messages = EXCLUDED.can_post_messages,
        can_edit_messages = EXCLUDED.can_edit_messages,
        can_delete_messages = EXCLUDED.can_delete_messages,
        can_change_info = EXCLUDED.can_change_info,
        can_invite_users = EXCLUDED.can_invite_users,
        sync_error = NULL,
        last_synced_at = NOW(),
        updated_at = NOW()
    RETURNING {_COLUMNS}
"""

_SELECT_ONE_SQL = f"""
    SELECT {_COLUMNS} FROM channel_permissions
    WHERE channel_id = $1 AND user_id = $2
"""

_SELECT_FOR_USER_SQL = f"""
    SELECT {_COLUMNS} FROM channel_permissions
    WHERE user_id = $1
    ORDER BY created_at DESC
"""

# Creators first, then newest.
_SELECT_FOR_CHANNEL_SQL = f"""
    SELECT {_COLUMNS} FROM channel_permissions
    WHERE channel_id = $1
    ORDER BY (telegram_status = 'creator') DESC, created_at DESC
"""

_DELETE_SQL = "DELETE FROM channel_permissions WHERE user_id = $1 AND channel_id = $2"

_NEEDING_SYNC_SQL = f"""
    SELECT {_COLUMNS} FROM channel_permissions
    WHERE sync_error IS NOT NULL OR last_synced_at <= $1
    ORDER BY last_synced_at ASC
"""

_SUMMARY_SQL = """
    SELECT
        COUNT(*) FILTER (WHERE telegram_status = 'creator')       AS total_creators,
        COUNT(*) FILTER (WHERE telegram_status = 'administrator') AS total_admins,
        COUNT(*)                                                  AS active_permissions,
        COUNT(*) FILTER (WHERE sync_error IS NOT NULL)            AS sync_errors,
        COUNT(*) FILTER (WHERE last_synced_at <= $2)              AS stale,
        MAX(last_synced_at)                                       AS last_sync
    FROM channel_permissions
    WHERE channel_id = $1
"""

_MARK_ERROR_SQL = """
    UPDATE channel_permissions
    SET sync_error = $3, updated_at = NOW()
    WHERE user_id = $1 AND channel_id = $2
"""

_UPDATABLE_FIELDS = frozenset(
    {"telegram_status", "sync_error"} | {c.value for c in Capability}
)


def _affected(status: str) -> int:
    # asyncpg command status format: "UPDATE <rowcount>" / "DELETE <rowcount>"
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError, AttributeError):
        logger.debug("Unexpected command status string: %s", status)
        return 0


class PermissionRecordStore:
    """Manages ``channel_permissions`` rows.

    Args:
        pool: An ``asyncpg`` connection pool (see
              :func:`shared.db.get_connection_pool`).
        staleness: Age after which a record is due for re-sync.
    """

    def __init__(self, pool: asyncpg.Pool, staleness: timedelta = STALENESS_WINDOW) -> None:
        self._pool = pool
        self.staleness = staleness

    @staticmethod
    def _grant_params(grant: PermissionGrant) -> tuple:
        return (
            grant.channel_id,
            grant.user_id,
            TelegramStatus(grant.telegram_status).value,
            grant.can_post_messages,
            grant.can_edit_messages,
            grant.can_delete_messages,
            grant.can_change_info,
            grant.can_invite_users,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, grant: PermissionGrant) -> PermissionRecord:
        row = await self._pool.fetchrow(_INSERT_SQL, *self._grant_params(grant))
        logger.debug("Created permission channel=%s user=%s", grant.channel_id, grant.user_id)
        return PermissionRecord.from_row(row)

    async def update(self, record_id: UUID, **fields: Any) -> Optional[PermissionRecord]:
        """Merge *fields* into the record and stamp ``updated_at``/``last_synced_at``.

        Only keys that are passed are written; ``sync_error=None`` clears the
        error.

        Returns:
            The updated record, or ``None`` if *record_id* does not exist.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update fields: {sorted(unknown)}")

        assignments: List[str] = ["updated_at = NOW()", "last_synced_at = NOW()"]
        params: List[Any] = [record_id]
        for name, value in fields.items():
            if name == "telegram_status":
                value = TelegramStatus(value).value
            params.append(value)
            assignments.append(f"{name} = ${len(params)}")

        sql = (
            f"UPDATE channel_permissions SET {', '.join(assignments)} "
            f"WHERE id = $1 RETURNING {_COLUMNS}"
        )
        row = await self._pool.fetchrow(sql, *params)
        return PermissionRecord.from_row(row) if row else None

    async def upsert(self, grant: PermissionGrant) -> PermissionRecord:
        """Insert or refresh the (channel, user) record; always clears ``sync_error``."""
        row = await self._pool.fetchrow(_UPSERT_SQL, *self._grant_params(grant))
        return PermissionRecord.from_row(row)

    async def delete(self, user_id: int, channel_id: int) -> bool:
        """Hard-delete one record.  Returns ``True`` if a row was removed."""
        status = await self._pool.execute(_DELETE_SQL, user_id, channel_id)
        deleted = _affected(status) > 0
        logger.debug(
            "Delete permission channel=%s user=%s deleted=%s", channel_id, user_id, deleted
        )
        return deleted

    async def mark_sync_error(self, user_id: int, channel_id: int, message: str) -> bool:
        """Record a refresh failure without touching capabilities or ``last_synced_at``.

        Returns:
            ``False`` if there is no record for the pair.
        """
        status = await self._pool.execute(_MARK_ERROR_SQL, user_id, channel_id, message)
        return _affected(status) > 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_by_channel_and_user(
        self, channel_id: int, user_id: int
    ) -> Optional[PermissionRecord]:
        row = await self._pool.fetchrow(_SELECT_ONE_SQL, channel_id, user_id)
        return PermissionRecord.from_row(row) if row else None

    async def get_all_for_user(self, user_id: int) -> List[PermissionRecord]:
        rows = await self._pool.fetch(_SELECT_FOR_USER_SQL, user_id)
        return [PermissionRecord.from_row(row) for row in rows]

    async def get_all_for_channel(self, channel_id: int) -> List[PermissionRecord]:
        rows = await self._pool.fetch(_SELECT_FOR_CHANNEL_SQL, channel_id)
        return [PermissionRecord.from_row(row) for row in rows]

    async def get_user_channels(self, user_id: int) -> List[UserChannelAccess]:
        """Channels the user can manage, with their access level."""
        return [
            UserChannelAccess(
                channel_id=record.channel_id,
                user_id=record.user_id,
                access_level=access_level(record),
                record=record,
            )
            for record in await self.get_all_for_user(user_id)
        ]

    async def find_by_filter(self, criteria: PermissionFilter) -> List[PermissionRecord]:
        clauses: List[str] = []
        params: List[Any] = []

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        if criteria.channel_id is not None:
            clauses.append(f"channel_id = {bind(criteria.channel_id)}")
        if criteria.user_id is not None:
            clauses.append(f"user_id = {bind(criteria.user_id)}")
        if criteria.telegram_status is not None:
            status = TelegramStatus(criteria.telegram_status).value
            clauses.append(f"telegram_status = {bind(status)}")
        if criteria.capability is not None and criteria.has_capability is not None:
            column = Capability(criteria.capability).value
            clauses.append(f"{column} = {bind(bool(criteria.has_capability))}")
        if criteria.synced_after is not None:
            clauses.append(f"last_synced_at >= {bind(criteria.synced_after)}")
        if criteria.has_sync_error is not None:
            clauses.append(
                "sync_error IS NOT NULL" if criteria.has_sync_error else "sync_error IS NULL"
            )

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        sql = f"SELECT {_COLUMNS} FROM channel_permissions {where} ORDER BY created_at DESC"
        rows = await self._pool.fetch(sql, *params)
        return [PermissionRecord.from_row(row) for row in rows]

    async def find_needing_sync(self, now: Optional[datetime] = None) -> List[PermissionRecord]:
        """Records with a sync error or not synced within the staleness window."""
        cutoff = (now or datetime.now(timezone.utc)) - self.staleness
        rows = await self._pool.fetch(_NEEDING_SYNC_SQL, cutoff)
        return [PermissionRecord.from_row(row) for row in rows]

    async def channel_summary(
        self, channel_id: int, now: Optional[datetime] = None
    ) -> ChannelSummary:
        """Aggregate view of a channel's records.

        ``needs_sync`` is true when any record is erroring or stale, and
        when the channel has no records at all.
        """
        cutoff = (now or datetime.now(timezone.utc)) - self.staleness
        row = await self._pool.fetchrow(_SUMMARY_SQL, channel_id, cutoff)
        active = int(row["active_permissions"] or 0)
        errors = int(row["sync_errors"] or 0)
        stale = int(row["stale"] or 0)
        return ChannelSummary(
            channel_id=channel_id,
            total_creators=int(row["total_creators"] or 0),
            total_admins=int(row["total_admins"] or 0),
            active_permissions=active,
            sync_errors=errors,
            last_sync=row["last_sync"],
            needs_sync=active == 0 or errors > 0 or stale > 0,
        )
