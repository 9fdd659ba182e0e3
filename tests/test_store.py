"""
Unit tests for PermissionRecordStore against a mocked asyncpg pool.
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from permsync.models import (
    AccessLevel,
    Capability,
    PermissionFilter,
    PermissionGrant,
    TelegramStatus,
)
from permsync.store import _NEEDING_SYNC_SQL, _SUMMARY_SQL, PermissionRecordStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _row(user_id=2, channel_id=-1001, status="administrator", synced=NOW, error=None, **flags):
    row = {
        "id": uuid.uuid4(),
        "channel_id": channel_id,
        "user_id": user_id,
        "telegram_status": status,
        "last_synced_at": synced,
        "sync_error": error,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update({c.value: False for c in Capability})
    row.update(flags)
    return row


def _summary_row(creators=1, admins=2, errors=0, stale=0, last_sync=NOW):
    return {
        "total_creators": creators,
        "total_admins": admins,
        "active_permissions": creators + admins,
        "sync_errors": errors,
        "stale": stale,
        "last_sync": last_sync,
    }


@pytest.fixture
def pool():
    mock = AsyncMock()
    mock.fetchrow = AsyncMock(return_value=None)
    mock.fetch = AsyncMock(return_value=[])
    mock.execute = AsyncMock(return_value="DELETE 0")
    return mock


@pytest.fixture
def store(pool):
    return PermissionRecordStore(pool)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_binds_grant_values(self, store, pool):
        pool.fetchrow.return_value = _row(can_post_messages=True)
        grant = PermissionGrant(-1001, 2, TelegramStatus.ADMINISTRATOR, can_post_messages=True)

        record = await store.create(grant)

        sql, *params = pool.fetchrow.await_args.args
        assert sql.strip().startswith("INSERT INTO channel_permissions")
        assert params == [-1001, 2, "administrator", True, False, False, False, False]
        assert record.can_post_messages is True
        assert record.telegram_status is TelegramStatus.ADMINISTRATOR

    @pytest.mark.asyncio
    async def test_upsert_is_single_statement_clearing_error(self, store, pool):
        pool.fetchrow.return_value = _row(user_id=1, status="creator")
        grant = PermissionGrant(-1001, 1, TelegramStatus.CREATOR)

        record = await store.upsert(grant)

        pool.fetchrow.assert_awaited_once()
        sql = pool.fetchrow.await_args.args[0]
        assert "ON CONFLICT (channel_id, user_id)" in sql
        assert "sync_error = NULL" in sql
        assert record.is_creator

    @pytest.mark.asyncio
    async def test_update_sets_only_passed_fields(self, store, pool):
        record_id = uuid.uuid4()
        pool.fetchrow.return_value = _row(can_invite_users=True)

        await store.update(record_id, can_invite_users=True, sync_error=None)

        sql, *params = pool.fetchrow.await_args.args
        assert "updated_at = NOW()" in sql
        assert "last_synced_at = NOW()" in sql
        assert "can_invite_users = $2" in sql
        assert "sync_error = $3" in sql
        assert "can_post_messages" not in sql.split("RETURNING")[0]
        assert params == [record_id, True, None]

    @pytest.mark.asyncio
    async def test_update_missing_record(self, store, pool):
        assert await store.update(uuid.uuid4(), can_post_messages=True) is None

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, store):
        with pytest.raises(ValueError):
            await store.update(uuid.uuid4(), channel_id=5)

    @pytest.mark.asyncio
    async def test_delete_reports_removed_row(self, store, pool):
        pool.execute.return_value = "DELETE 1"
        assert await store.delete(3, -1001) is True
        assert pool.execute.await_args.args[1:] == (3, -1001)

    @pytest.mark.asyncio
    async def test_delete_nothing(self, store, pool):
        pool.execute.return_value = "DELETE 0"
        assert await store.delete(3, -1001) is False

    @pytest.mark.asyncio
    async def test_mark_sync_error_leaves_sync_time(self, store, pool):
        pool.execute.return_value = "UPDATE 1"
        assert await store.mark_sync_error(2, -1001, "boom") is True

        sql, *params = pool.execute.await_args.args
        assert "last_synced_at" not in sql
        assert params == [2, -1001, "boom"]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_get_by_channel_and_user_absent(self, store, pool):
        assert await store.get_by_channel_and_user(-1001, 9) is None
        assert pool.fetchrow.await_args.args[1:] == (-1001, 9)

    @pytest.mark.asyncio
    async def test_channel_listing_puts_creator_first(self, store, pool):
        pool.fetch.return_value = [_row(user_id=1, status="creator"), _row(user_id=2)]

        records = await store.get_all_for_channel(-1001)

        sql = pool.fetch.await_args.args[0]
        assert "ORDER BY (telegram_status = 'creator') DESC, created_at DESC" in sql
        assert [r.user_id for r in records] == [1, 2]

    @pytest.mark.asyncio
    async def test_user_channels_carry_access_level(self, store, pool):
        pool.fetch.return_value = [
            _row(user_id=7, channel_id=-1, status="creator"),
            _row(user_id=7, channel_id=-2),
        ]

        channels = await store.get_user_channels(7)

        assert [(c.channel_id, c.access_level) for c in channels] == [
            (-1, AccessLevel.CREATOR),
            (-2, AccessLevel.ADMINISTRATOR),
        ]

    @pytest.mark.asyncio
    async def test_find_by_filter_builds_where(self, store, pool):
        criteria = PermissionFilter(
            channel_id=-1001,
            telegram_status=TelegramStatus.ADMINISTRATOR,
            capability=Capability.POST_MESSAGES,
            has_capability=True,
            has_sync_error=False,
        )

        await store.find_by_filter(criteria)

        sql, *params = pool.fetch.await_args.args
        assert "channel_id = $1" in sql
        assert "telegram_status = $2" in sql
        assert "can_post_messages = $3" in sql
        assert "sync_error IS NULL" in sql
        assert params == [-1001, "administrator", True]

    @pytest.mark.asyncio
    async def test_find_by_filter_empty(self, store, pool):
        await store.find_by_filter(PermissionFilter())
        sql, *params = pool.fetch.await_args.args
        assert "WHERE" not in sql
        assert params == []

    @pytest.mark.asyncio
    async def test_find_needing_sync_uses_staleness_cutoff(self, store, pool):
        await store.find_needing_sync(now=NOW)
        assert pool.fetch.await_args.args[1] == NOW - timedelta(hours=24)

    @pytest.mark.asyncio
    async def test_custom_staleness(self, pool):
        store = PermissionRecordStore(pool, staleness=timedelta(hours=6))
        await store.find_needing_sync(now=NOW)
        assert pool.fetch.await_args.args[1] == NOW - timedelta(hours=6)

    @pytest.mark.asyncio
    async def test_stale_window_boundary_is_inclusive(self, store, pool):
        await store.find_needing_sync(now=NOW)
        cutoff = pool.fetch.await_args.args[1]

        assert "sync_error IS NOT NULL OR last_synced_at <= $1" in _NEEDING_SYNC_SQL
        assert "last_synced_at <= $2" in _SUMMARY_SQL
        assert NOW - timedelta(hours=25) <= cutoff
        assert NOW - timedelta(hours=24) <= cutoff
        assert not NOW - timedelta(hours=1) <= cutoff


# ---------------------------------------------------------------------------
# channel_summary
# ---------------------------------------------------------------------------


class TestChannelSummary:
    @pytest.mark.asyncio
    async def test_fresh_channel(self, store, pool):
        pool.fetchrow.return_value = _summary_row()

        summary = await store.channel_summary(-1001, now=NOW)

        assert pool.fetchrow.await_args.args[1:] == (-1001, NOW - timedelta(hours=24))
        assert summary.total_creators == 1
        assert summary.total_admins == 2
        assert summary.active_permissions == 3
        assert summary.last_sync == NOW
        assert summary.needs_sync is False

    @pytest.mark.asyncio
    async def test_stale_channel(self, store, pool):
        pool.fetchrow.return_value = _summary_row(stale=1)
        assert (await store.channel_summary(-1001, now=NOW)).needs_sync is True

    @pytest.mark.asyncio
    async def test_erroring_channel(self, store, pool):
        pool.fetchrow.return_value = _summary_row(errors=1)
        summary = await store.channel_summary(-1001, now=NOW)
        assert summary.sync_errors == 1
        assert summary.needs_sync is True

    @pytest.mark.asyncio
    async def test_empty_channel(self, store, pool):
        pool.fetchrow.return_value = {
            "total_creators": 0,
            "total_admins": 0,
            "active_permissions": 0,
            "sync_errors": 0,
            "stale": 0,
            "last_sync": None,
        }
        summary = await store.channel_summary(-1001, now=NOW)
        assert summary.active_permissions == 0
        assert summary.last_sync is None
        assert summary.needs_sync is True
