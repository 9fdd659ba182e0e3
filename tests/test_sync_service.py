"""
Unit tests for PermissionSyncService: the reconciliation pass, bulk and
stale sync, permission queries, creator-only removal, and connection
validation.  The store is an in-memory stand-in with the same contract
as PermissionRecordStore; the Bot API client is an AsyncMock.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from botapi.errors import DeadlineExceeded, PlatformError, PlatformNetworkError
from botapi.types import BotUser, ChatMember
from permsync.models import (
    STALENESS_WINDOW,
    AccessLevel,
    Capability,
    ChannelSummary,
    PermissionRecord,
    TelegramStatus,
    UserChannelAccess,
)
from permsync.service import PermissionDenied, PermissionSyncService, SelfRemovalError

CHANNEL = -1001234
FULL_RIGHTS = {c.value: True for c in Capability}


class MemoryStore:
    """Dict-backed store keyed by (channel_id, user_id)."""

    def __init__(self):
        self.records = {}
        self.fail_upsert_for = set()
        self.fail_delete_for = set()
        self.errors = {}

    def add(self, user_id, status=TelegramStatus.ADMINISTRATOR, channel_id=CHANNEL,
            synced=None, error=None, **flags):
        now = datetime.now(timezone.utc)
        values = {c.value: False for c in Capability}
        values.update(flags)
        record = PermissionRecord(
            id=uuid.uuid4(),
            channel_id=channel_id,
            user_id=user_id,
            telegram_status=status,
            last_synced_at=synced or now,
            sync_error=error,
            created_at=now,
            updated_at=now,
            **values,
        )
        self.records[(channel_id, user_id)] = record
        return record

    async def channel_summary(self, channel_id, now=None):
        now = now or datetime.now(timezone.utc)
        rows = [r for (c, _), r in self.records.items() if c == channel_id]
        errors = sum(1 for r in rows if r.sync_error is not None)
        stale = sum(1 for r in rows if r.needs_sync(now, STALENESS_WINDOW))
        return ChannelSummary(
            channel_id=channel_id,
            total_creators=sum(1 for r in rows if r.is_creator),
            total_admins=sum(1 for r in rows if not r.is_creator),
            active_permissions=len(rows),
            sync_errors=errors,
            last_sync=max((r.last_synced_at for r in rows), default=None),
            needs_sync=not rows or errors > 0 or stale > 0,
        )

    async def get_all_for_channel(self, channel_id):
        return [r for (c, _), r in self.records.items() if c == channel_id]

    async def upsert(self, grant):
        if grant.user_id in self.fail_upsert_for:
            raise RuntimeError("connection reset")
        existing = self.records.get((grant.channel_id, grant.user_id))
        record = self.add(grant.user_id, grant.telegram_status, grant.channel_id, **grant.flags())
        if existing is not None:
            record.id = existing.id
            record.created_at = existing.created_at
        return record

    async def delete(self, user_id, channel_id):
        if user_id in self.fail_delete_for:
            raise RuntimeError("lock timeout")
        return self.records.pop((channel_id, user_id), None) is not None

    async def mark_sync_error(self, user_id, channel_id, message):
        self.errors[(channel_id, user_id)] = message
        record = self.records.get((channel_id, user_id))
        if record is None:
            return False
        record.sync_error = message
        return True

    async def get_by_channel_and_user(self, channel_id, user_id):
        return self.records.get((channel_id, user_id))

    async def find_needing_sync(self, now=None):
        return [r for r in self.records.values() if r.needs_sync(now)]

    async def get_user_channels(self, user_id):
        return [
            UserChannelAccess(c, u, AccessLevel.CREATOR if r.is_creator else AccessLevel.ADMINISTRATOR, r)
            for (c, u), r in self.records.items()
            if u == user_id
        ]


def _member(user_id, status="administrator", **flags):
    data = {"user": {"id": user_id, "is_bot": False, "first_name": f"u{user_id}"}, "status": status}
    data.update(flags)
    return ChatMember.from_dict(data)


def _creator(user_id):
    return _member(user_id, "creator")


def _admin(user_id, **overrides):
    return _member(user_id, **dict(FULL_RIGHTS, **overrides))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def client():
    mock = MagicMock()
    mock.get_chat_administrators = AsyncMock(return_value=[])
    mock.get_me = AsyncMock(return_value=BotUser(id=999, is_bot=True, first_name="Bot"))
    mock.get_chat_member = AsyncMock(return_value=_admin(999))
    return mock


@pytest.fixture
def audit():
    mock = MagicMock()
    mock.log = AsyncMock()
    return mock


@pytest.fixture
def service(client, store, audit):
    return PermissionSyncService(client, store, audit=audit, deadline_seconds=30)


# ---------------------------------------------------------------------------
# sync_channel
# ---------------------------------------------------------------------------


class TestSyncChannel:
    @pytest.mark.asyncio
    async def test_reconciles_added_kept_and_removed(self, service, client, store):
        client.get_chat_administrators.return_value = [
            _creator(1),
            _member(2, "administrator", can_post_messages=True, can_edit_messages=False),
        ]
        store.add(2, can_edit_messages=True)
        store.add(3)

        result = await service.sync_channel(CHANNEL, force=True)

        assert result.success is True
        assert result.synced_permissions == [1, 2]
        assert result.removed_permissions == [3]
        assert result.errors == []
        assert set(u for (_, u) in store.records) == {1, 2}
        assert store.records[(CHANNEL, 1)].is_creator
        refreshed = store.records[(CHANNEL, 2)]
        assert refreshed.can_post_messages is True
        assert refreshed.can_edit_messages is False
        assert refreshed.can_invite_users is False
        client.get_chat_administrators.assert_awaited_once_with(CHANNEL, timeout=30)

    @pytest.mark.asyncio
    async def test_second_pass_is_idempotent(self, service, client, store):
        client.get_chat_administrators.return_value = [_creator(1), _admin(2)]

        await service.sync_channel(CHANNEL, force=True)
        first = dict(store.records)
        result = await service.sync_channel(CHANNEL, force=True)

        assert result.synced_permissions == [1, 2]
        assert result.removed_permissions == []
        assert store.records.keys() == first.keys()
        assert store.records[(CHANNEL, 2)].id == first[(CHANNEL, 2)].id

    @pytest.mark.asyncio
    async def test_capability_change_is_applied(self, service, client, store):
        store.add(2, **FULL_RIGHTS)
        client.get_chat_administrators.return_value = [_admin(2, can_change_info=False)]

        await service.sync_channel(CHANNEL, force=True)

        record = store.records[(CHANNEL, 2)]
        assert record.can_change_info is False
        assert record.can_post_messages is True

    @pytest.mark.asyncio
    async def test_fresh_channel_skips_remote_call(self, service, client, store, audit):
        store.add(1, TelegramStatus.CREATOR)

        result = await service.sync_channel(CHANNEL)

        assert result.skipped is True
        assert result.success is True
        client.get_chat_administrators.assert_not_awaited()
        audit.log.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_channel_is_synced_without_force(self, service, client, store):
        store.add(1, TelegramStatus.CREATOR, synced=datetime.now(timezone.utc) - timedelta(hours=25))
        client.get_chat_administrators.return_value = [_creator(1)]

        result = await service.sync_channel(CHANNEL)

        assert result.skipped is False
        client.get_chat_administrators.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_empty_channel_is_synced_without_force(self, service, client):
        client.get_chat_administrators.return_value = [_creator(1)]
        result = await service.sync_channel(CHANNEL)
        assert result.synced_permissions == [1]

    @pytest.mark.asyncio
    async def test_remote_failure_leaves_store_untouched(self, service, client, store):
        store.add(2)
        store.add(3)
        before = dict(store.records)
        client.get_chat_administrators.side_effect = PlatformError(
            400, "Bad Request: chat not found", method="getChatAdministrators"
        )

        result = await service.sync_channel(CHANNEL, force=True)

        assert result.success is False
        assert result.failure == "platform"
        assert "chat not found" in result.errors[0]
        assert result.errors[0].startswith("Failed to fetch administrators")
        assert store.records == before
        assert store.errors == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error, kind",
        [
            (DeadlineExceeded(30), "timeout"),
            (PlatformNetworkError("Network error: ConnectError"), "network"),
        ],
    )
    async def test_failure_kinds(self, service, client, error, kind):
        client.get_chat_administrators.side_effect = error
        result = await service.sync_channel(CHANNEL, force=True)
        assert result.failure == kind

    @pytest.mark.asyncio
    async def test_per_user_store_failure_is_recorded(self, service, client, store):
        store.add(2)
        store.fail_upsert_for.add(2)
        client.get_chat_administrators.return_value = [_creator(1), _admin(2)]

        result = await service.sync_channel(CHANNEL, force=True)

        assert result.success is False
        assert result.failure is None
        assert result.synced_permissions == [1]
        assert len(result.errors) == 1
        assert result.errors[0].startswith("user 2:")
        assert "connection reset" in store.records[(CHANNEL, 2)].sync_error

    @pytest.mark.asyncio
    async def test_per_user_delete_failure_is_recorded(self, service, client, store):
        store.add(3)
        store.fail_delete_for.add(3)
        client.get_chat_administrators.return_value = [_creator(1)]

        result = await service.sync_channel(CHANNEL, force=True)

        assert result.removed_permissions == []
        assert result.errors == ["user 3: Failed to remove permission: lock timeout"]
        assert (CHANNEL, 3) in store.records

    @pytest.mark.asyncio
    async def test_incomplete_admin_rights_keep_old_record(self, service, client, store):
        store.add(2, can_post_messages=True)
        client.get_chat_administrators.return_value = [
            _creator(1),
            _member(2, "administrator"),
        ]

        result = await service.sync_channel(CHANNEL, force=True)

        assert result.synced_permissions == [1]
        assert result.removed_permissions == []
        assert "Incomplete rights" in result.errors[0]
        record = store.records[(CHANNEL, 2)]
        assert record.can_post_messages is True
        assert record.sync_error is not None

    @pytest.mark.asyncio
    async def test_duplicate_remote_entries_last_wins(self, service, client, store):
        client.get_chat_administrators.return_value = [
            _admin(2, can_post_messages=False),
            _admin(2, can_post_messages=True),
        ]

        result = await service.sync_channel(CHANNEL, force=True)

        assert result.synced_permissions == [2]
        assert store.records[(CHANNEL, 2)].can_post_messages is True

    @pytest.mark.asyncio
    async def test_pass_is_audited(self, service, client, audit):
        client.get_chat_administrators.return_value = [_creator(1)]

        await service.sync_channel(CHANNEL, force=True)

        audit.log.assert_awaited_once()
        args, kwargs = audit.log.await_args
        assert args[:2] == ("permsync", "permissions_sync")
        assert args[2]["channel_id"] == CHANNEL
        assert kwargs["success"] is True

    @pytest.mark.asyncio
    async def test_explicit_deadline_overrides_default(self, service, client):
        await service.sync_channel(CHANNEL, force=True, deadline=5)
        client.get_chat_administrators.assert_awaited_once_with(CHANNEL, timeout=5)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


class TestSerialization:
    @pytest.mark.asyncio
    async def test_same_channel_passes_do_not_overlap(self, service, client):
        active = {"now": 0, "max": 0}

        async def slow_fetch(channel_id, timeout=None):
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1
            return [_creator(1)]

        client.get_chat_administrators.side_effect = slow_fetch

        await asyncio.gather(*(service.sync_channel(CHANNEL, force=True) for _ in range(3)))

        assert active["max"] == 1
        assert client.get_chat_administrators.await_count == 3

    @pytest.mark.asyncio
    async def test_different_channels_run_concurrently(self, service, client):
        active = {"now": 0, "max": 0}

        async def slow_fetch(channel_id, timeout=None):
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
            await asyncio.sleep(0.01)
            active["now"] -= 1
            return [_creator(1)]

        client.get_chat_administrators.side_effect = slow_fetch

        await asyncio.gather(
            service.sync_channel(-1, force=True),
            service.sync_channel(-2, force=True),
        )

        assert active["max"] == 2


# ---------------------------------------------------------------------------
# Bulk / stale sync
# ---------------------------------------------------------------------------


class TestBulkSync:
    @pytest.mark.asyncio
    async def test_counts_successes_and_failures(self, service, client):
        async def fetch(channel_id, timeout=None):
            if channel_id == -2:
                raise PlatformError(403, "Forbidden: bot is not a member of the channel chat")
            return [_creator(1)]

        client.get_chat_administrators.side_effect = fetch

        bulk = await service.bulk_sync([-1, -2, -3], force=True)

        assert bulk.total_channels == 3
        assert bulk.successful_syncs == 2
        assert bulk.failed_syncs == 1
        assert [r.channel_id for r in bulk.results] == [-1, -2, -3]

    @pytest.mark.asyncio
    async def test_sync_stale_forces_each_channel_once(self, service, client, store):
        old = datetime.now(timezone.utc) - timedelta(days=2)
        store.add(1, TelegramStatus.CREATOR, channel_id=-1, synced=old)
        store.add(2, channel_id=-1, synced=old)
        store.add(1, TelegramStatus.CREATOR, channel_id=-2, error="boom")
        store.add(1, TelegramStatus.CREATOR, channel_id=-3)
        client.get_chat_administrators.return_value = [_creator(1)]

        bulk = await service.sync_stale()

        synced = [c.args[0] for c in client.get_chat_administrators.await_args_list]
        assert synced == [-1, -2]
        assert bulk.total_channels == 2

    @pytest.mark.asyncio
    async def test_sync_stale_nothing_to_do(self, service, client, store):
        store.add(1, TelegramStatus.CREATOR)
        bulk = await service.sync_stale()
        assert bulk.total_channels == 0
        client.get_chat_administrators.assert_not_awaited()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    @pytest.mark.asyncio
    async def test_creator_passes_every_check(self, service, store):
        store.add(1, TelegramStatus.CREATOR)
        for capability in Capability:
            check = await service.check_user_permission(1, CHANNEL, capability)
            assert check.has_permission is True
            assert check.access_level is AccessLevel.CREATOR

    @pytest.mark.asyncio
    async def test_unknown_user_has_no_access(self, service):
        check = await service.check_user_permission(42, CHANNEL, Capability.POST_MESSAGES)
        assert check.has_permission is False
        assert check.access_level is AccessLevel.NONE

    @pytest.mark.asyncio
    async def test_get_user_permission(self, service, store):
        record = store.add(2)
        assert await service.get_user_permission(2, CHANNEL) is record
        assert await service.get_user_permission(3, CHANNEL) is None

    @pytest.mark.asyncio
    async def test_get_user_channels(self, service, store):
        store.add(5, TelegramStatus.CREATOR, channel_id=-1)
        store.add(5, channel_id=-2)
        channels = await service.get_user_channels(5)
        assert {c.channel_id: c.access_level for c in channels} == {
            -1: AccessLevel.CREATOR,
            -2: AccessLevel.ADMINISTRATOR,
        }


# ---------------------------------------------------------------------------
# remove_user_permission
# ---------------------------------------------------------------------------


class TestRemoveUserPermission:
    @pytest.mark.asyncio
    async def test_creator_can_remove_admin(self, service, store, audit):
        store.add(1, TelegramStatus.CREATOR)
        store.add(2)

        assert await service.remove_user_permission(1, CHANNEL, 2) is True
        assert (CHANNEL, 2) not in store.records
        assert audit.log.await_args.args[1] == "permission_revoked"

    @pytest.mark.asyncio
    async def test_admin_cannot_remove(self, service, store):
        store.add(2)
        store.add(3)
        with pytest.raises(PermissionDenied):
            await service.remove_user_permission(2, CHANNEL, 3)
        assert (CHANNEL, 3) in store.records

    @pytest.mark.asyncio
    async def test_stranger_cannot_remove(self, service, store):
        store.add(3)
        with pytest.raises(PermissionDenied):
            await service.remove_user_permission(99, CHANNEL, 3)

    @pytest.mark.asyncio
    async def test_self_removal_rejected(self, service, store):
        store.add(1, TelegramStatus.CREATOR)
        with pytest.raises(SelfRemovalError):
            await service.remove_user_permission(1, CHANNEL, 1)
        assert (CHANNEL, 1) in store.records

    @pytest.mark.asyncio
    async def test_missing_target(self, service, store):
        store.add(1, TelegramStatus.CREATOR)
        assert await service.remove_user_permission(1, CHANNEL, 7) is False

    @pytest.mark.asyncio
    async def test_creator_check_waits_for_running_sync(self, service, store):
        store.add(1, TelegramStatus.CREATOR)
        store.add(2)

        async with service._locks.hold(CHANNEL):
            removal = asyncio.create_task(service.remove_user_permission(1, CHANNEL, 2))
            await asyncio.sleep(0)
            # the sync holding the lock demotes the requester
            store.add(1)

        with pytest.raises(PermissionDenied):
            await removal
        assert (CHANNEL, 2) in store.records


# ---------------------------------------------------------------------------
# validate_channel_connection
# ---------------------------------------------------------------------------


class TestValidateChannelConnection:
    @pytest.mark.asyncio
    async def test_user_gains_access(self, service, client):
        client.get_chat_administrators.return_value = [_creator(1), _admin(999)]

        outcome = await service.validate_channel_connection(CHANNEL, 1)

        assert outcome["success"] is True
        assert outcome["has_access"] is True
        assert outcome["permission"].is_creator
        client.get_chat_member.assert_awaited_once_with(CHANNEL, 999, timeout=30)

    @pytest.mark.asyncio
    async def test_user_not_admin(self, service, client):
        client.get_chat_administrators.return_value = [_creator(1)]
        outcome = await service.validate_channel_connection(CHANNEL, 5)
        assert outcome["success"] is True
        assert outcome["has_access"] is False
        assert outcome["error"] == "User is not an administrator of this channel"

    @pytest.mark.asyncio
    async def test_bot_not_admin(self, service, client):
        client.get_chat_member.return_value = _member(999, "member")
        outcome = await service.validate_channel_connection(CHANNEL, 1)
        assert outcome["success"] is False
        assert "not an administrator" in outcome["error"]
        client.get_chat_administrators.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_channel_not_accessible(self, service, client):
        client.get_chat_member.side_effect = PlatformError(400, "Bad Request: chat not found")
        outcome = await service.validate_channel_connection(CHANNEL, 1)
        assert outcome["success"] is False
        assert outcome["error"].startswith("Channel not accessible")
