"""
PermissionSyncService: one reconciliation pass per channel.

A pass:
    1. Unless forced, skips the remote call when no record needs sync.
    2. Fetches the administrator list.  Any failure here aborts the pass
       before the store is touched.
    3. Upserts one record per remote creator/administrator (duplicates in
       the remote list resolve last-wins).
    4. Deletes local records whose user is no longer an administrator.
    5. Returns synced ids, removed ids and per-user errors.  A failed write
       for one user is recorded on that user's row and does not stop the
       rest of the pass.

Passes for the same channel are serialized through ``ChannelLocks``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from botapi.client import PlatformAPIClient
from botapi.errors import DeadlineExceeded, PlatformError, PlatformNetworkError
from botapi.types import ChatMember
from permsync.capabilities import (
    IncompletePermissionData,
    check_permission,
    diff_capabilities,
    grant_from_member,
)
from permsync.locks import ChannelLocks
from permsync.models import (
    BulkSyncResult,
    Capability,
    ChannelSummary,
    PermissionCheckResult,
    PermissionRecord,
    SyncResult,
    UserChannelAccess,
)
from permsync.store import PermissionRecordStore
from shared.audit import AuditLogger

logger = logging.getLogger("permsync.service")

_AUDIT_SERVICE = "permsync"


class PermissionDenied(Exception):
    """The requester is not allowed to perform the operation."""


class SelfRemovalError(Exception):
    """A creator tried to revoke their own record."""


def _failure_kind(exc: PlatformError) -> str:
    if isinstance(exc, DeadlineExceeded):
        return "timeout"
    if isinstance(exc, PlatformNetworkError):
        return "network"
    return "platform"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class PermissionSyncService:
    """Reconciles remote channel administrators with local records.

    Args:
        client: Bot API client (owned by the process, injected here).
        store: Permission record store.
        audit: Optional audit logger; one event per pass.
        deadline_seconds: Default deadline for the administrator fetch.
        bulk_delay_seconds: Pause between channels in :meth:`bulk_sync`.
    """

    def __init__(
        self,
        client: PlatformAPIClient,
        store: PermissionRecordStore,
        audit: Optional[AuditLogger] = None,
        deadline_seconds: Optional[float] = 60.0,
        bulk_delay_seconds: float = 0.0,
    ) -> None:
        self._client = client
        self._store = store
        self._audit = audit
        self._deadline = deadline_seconds
        self._bulk_delay = max(0.0, bulk_delay_seconds)
        self._locks = ChannelLocks()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def sync_channel(
        self,
        channel_id: int,
        force: bool = False,
        deadline: Optional[float] = None,
    ) -> SyncResult:
        """Run one reconciliation pass for *channel_id*.

        Args:
            channel_id: Telegram chat id of the channel.
            force: Skip the staleness check and always call the Bot API.
            deadline: Seconds allowed for the remote fetch (rate-limit wait,
                retries and network time); defaults to the service setting.
        """
        async with self._locks.hold(channel_id):
            result = await self._sync_locked(channel_id, force, deadline)

        logger.info(
            "Sync channel=%s success=%s skipped=%s synced=%d removed=%d errors=%d (%dms)",
            channel_id,
            result.success,
            result.skipped,
            len(result.synced_permissions),
            len(result.removed_permissions),
            len(result.errors),
            result.duration_ms,
        )
        if self._audit is not None and not result.skipped:
            await self._audit.log(
                _AUDIT_SERVICE,
                "permissions_sync",
                {
                    "channel_id": channel_id,
                    "force": force,
                    "synced": result.synced_permissions,
                    "removed": result.removed_permissions,
                    "errors": result.errors,
                    "failure": result.failure,
                },
                success=result.success,
            )
        return result

    async def _sync_locked(
        self, channel_id: int, force: bool, deadline: Optional[float]
    ) -> SyncResult:
        started = time.monotonic()

        if not force:
            summary = await self._store.channel_summary(channel_id)
            if not summary.needs_sync:
                logger.debug("Channel %s is fresh; skipping remote fetch", channel_id)
                return SyncResult(
                    channel_id=channel_id,
                    success=True,
                    skipped=True,
                    duration_ms=_elapsed_ms(started),
                    last_synced_at=summary.last_sync,
                )

        timeout = deadline if deadline is not None else self._deadline
        try:
            admins = await self._client.get_chat_administrators(channel_id, timeout=timeout)
        except PlatformError as exc:
            logger.warning("Administrator fetch failed for channel %s: %s", channel_id, exc)
            return SyncResult(
                channel_id=channel_id,
                success=False,
                errors=[f"Failed to fetch administrators: {exc}"],
                failure=_failure_kind(exc),
                duration_ms=_elapsed_ms(started),
            )

        existing = {r.user_id: r for r in await self._store.get_all_for_channel(channel_id)}
        result = SyncResult(channel_id=channel_id, success=True)

        # Later entries overwrite earlier ones for the same user.
        remote: Dict[int, ChatMember] = {}
        for member in admins:
            remote[member.user_id] = member

        for user_id, member in remote.items():
            await self._apply_member(channel_id, member, existing.get(user_id), result)

        departed = [user_id for user_id in existing if user_id not in remote]
        for user_id in departed:
            try:
                if await self._store.delete(user_id, channel_id):
                    result.removed_permissions.append(user_id)
            except Exception as exc:
                logger.warning(
                    "Failed to remove permission channel=%s user=%s",
                    channel_id,
                    user_id,
                    exc_info=True,
                )
                await self._record_user_error(
                    channel_id, user_id, f"Failed to remove permission: {exc}", result
                )

        result.success = not result.errors
        result.duration_ms = _elapsed_ms(started)
        result.last_synced_at = datetime.now(timezone.utc)
        return result

    async def _apply_member(
        self,
        channel_id: int,
        member: ChatMember,
        previous: Optional[PermissionRecord],
        result: SyncResult,
    ) -> None:
        user_id = member.user_id
        try:
            grant = grant_from_member(channel_id, member)
        except IncompletePermissionData as exc:
            await self._record_user_error(channel_id, user_id, str(exc), result)
            return

        try:
            await self._store.upsert(grant)
        except Exception as exc:
            logger.warning(
                "Failed to store permission channel=%s user=%s",
                channel_id,
                user_id,
                exc_info=True,
            )
            await self._record_user_error(
                channel_id, user_id, f"Failed to store permission: {exc}", result
            )
            return

        changes = diff_capabilities(previous, grant)
        if changes:
            logger.info(
                "Permission change channel=%s user=%s: %s",
                channel_id,
                user_id,
                ", ".join(changes),
            )
        result.synced_permissions.append(user_id)

    async def _record_user_error(
        self, channel_id: int, user_id: int, message: str, result: SyncResult
    ) -> None:
        result.errors.append(f"user {user_id}: {message}")
        try:
            await self._store.mark_sync_error(user_id, channel_id, message)
        except Exception:
            logger.exception(
                "Failed to mark sync error channel=%s user=%s", channel_id, user_id
            )

    async def bulk_sync(
        self, channel_ids: Iterable[int], force: bool = False
    ) -> BulkSyncResult:
        """Sync channels one after another."""
        started = time.monotonic()
        bulk = BulkSyncResult()
        channel_ids = list(channel_ids)
        for index, channel_id in enumerate(channel_ids):
            try:
                result = await self.sync_channel(channel_id, force=force)
            except Exception as exc:
                logger.exception("Unexpected error syncing channel %s", channel_id)
                result = SyncResult(
                    channel_id=channel_id,
                    success=False,
                    errors=[f"Sync failed: {exc}"],
                )
            bulk.results.append(result)
            if result.success:
                bulk.successful_syncs += 1
            else:
                bulk.failed_syncs += 1
            if self._bulk_delay and index < len(channel_ids) - 1:
                await asyncio.sleep(self._bulk_delay)

        bulk.total_channels = len(channel_ids)
        bulk.duration_ms = _elapsed_ms(started)
        return bulk

    async def sync_stale(self) -> BulkSyncResult:
        """Force-sync every channel holding a stale or erroring record."""
        records = await self._store.find_needing_sync()
        channel_ids = list(dict.fromkeys(r.channel_id for r in records))
        if not channel_ids:
            logger.debug("No channels need permission sync")
            return BulkSyncResult()
        logger.info("Syncing %d stale channel(s)", len(channel_ids))
        return await self.bulk_sync(channel_ids, force=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_user_permission(
        self, user_id: int, channel_id: int
    ) -> Optional[PermissionRecord]:
        return await self._store.get_by_channel_and_user(channel_id, user_id)

    async def get_channel_summary(self, channel_id: int) -> ChannelSummary:
        return await self._store.channel_summary(channel_id)

    async def get_user_channels(self, user_id: int) -> List[UserChannelAccess]:
        return await self._store.get_user_channels(user_id)

    async def check_user_permission(
        self, user_id: int, channel_id: int, capability: Capability
    ) -> PermissionCheckResult:
        record = await self._store.get_by_channel_and_user(channel_id, user_id)
        return check_permission(record, capability)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def remove_user_permission(
        self, requester_id: int, channel_id: int, user_id: int
    ) -> bool:
        """Revoke *user_id*'s cached access on behalf of the channel creator.

        Raises:
            SelfRemovalError: If the requester targets themselves.
            PermissionDenied: If the requester is not the channel creator.
        """
        if requester_id == user_id:
            raise SelfRemovalError("Cannot remove your own permissions")

        async with self._locks.hold(channel_id):
            requester = await self._store.get_by_channel_and_user(channel_id, requester_id)
            if requester is None or not requester.is_creator:
                raise PermissionDenied("Only the channel creator can remove permissions")
            deleted = await self._store.delete(user_id, channel_id)

        if self._audit is not None:
            await self._audit.log(
                _AUDIT_SERVICE,
                "permission_revoked",
                {"channel_id": channel_id, "user_id": user_id, "by": requester_id},
                success=deleted,
            )
        return deleted

    async def validate_channel_connection(
        self, channel_id: int, user_id: int
    ) -> Dict[str, object]:
        """Check the bot can manage *channel_id*, force a sync and report access.

        Returns:
            ``{"success", "has_access", "permission", "error"}``.
        """
        try:
            me = await self._client.get_me(timeout=self._deadline)
            bot_member = await self._client.get_chat_member(
                channel_id, me.id, timeout=self._deadline
            )
        except PlatformError as exc:
            return {
                "success": False,
                "has_access": False,
                "permission": None,
                "error": f"Channel not accessible: {exc}",
            }
        if not bot_member.is_admin:
            return {
                "success": False,
                "has_access": False,
                "permission": None,
                "error": "Bot is not an administrator of the channel",
            }

        result = await self.sync_channel(channel_id, force=True)
        if result.failure is not None:
            return {
                "success": False,
                "has_access": False,
                "permission": None,
                "error": "; ".join(result.errors),
            }

        record = await self._store.get_by_channel_and_user(channel_id, user_id)
        return {
            "success": True,
            "has_access": record is not None,
            "permission": record,
            "error": None if record else "User is not an administrator of this channel",
        }
