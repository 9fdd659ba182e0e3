"""
Data model for cached channel authorization records and sync results.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
from uuid import UUID

STALENESS_WINDOW = timedelta(hours=24)


class TelegramStatus(str, Enum):
    CREATOR = "creator"
    ADMINISTRATOR = "administrator"


class Capability(str, Enum):
    POST_MESSAGES = "can_post_messages"
    EDIT_MESSAGES = "can_edit_messages"
    DELETE_MESSAGES = "can_delete_messages"
    CHANGE_INFO = "can_change_info"
    INVITE_USERS = "can_invite_users"


class AccessLevel(str, Enum):
    NONE = "none"
    ADMINISTRATOR = "administrator"
    CREATOR = "creator"


@dataclass(slots=True)
class PermissionRecord:
    """The reconciled authorization fact for one (channel, user) pair.

    Capability flags hold exactly what Telegram reported.  For the creator
    they are usually all ``False`` (Telegram omits them); use
    :func:`permsync.capabilities.effective_capabilities` for checks.
    """

    id: UUID
    channel_id: int
    user_id: int
    telegram_status: TelegramStatus
    can_post_messages: bool
    can_edit_messages: bool
    can_delete_messages: bool
    can_change_info: bool
    can_invite_users: bool
    last_synced_at: datetime
    sync_error: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PermissionRecord":
        return cls(
            id=row["id"],
            channel_id=int(row["channel_id"]),
            user_id=int(row["user_id"]),
            telegram_status=TelegramStatus(row["telegram_status"]),
            can_post_messages=bool(row["can_post_messages"]),
            can_edit_messages=bool(row["can_edit_messages"]),
            can_delete_messages=bool(row["can_delete_messages"]),
            can_change_info=bool(row["can_change_info"]),
            can_invite_users=bool(row["can_invite_users"]),
            last_synced_at=row["last_synced_at"],
            sync_error=row["sync_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def is_creator(self) -> bool:
        return self.telegram_status is TelegramStatus.CREATOR

    def flag(self, capability: Capability) -> bool:
        """Raw stored flag, without the creator override."""
        return bool(getattr(self, capability.value))

    def needs_sync(
        self,
        now: Optional[datetime] = None,
        staleness: timedelta = STALENESS_WINDOW,
    ) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.sync_error is not None or now - self.last_synced_at >= staleness

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["id"] = str(self.id)
        data["telegram_status"] = self.telegram_status.value
        for key in ("last_synced_at", "created_at", "updated_at"):
            data[key] = data[key].isoformat()
        return data


@dataclass(slots=True)
class PermissionGrant:
    """Values written by create/upsert: the remote facts for one user."""

    channel_id: int
    user_id: int
    telegram_status: TelegramStatus
    can_post_messages: bool = False
    can_edit_messages: bool = False
    can_delete_messages: bool = False
    can_change_info: bool = False
    can_invite_users: bool = False

    def flags(self) -> Dict[str, bool]:
        return {capability.value: getattr(self, capability.value) for capability in Capability}


@dataclass(slots=True)
class PermissionFilter:
    """Criteria for :meth:`PermissionRecordStore.find_by_filter`.

    ``capability`` and ``has_capability`` only apply together.
    """

    channel_id: Optional[int] = None
    user_id: Optional[int] = None
    telegram_status: Optional[TelegramStatus] = None
    capability: Optional[Capability] = None
    has_capability: Optional[bool] = None
    synced_after: Optional[datetime] = None
    has_sync_error: Optional[bool] = None


@dataclass(slots=True)
class ChannelSummary:
    channel_id: int
    total_creators: int
    total_admins: int
    active_permissions: int
    sync_errors: int
    last_sync: Optional[datetime]
    needs_sync: bool

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_sync"] = self.last_sync.isoformat() if self.last_sync else None
        return data


@dataclass(slots=True)
class SyncResult:
    """Outcome of one reconciliation pass.

    ``failure`` is set only when the pass aborted before touching the
    store: ``"timeout"``, ``"network"`` or ``"platform"``.
    """

    channel_id: int
    success: bool
    synced_permissions: List[int] = field(default_factory=list)
    removed_permissions: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    skipped: bool = False
    failure: Optional[str] = None
    duration_ms: int = 0
    last_synced_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_synced_at"] = (
            self.last_synced_at.isoformat() if self.last_synced_at else None
        )
        return data


@dataclass(slots=True)
class BulkSyncResult:
    total_channels: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    results: List[SyncResult] = field(default_factory=list)
    duration_ms: int = 0


@dataclass(slots=True)
class PermissionCheckResult:
    has_permission: bool
    access_level: AccessLevel
    telegram_status: Optional[TelegramStatus] = None
    reason: Optional[str] = None


@dataclass(slots=True)
class UserChannelAccess:
    channel_id: int
    user_id: int
    access_level: AccessLevel
    record: PermissionRecord
