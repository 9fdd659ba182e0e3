"""
Capability interpretation.

Stored flags mirror what Telegram reports; the creator is special-cased
here and only here.  Every authorization check goes through
:func:`effective_capabilities`.
"""

from __future__ import annotations

from typing import FrozenSet, List, Optional

from botapi.types import ChatMember
from permsync.models import (
    AccessLevel,
    Capability,
    PermissionCheckResult,
    PermissionGrant,
    PermissionRecord,
    TelegramStatus,
)

ALL_CAPABILITIES: FrozenSet[Capability] = frozenset(Capability)


class IncompletePermissionData(ValueError):
    """Telegram listed an administrator without any rights fields."""


def effective_capabilities(record: Optional[PermissionRecord]) -> FrozenSet[Capability]:
    if record is None:
        return frozenset()
    if record.is_creator:
        return ALL_CAPABILITIES
    return frozenset(c for c in Capability if record.flag(c))


def has_capability(record: Optional[PermissionRecord], capability: Capability) -> bool:
    return capability in effective_capabilities(record)


def access_level(record: Optional[PermissionRecord]) -> AccessLevel:
    if record is None:
        return AccessLevel.NONE
    if record.is_creator:
        return AccessLevel.CREATOR
    return AccessLevel.ADMINISTRATOR


def check_permission(
    record: Optional[PermissionRecord], capability: Capability
) -> PermissionCheckResult:
    if record is None:
        return PermissionCheckResult(
            has_permission=False,
            access_level=AccessLevel.NONE,
            reason="User has no permissions for this channel",
        )
    allowed = has_capability(record, capability)
    return PermissionCheckResult(
        has_permission=allowed,
        access_level=access_level(record),
        telegram_status=record.telegram_status,
        reason=None if allowed else f"User lacks {capability.value} permission",
    )


def grant_from_member(channel_id: int, member: ChatMember) -> PermissionGrant:
    """Map a creator/administrator entry to the values to store.

    Telegram omits rights that are not granted, so an individually absent
    flag is stored as ``False``.

    Raises:
        ValueError: If the member is neither creator nor administrator.
        IncompletePermissionData: If an administrator entry carries no
            rights fields at all (the bot could not read them).
    """
    status = TelegramStatus(member.status)
    flags = {c.value: getattr(member, c.value) for c in Capability}
    if status is TelegramStatus.ADMINISTRATOR and all(v is None for v in flags.values()):
        raise IncompletePermissionData(
            f"Incomplete rights for administrator {member.user_id}: no rights reported"
        )
    return PermissionGrant(
        channel_id=channel_id,
        user_id=member.user_id,
        telegram_status=status,
        **{name: bool(value) for name, value in flags.items()},
    )


def diff_capabilities(old: Optional[PermissionRecord], new: PermissionGrant) -> List[str]:
    """Describe what changed between a stored record and fresh remote facts."""
    if old is None:
        return ["created"]
    changes: List[str] = []
    if old.telegram_status is not new.telegram_status:
        changes.append(
            f"status {old.telegram_status.value} -> {new.telegram_status.value}"
        )
    for capability in Capability:
        before = old.flag(capability)
        after = getattr(new, capability.value)
        if before != after:
            changes.append(f"{capability.value} {'granted' if after else 'revoked'}")
    return changes
