"""
Typed views over Bot API result payloads.

Only the fields this service reads are lifted into attributes; the full
payload stays available as ``raw``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from telegram.constants import ChatMemberStatus

ADMIN_STATUSES: FrozenSet[str] = frozenset(
    {ChatMemberStatus.OWNER.value, ChatMemberStatus.ADMINISTRATOR.value}
)

CAPABILITY_FIELDS = (
    "can_post_messages",
    "can_edit_messages",
    "can_delete_messages",
    "can_change_info",
    "can_invite_users",
)


@dataclass(slots=True)
class BotUser:
    id: int
    is_bot: bool
    first_name: str
    username: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotUser":
        return cls(
            id=int(data["id"]),
            is_bot=bool(data.get("is_bot", False)),
            first_name=data.get("first_name", ""),
            username=data.get("username"),
            raw=data,
        )


@dataclass(slots=True)
class Chat:
    id: int
    type: str
    title: Optional[str] = None
    username: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chat":
        return cls(
            id=int(data["id"]),
            type=data.get("type", ""),
            title=data.get("title"),
            username=data.get("username"),
            raw=data,
        )


@dataclass(slots=True)
class ChatMember:
    """One entry from ``getChatMember`` / ``getChatAdministrators``.

    Capability flags are ``None`` when Telegram omitted them (always the
    case for the creator, and for administrators when the bot cannot read
    the full rights).
    """

    user: BotUser
    status: str
    is_anonymous: bool = False
    can_post_messages: Optional[bool] = None
    can_edit_messages: Optional[bool] = None
    can_delete_messages: Optional[bool] = None
    can_change_info: Optional[bool] = None
    can_invite_users: Optional[bool] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMember":
        flags = {
            name: (bool(data[name]) if data.get(name) is not None else None)
            for name in CAPABILITY_FIELDS
        }
        return cls(
            user=BotUser.from_dict(data["user"]),
            status=data["status"],
            is_anonymous=bool(data.get("is_anonymous", False)),
            raw=data,
            **flags,
        )

    @property
    def user_id(self) -> int:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.status in ADMIN_STATUSES

    @property
    def is_creator(self) -> bool:
        return self.status == ChatMemberStatus.OWNER.value


@dataclass(slots=True)
class Message:
    message_id: int
    chat: Chat
    date: int
    text: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            message_id=int(data["message_id"]),
            chat=Chat.from_dict(data["chat"]),
            date=int(data.get("date", 0)),
            text=data.get("text"),
            raw=data,
        )


@dataclass(slots=True)
class WebhookInfo:
    url: str
    has_custom_certificate: bool = False
    pending_update_count: int = 0
    last_error_date: Optional[int] = None
    last_error_message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookInfo":
        return cls(
            url=data.get("url", ""),
            has_custom_certificate=bool(data.get("has_custom_certificate", False)),
            pending_update_count=int(data.get("pending_update_count", 0)),
            last_error_date=data.get("last_error_date"),
            last_error_message=data.get("last_error_message"),
            raw=data,
        )
