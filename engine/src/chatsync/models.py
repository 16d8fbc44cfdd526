"""Row shapes exchanged with the data store and the change-event boundary."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping

from .errors import InvalidPayload

TEMP_ID_PREFIX = "tmp_"
FILE_PLACEHOLDER = "[File shared]"
VOICE_PLACEHOLDER = "[Voice message]"
UNKNOWN_USERNAME = "Unknown"


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{secrets.token_urlsafe(12)}"


def is_temp_id(message_id: str) -> bool:
    return message_id.startswith(TEMP_ID_PREFIX)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware datetime (naive means UTC)."""

    raw = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise InvalidPayload(f"invalid timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _required_str(row: Mapping[str, Any], key: str) -> str:
    value = row.get(key)
    if not isinstance(value, str) or not value:
        raise InvalidPayload(f"{key} required")
    return value


def _optional_str(row: Mapping[str, Any], key: str) -> str | None:
    value = row.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InvalidPayload(f"{key} must be a string")
    return value


@dataclass(frozen=True)
class Message:
    id: str
    sender_id: str
    receiver_id: str
    text: str
    created_at: str
    file_url: str | None = None
    voice_url: str | None = None
    reply_to_id: str | None = None
    read: bool | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Message":
        if not isinstance(row, Mapping):
            raise InvalidPayload("message row must be an object")
        text = row.get("text")
        if not isinstance(text, str):
            raise InvalidPayload("text must be a string")
        read = row.get("read")
        if read is not None and not isinstance(read, bool):
            raise InvalidPayload("read must be a boolean")
        created_at = _required_str(row, "created_at")
        parse_timestamp(created_at)
        return cls(
            id=_required_str(row, "id"),
            sender_id=_required_str(row, "sender_id"),
            receiver_id=_required_str(row, "receiver_id"),
            text=text,
            created_at=created_at,
            file_url=_optional_str(row, "file_url"),
            voice_url=_optional_str(row, "voice_url"),
            reply_to_id=_optional_str(row, "reply_to_id"),
            read=read,
        )

    def to_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "text": self.text,
            "created_at": self.created_at,
        }
        for key in ("file_url", "voice_url", "reply_to_id", "read"):
            value = getattr(self, key)
            if value is not None:
                row[key] = value
        return row

    @property
    def is_temporary(self) -> bool:
        return is_temp_id(self.id)

    @property
    def is_unread(self) -> bool:
        # Rows written before the read column existed have no value: unread.
        return self.read is not True

    @property
    def timestamp(self) -> datetime:
        return parse_timestamp(self.created_at)

    def involves(self, user_a: str, user_b: str) -> bool:
        return (self.sender_id, self.receiver_id) in ((user_a, user_b), (user_b, user_a))

    def peer_of(self, user_id: str) -> str:
        return self.receiver_id if self.sender_id == user_id else self.sender_id

    @property
    def identity(self) -> tuple:
        """Rows equal on this key are one message written twice."""
        return (self.sender_id, self.receiver_id, self.timestamp, self.text)

    def matches_content(self, other: "Message") -> bool:
        return (
            self.sender_id == other.sender_id
            and self.receiver_id == other.receiver_id
            and self.text == other.text
        )


@dataclass(frozen=True)
class PresenceRecord:
    user_id: str
    is_online: bool
    last_seen: str | None = None

    @classmethod
    def offline(cls, user_id: str) -> "PresenceRecord":
        return cls(user_id=user_id, is_online=False, last_seen=None)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "PresenceRecord":
        return cls(
            user_id=_required_str(row, "user_id"),
            is_online=row.get("is_online") is True,
            last_seen=_optional_str(row, "last_seen"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "is_online": self.is_online, "last_seen": self.last_seen}


@dataclass(frozen=True)
class Profile:
    id: str
    username: str
    avatar_url: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Profile":
        username = row.get("username")
        return cls(
            id=_required_str(row, "id"),
            username=username if isinstance(username, str) and username else UNKNOWN_USERNAME,
            avatar_url=_optional_str(row, "avatar_url"),
        )


@dataclass
class Conversation:
    """Materialized view of one peer in the conversation directory."""

    peer_id: str
    username: str
    last_message: str
    last_message_at: str
    avatar_url: str | None = None
    is_online: bool = False
    unread_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "peer_id": self.peer_id,
            "username": self.username,
            "avatar_url": self.avatar_url,
            "last_message": self.last_message,
            "last_message_at": self.last_message_at,
            "is_online": self.is_online,
            "unread_count": self.unread_count,
        }


class EventKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    """A change-feed notification as delivered by the gateway."""

    kind: EventKind
    collection: str
    row: Dict[str, Any]
    old: Dict[str, Any] | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind.value, "collection": self.collection, "row": self.row, "old": self.old}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ChangeEvent":
        try:
            kind = EventKind(payload.get("kind"))
        except ValueError as exc:
            raise InvalidPayload(f"unknown event kind: {payload.get('kind')!r}") from exc
        collection = payload.get("collection")
        row = payload.get("row") or {}
        old = payload.get("old")
        if not isinstance(collection, str) or not isinstance(row, dict):
            raise InvalidPayload("collection and row required")
        if old is not None and not isinstance(old, dict):
            raise InvalidPayload("old must be an object")
        return cls(kind=kind, collection=collection, row=row, old=old)


@dataclass(frozen=True)
class MessageEvent:
    """Validated message change: the only event shape the message log accepts."""

    kind: EventKind
    message_id: str
    message: Message | None = None


def parse_message_event(change: ChangeEvent) -> MessageEvent:
    if change.kind is EventKind.DELETE:
        source = change.old or change.row
        message_id = source.get("id") if source else None
        if not isinstance(message_id, str) or not message_id:
            raise InvalidPayload("delete event without id")
        try:
            message: Message | None = Message.from_row(source)
        except InvalidPayload:
            # Deletes may carry only the primary key.
            message = None
        return MessageEvent(kind=change.kind, message_id=message_id, message=message)

    message = Message.from_row(change.row)
    return MessageEvent(kind=change.kind, message_id=message.id, message=message)
