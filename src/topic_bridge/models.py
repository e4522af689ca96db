"""Data models used across the bridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


class RecordType(str, Enum):
    """Kinds of persisted records; the value is the stored type tag."""

    CHAT = "chat"
    USER = "user"
    CONTACT = "contact"
    MESSAGE = "message"
    EPHEMERAL = "ephemeral"


class Platform(str, Enum):
    WHATSAPP = "whatsapp"
    TELEGRAM = "telegram"


class ContentVariant(str, Enum):
    """Closed set of content kinds an inbound event can be classified as."""

    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    VIDEO_NOTE = "video_note"
    AUDIO = "audio"
    DOCUMENT = "document"
    STICKER = "sticker"
    LOCATION = "location"
    CONTACT = "contact"
    REACTION = "reaction"
    REVOKE = "revoke"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_moment(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return _utcnow()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return _utcnow()


@dataclass(slots=True)
class ThreadMapping:
    """External thread identifier bound to the Telegram topic representing it."""

    external_thread_id: str
    topic_id: int
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)
    title: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "external_thread_id": self.external_thread_id,
            "topic_id": self.topic_id,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "title": self.title,
        }

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> "ThreadMapping":
        return cls(
            external_thread_id=str(data["external_thread_id"]),
            topic_id=int(data["topic_id"]),
            created_at=_parse_moment(data.get("created_at")),
            last_activity=_parse_moment(data.get("last_activity")),
            title=data.get("title") or None,
        )


@dataclass(slots=True)
class UserMapping:
    """A participant seen on the external platform."""

    external_user_id: str
    handle: str
    display_name: str | None = None
    first_seen: datetime = field(default_factory=_utcnow)
    last_seen: datetime = field(default_factory=_utcnow)
    message_count: int = 0

    def to_record(self) -> dict[str, Any]:
        return {
            "external_user_id": self.external_user_id,
            "handle": self.handle,
            "display_name": self.display_name,
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "message_count": self.message_count,
        }

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> "UserMapping":
        return cls(
            external_user_id=str(data["external_user_id"]),
            handle=str(data.get("handle") or ""),
            display_name=data.get("display_name") or None,
            first_seen=_parse_moment(data.get("first_seen")),
            last_seen=_parse_moment(data.get("last_seen")),
            message_count=int(data.get("message_count") or 0),
        )


@dataclass(slots=True)
class ContactMapping:
    handle: str
    display_name: str
    updated_at: datetime = field(default_factory=_utcnow)

    def to_record(self) -> dict[str, Any]:
        return {
            "handle": self.handle,
            "display_name": self.display_name,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> "ContactMapping":
        return cls(
            handle=str(data["handle"]),
            display_name=str(data.get("display_name") or ""),
            updated_at=_parse_moment(data.get("updated_at")),
        )


@dataclass(frozen=True, slots=True)
class RemoteKey:
    """Identity of a WhatsApp message."""

    chat_id: str
    message_id: str
    from_me: bool = False
    participant: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "message_id": self.message_id,
            "from_me": self.from_me,
            "participant": self.participant,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RemoteKey":
        return cls(
            chat_id=str(data["chat_id"]),
            message_id=str(data["message_id"]),
            from_me=bool(data.get("from_me", False)),
            participant=data.get("participant") or None,
        )


@dataclass(slots=True)
class MessageCrossRef:
    """Telegram message id paired with the WhatsApp message it mirrors."""

    local_message_id: int
    remote_key: RemoteKey
    created_at: datetime = field(default_factory=_utcnow)
    revoked: bool = False

    def to_record(self) -> dict[str, Any]:
        return {
            "local_message_id": self.local_message_id,
            "remote_key": self.remote_key.to_dict(),
            "created_at": self.created_at.isoformat(),
            "revoked": self.revoked,
        }

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> "MessageCrossRef":
        return cls(
            local_message_id=int(data["local_message_id"]),
            remote_key=RemoteKey.from_dict(data["remote_key"]),
            created_at=_parse_moment(data.get("created_at")),
            revoked=bool(data.get("revoked", False)),
        )


@dataclass(slots=True)
class EphemeralSetting:
    thread_id: str
    enabled: bool
    timer_seconds: int = 604800

    def to_record(self) -> dict[str, Any]:
        return {
            "thread_id": self.thread_id,
            "enabled": self.enabled,
            "timer_seconds": self.timer_seconds,
        }

    @classmethod
    def from_record(cls, data: Mapping[str, Any]) -> "EphemeralSetting":
        return cls(
            thread_id=str(data["thread_id"]),
            enabled=bool(data.get("enabled", False)),
            timer_seconds=int(data.get("timer_seconds") or 604800),
        )


@dataclass(slots=True)
class RateLimitConfig:
    """Fixed window rate limit: ``max_count`` actions per ``window_seconds``."""

    max_count: int = 30
    window_seconds: float = 60.0


@dataclass(slots=True)
class MediaRef:
    """Pointer to downloadable media on the source platform."""

    source: str
    file_name: str | None = None
    mime_type: str | None = None
    animated: bool = False


@dataclass(slots=True)
class Location:
    latitude: float
    longitude: float
    name: str | None = None
    address: str | None = None


@dataclass(slots=True)
class ContactCard:
    phone: str
    name: str


@dataclass(slots=True)
class Reaction:
    target_message_id: str
    emoji: str


@dataclass(slots=True)
class InboundEvent:
    """Message event normalized from either platform.

    Exactly one payload field is expected to carry the content; the router
    picks the variant from whichever field is populated first.
    """

    platform: Platform
    chat_id: str
    message_id: str
    sender_id: str
    sender_name: str | None = None
    sender_contact_name: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)
    thread_id: int | None = None
    from_me: bool = False
    is_group: bool = False
    chat_name: str | None = None
    text: str | None = None
    caption: str | None = None
    photo: MediaRef | None = None
    video: MediaRef | None = None
    video_note: MediaRef | None = None
    animation: MediaRef | None = None
    voice: MediaRef | None = None
    audio: MediaRef | None = None
    document: MediaRef | None = None
    sticker: MediaRef | None = None
    location: Location | None = None
    contact: ContactCard | None = None
    reaction: Reaction | None = None
    revoked_id: str | None = None
    quoted_id: str | None = None
    quoted_text: str | None = None
    quoted_participant: str | None = None
    spoiler: bool = False

    @property
    def body(self) -> str:
        return self.text or self.caption or ""


@dataclass(slots=True)
class CallEvent:
    caller: str
    call_id: str
    status: str
    timestamp: datetime = field(default_factory=_utcnow)


@dataclass(slots=True)
class GroupUpdateEvent:
    group_id: str
    action: str | None = None


@dataclass(slots=True)
class Destination:
    """Where an adapter delivers the relayed content."""

    chat_id: str
    thread_id: int | None = None
    reply_to: str | None = None
    expiration: int | None = None
    view_once: bool = False
