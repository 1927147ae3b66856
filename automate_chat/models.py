"""Conversation and message records shared by the cache, remote store and service."""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

IMAGE_PLACEHOLDER = "Sent an image"
DEFAULT_DISPLAY_NAME = "User"
DEFAULT_ROLE = "unknown"


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string with milliseconds."""

    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def coerce_timestamp(value: Optional[object]) -> Optional[float]:
    """Turn an ISO string or epoch number into epoch seconds."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Millisecond epochs are common in documents written by JS clients.
        return float(value) / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        try:
            return coerce_timestamp(float(trimmed))
        except ValueError:
            pass
        normalized = trimmed[:-1] + "+00:00" if trimmed.endswith("Z") else trimmed
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.timestamp()
    return None


def fingerprint_messages(messages: "list[Message]") -> str:
    """Serialized message array, used to detect divergent copies."""

    return json.dumps([message.to_dict() for message in messages], sort_keys=True)


def later_timestamp(first: Optional[str], second: Optional[str]) -> Optional[str]:
    """Return whichever timestamp is later, keeping the original string."""

    if not first:
        return second
    if not second:
        return first
    first_value = coerce_timestamp(first)
    second_value = coerce_timestamp(second)
    if first_value is None:
        return second
    if second_value is None:
        return first
    return second if second_value > first_value else first


@dataclass(frozen=True)
class User:
    """The acting identity for a messaging operation."""

    id: str
    name: str = DEFAULT_DISPLAY_NAME
    role: str = DEFAULT_ROLE

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "User":
        user_id = str(data.get("id") or data.get("_id") or "").strip()
        return cls(
            id=user_id,
            name=str(data.get("name") or DEFAULT_DISPLAY_NAME),
            role=str(data.get("role") or DEFAULT_ROLE),
        )


@dataclass
class Message:
    id: str
    sender: str
    content: str = ""
    sender_name: Optional[str] = None
    image_url: Optional[str] = None
    timestamp: Optional[str] = None
    read: bool = False

    @property
    def has_image(self) -> bool:
        return bool(self.image_url)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "senderName": self.sender_name,
            "content": self.content,
            "imageUrl": self.image_url,
            "timestamp": self.timestamp,
            "read": self.read,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Message":
        timestamp = data.get("timestamp")
        return cls(
            id=str(data.get("id") or ""),
            sender=str(data.get("sender") or ""),
            content=str(data.get("content") or ""),
            sender_name=data.get("senderName"),
            image_url=data.get("imageUrl") or None,
            timestamp=str(timestamp) if timestamp is not None else None,
            read=bool(data.get("read", False)),
        )


def merge_messages(first: list[Message], second: list[Message]) -> list[Message]:
    """Union two message arrays by id, ordered by timestamp.

    Messages are immutable apart from ``read``, which may only become true,
    so the merge keeps the copy from ``first`` for each id and ORs the read
    flags. Pass the copy whose fields should win (e.g. device-local image
    references) as ``first``.
    """

    merged: dict[str, Message] = {}
    order: list[str] = []
    for message in [*first, *second]:
        current = merged.get(message.id)
        if current is None:
            merged[message.id] = Message(**vars(message))
            order.append(message.id)
        elif message.read and not current.read:
            current.read = True

    messages = [merged[message_id] for message_id in order]
    messages.sort(key=lambda item: coerce_timestamp(item.timestamp) or 0.0)
    return messages


@dataclass
class LastMessage:
    """Summary of the newest message, used when rendering conversation lists."""

    content: str
    sender: str
    id: Optional[str] = None
    has_image: bool = False
    read: bool = False
    timestamp: Optional[str] = None

    @classmethod
    def from_message(cls, message: Message) -> "LastMessage":
        content = message.content or (IMAGE_PLACEHOLDER if message.has_image else "")
        return cls(
            id=message.id,
            content=content,
            sender=message.sender,
            has_image=message.has_image,
            read=message.read,
            timestamp=message.timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "sender": self.sender,
            "hasImage": self.has_image,
            "read": self.read,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LastMessage":
        timestamp = data.get("timestamp")
        return cls(
            id=data.get("id"),
            content=str(data.get("content") or ""),
            sender=str(data.get("sender") or ""),
            has_image=bool(data.get("hasImage", False)),
            read=bool(data.get("read", False)),
            timestamp=str(timestamp) if timestamp is not None else None,
        )


@dataclass
class Conversation:
    id: str
    participants: list[str]
    participant_names: dict[str, str] = field(default_factory=dict)
    participant_roles: dict[str, str] = field(default_factory=dict)
    messages: list[Message] = field(default_factory=list)
    last_message: Optional[LastMessage] = None
    last_message_timestamp: Optional[str] = None
    vehicle_id: Optional[str] = None
    created_at: Optional[str] = None

    def other_participant(self, user_id: str) -> Optional[str]:
        """Return the participant that is not ``user_id``."""

        return next((pid for pid in self.participants if pid != user_id), None)

    def copy(self) -> "Conversation":
        return copy.deepcopy(self)

    def messages_fingerprint(self) -> str:
        return fingerprint_messages(self.messages)

    def sort_timestamp(self) -> float:
        value = coerce_timestamp(self.last_message_timestamp)
        if value is None:
            value = coerce_timestamp(self.created_at)
        return value or 0.0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "participants": list(self.participants),
            "participantNames": dict(self.participant_names),
            "participantRoles": dict(self.participant_roles),
            "messages": [message.to_dict() for message in self.messages],
            "lastMessage": self.last_message.to_dict() if self.last_message else None,
            "lastMessageTimestamp": self.last_message_timestamp,
            "createdAt": self.created_at,
        }
        if self.vehicle_id:
            data["vehicleId"] = self.vehicle_id
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Conversation":
        raw_participants = data.get("participants") or []
        participants = [str(pid) for pid in raw_participants if pid]

        raw_messages = data.get("messages") or []
        messages = [
            Message.from_dict(item) for item in raw_messages if isinstance(item, Mapping)
        ]

        last_message = None
        raw_last = data.get("lastMessage")
        if isinstance(raw_last, Mapping):
            last_message = LastMessage.from_dict(raw_last)

        last_timestamp = data.get("lastMessageTimestamp")
        created_at = data.get("createdAt")
        vehicle_id = data.get("vehicleId")
        return cls(
            id=str(data.get("id") or ""),
            participants=participants,
            participant_names={
                str(key): str(value)
                for key, value in (data.get("participantNames") or {}).items()
                if value
            },
            participant_roles={
                str(key): str(value)
                for key, value in (data.get("participantRoles") or {}).items()
                if value
            },
            messages=messages,
            last_message=last_message,
            last_message_timestamp=str(last_timestamp) if last_timestamp is not None else None,
            vehicle_id=str(vehicle_id) if vehicle_id else None,
            created_at=str(created_at) if created_at is not None else None,
        )

    @classmethod
    def from_json(cls, payload: str) -> "Conversation":
        data = json.loads(payload)
        if not isinstance(data, Mapping):
            raise ValueError("conversation payload must be a JSON object")
        return cls.from_dict(data)


def merge_conversation(cached: Conversation, incoming: Conversation) -> Conversation:
    """Fold the messages of a locally cached copy into ``incoming``.

    The result carries ``incoming``'s metadata, the union of both message
    arrays (cached copies first) and a summary re-derived from the final
    message. Neither argument is modified.
    """

    merged = incoming.copy()
    merged.messages = merge_messages(cached.messages, incoming.messages)
    if merged.messages:
        merged.last_message = LastMessage.from_message(merged.messages[-1])
    merged.last_message_timestamp = later_timestamp(
        cached.last_message_timestamp, incoming.last_message_timestamp
    )
    if not merged.created_at:
        merged.created_at = cached.created_at
    return merged
