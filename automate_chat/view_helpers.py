"""Formatting and argument parsing shared by the CLI and scripts."""

from __future__ import annotations

import shlex
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from .models import DEFAULT_DISPLAY_NAME, IMAGE_PLACEHOLDER, Conversation, Message, coerce_timestamp
from .service import unread_count


class ChatTarget(NamedTuple):
    user_id: str
    name: Optional[str] = None
    role: Optional[str] = None
    vehicle_id: Optional[str] = None


def parse_chat_argument(argument: str) -> Optional[ChatTarget]:
    """Parse ``<user_id> [name=...] [role=...] [vehicle=...]``.

    A bare second token is taken as the display name.
    """

    if not argument or not argument.strip():
        return None

    try:
        tokens = shlex.split(argument)
    except ValueError:
        tokens = argument.split()
    if not tokens:
        return None

    user_id = tokens[0].strip()
    options: dict[str, str] = {}
    loose: list[str] = []
    for token in tokens[1:]:
        key, separator, value = token.partition("=")
        lowered = key.lower()
        if separator and lowered in {"name", "role", "vehicle"}:
            options[lowered] = value.strip()
        else:
            loose.append(token)

    name = options.get("name") or (" ".join(loose) if loose else None)
    return ChatTarget(
        user_id=user_id,
        name=name or None,
        role=options.get("role") or None,
        vehicle_id=options.get("vehicle") or None,
    )


def format_timestamp(value: Optional[object], now: Optional[datetime] = None) -> str:
    """``HH:MM`` for today's timestamps, ``YYYY-MM-DD`` otherwise."""

    coerced = coerce_timestamp(value)
    if coerced is None:
        return ""
    moment = datetime.fromtimestamp(coerced, tz=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    if moment.date() == reference.date():
        return moment.strftime("%H:%M")
    return moment.strftime("%Y-%m-%d")


def format_conversation_line(index: int, conversation: Conversation, viewer_id: str) -> str:
    other = conversation.other_participant(viewer_id) or ""
    name = conversation.participant_names.get(other) or DEFAULT_DISPLAY_NAME

    preview = ""
    last = conversation.last_message
    if last is not None and (last.content or last.has_image):
        prefix = "You: " if last.sender == viewer_id else ""
        preview = f"{prefix}{last.content or IMAGE_PLACEHOLDER}"

    stamp = format_timestamp(conversation.last_message_timestamp)
    unread = unread_count(conversation, viewer_id)
    marker = f" ({unread} unread)" if unread else ""
    parts = [f"{index}. {name}{marker}"]
    if stamp:
        parts.append(stamp)
    if preview:
        parts.append(preview)
    return "  ".join(parts)


def format_message_line(message: Message, conversation: Conversation, viewer_id: str) -> str:
    if message.sender == viewer_id:
        author = "You"
    else:
        author = (
            conversation.participant_names.get(message.sender)
            or message.sender_name
            or DEFAULT_DISPLAY_NAME
        )
    body = message.content
    if message.image_url:
        body = f"{body} [image: {message.image_url}]".strip()
    stamp = format_timestamp(message.timestamp)
    receipt = " ✓✓" if message.sender == viewer_id and message.read else ""
    prefix = f"[{stamp}] " if stamp else ""
    return f"{prefix}{author}> {body}{receipt}"
