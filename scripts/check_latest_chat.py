#!/usr/bin/env python3
"""Print the most recently active conversation and its latest message."""

from __future__ import annotations

import argparse
from contextlib import ExitStack
from datetime import datetime, timezone
from typing import Optional

from automate_chat.cli import build_service
from automate_chat.config import get_current_user, load_settings
from automate_chat.errors import IdentityUnavailable
from automate_chat.models import DEFAULT_DISPLAY_NAME, IMAGE_PLACEHOLDER, coerce_timestamp


def _format_timestamp(value: Optional[object]) -> str:
    coerced = coerce_timestamp(value)
    if not coerced:
        return "unknown"
    return datetime.fromtimestamp(coerced, tz=timezone.utc).isoformat()


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Show the most recent conversation and print its latest message."
    )
    parser.add_argument(
        "--config",
        default="config.ini",
        help="Path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument(
        "--user-id",
        help="List conversations of this user instead of the signed-in one.",
    )
    args = parser.parse_args()

    settings = load_settings(args.config)
    if args.user_id:
        user_id = args.user_id
    else:
        try:
            user_id = get_current_user(args.config).id
        except IdentityUnavailable:
            print("No signed-in user found. Provide --user-id or add [user] to config.ini.")
            return 2

    try:
        with ExitStack() as stack:
            service = build_service(settings, stack)
            conversations = service.list_conversations(user_id)
            if not conversations:
                print("No conversations found.")
                return 1

            latest = conversations[0]
            other = latest.other_participant(user_id) or ""
            last_message = latest.last_message

            print(f"Conversation with: {latest.participant_names.get(other) or DEFAULT_DISPLAY_NAME}")
            print(f"Conversation ID: {latest.id}")
            print(f"Last activity (UTC): {_format_timestamp(latest.last_message_timestamp)}")
            if latest.vehicle_id:
                print(f"Vehicle: {latest.vehicle_id}")
            if last_message is None:
                print("No messages yet.")
                return 0
            author = "you" if last_message.sender == user_id else last_message.sender
            print(f"Last author: {author}")
            print("Last message:")
            print(last_message.content or IMAGE_PLACEHOLDER)
    except Exception as exc:
        print(f"Failed to fetch latest chat: {exc}")
        return 1

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
