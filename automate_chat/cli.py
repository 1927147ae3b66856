"""Interactive command line client for marketplace conversations."""

from __future__ import annotations

import sys
from contextlib import ExitStack
from typing import Any, Callable, Mapping, Optional

from .config import ChatSettings, get_current_user, load_settings
from .delivery import ChatThread
from .errors import IdentityUnavailable, InvalidArgument
from .logging_config import configure_logging
from .media import MediaUploader
from .models import Conversation, User
from .remote import RemoteConversationStore
from .service import Alert, ChatService, Navigator
from .storage import LocalConversationCache
from .stores import SyncedConversationStore
from .view_helpers import (
    ChatTarget,
    format_conversation_line,
    format_message_line,
    parse_chat_argument,
)

# Exit commands recognised by the CLI.
EXIT_COMMANDS = {"exit", "quit", "q"}
BACK_COMMANDS = {"/back", "/close"}
IMAGE_COMMAND = "/image"


def print_usage() -> None:
    print("Commands:")
    print("  list                                   show your conversations")
    print("  chat <user_id> [name=..] [role=..] [vehicle=..]")
    print("                                         open a conversation with a user")
    print("  open <n>                               open the n-th conversation from 'list'")
    print("  exit | quit | q                        leave")
    print("Inside a conversation type a message, '/image <path> [caption]' or '/back'.")


def print_alert(title: str, message: str) -> None:
    print(f"{title}: {message}")


def build_service(
    settings: ChatSettings,
    stack: ExitStack,
    navigator: Optional[Navigator] = None,
    alert: Optional[Alert] = None,
) -> ChatService:
    """Open the cache, remote store and uploader described by ``settings``."""

    cache = stack.enter_context(LocalConversationCache(settings.cache_path))

    remote = None
    if settings.remote_url:
        remote = stack.enter_context(
            RemoteConversationStore(
                settings.remote_url,
                ws_url=settings.ws_url,
                api_token=settings.api_token,
                request_timeout=settings.request_timeout,
                subscribe_timeout=settings.subscribe_timeout,
            )
        )

    uploader = None
    if settings.upload_url:
        uploader = stack.enter_context(
            MediaUploader(
                settings.upload_url,
                settings.upload_preset,
                request_timeout=settings.request_timeout,
            )
        )

    return ChatService(
        SyncedConversationStore(cache, remote),
        uploader=uploader,
        navigator=navigator,
        alert=alert,
        upload_folder=settings.upload_folder,
    )


def handle_list_command(service: ChatService, user: User) -> list[Conversation]:
    """Print the user's conversations and return them for ``open <n>``."""

    conversations = service.list_conversations(user.id)
    if not conversations:
        print("No conversations yet. Start one with 'chat <user_id>'.")
        return conversations
    for index, conversation in enumerate(conversations, start=1):
        print(format_conversation_line(index, conversation, user.id))
    return conversations


def target_from_listing(
    selector: str, conversations: list[Conversation], user: User
) -> Optional[dict[str, Any]]:
    """Turn ``open <n>`` into ChatRoom parameters."""

    try:
        index = int(selector.strip())
    except ValueError:
        return None
    if index < 1 or index > len(conversations):
        return None

    conversation = conversations[index - 1]
    other = conversation.other_participant(user.id)
    if other is None:
        return None
    return {
        "conversationId": conversation.id,
        "otherUserId": other,
        "otherUserName": conversation.participant_names.get(other) or "User",
        "vehicleId": conversation.vehicle_id,
    }


def print_conversation(conversation: Conversation, user: User) -> None:
    for message in conversation.messages:
        print(format_message_line(message, conversation, user.id))


def run_thread(
    service: ChatService,
    user: User,
    params: Mapping[str, Any],
    poll_interval: float,
    read_input: Callable[[str], str] = input,
    role: Optional[str] = None,
) -> None:
    """Interactive loop for one open conversation."""

    thread = ChatThread(
        service,
        user,
        params["otherUserId"],
        other_user_name=params.get("otherUserName"),
        other_user_role=role,
        conversation_id=params.get("conversationId"),
        vehicle_id=params.get("vehicleId"),
        poll_interval=poll_interval,
    )

    seen: set[str] = set()

    def show_new(conversation: Conversation) -> None:
        for message in conversation.messages:
            if message.id in seen:
                continue
            seen.add(message.id)
            if message.sender != user.id:
                print(format_message_line(message, conversation, user.id))

    with thread:
        conversation = thread.conversation
        print(f"--- Conversation with {thread.display_name} ({conversation.id}) ---")
        print_conversation(conversation, user)
        seen.update(message.id for message in conversation.messages)
        thread.add_listener(show_new)

        draft: Optional[tuple[str, Optional[str]]] = None
        while True:
            try:
                line = read_input(f"{user.name}> ")
            except EOFError:
                print()
                break

            stripped = line.strip()
            if stripped.lower() in BACK_COMMANDS:
                break

            if stripped.startswith(IMAGE_COMMAND):
                _, _, rest = stripped.partition(" ")
                image_path, _, caption = rest.strip().partition(" ")
                pending = (caption.strip(), image_path or None)
            elif stripped:
                pending = (stripped, None)
            elif draft is not None:
                pending = draft
            else:
                continue

            try:
                updated = thread.send(*pending)
            except InvalidArgument as exc:
                draft = pending
                print_alert("Error", f"Failed to send message: {exc}")
                print("Your draft was kept; press Enter to retry.")
                continue

            draft = None
            seen.update(message.id for message in updated.messages)


def run_cli() -> None:
    """Interactive session: sign in, then list, open and chat until exit."""

    settings = load_settings()
    configure_logging(settings.log_level)

    try:
        user = get_current_user()
    except IdentityUnavailable as exc:
        print(f"{exc}. Add a [user] section to config.ini or sign in first.")
        raise SystemExit(2) from None

    navigation: list[dict[str, Any]] = []

    def navigate(screen: str, params: Mapping[str, Any]) -> None:
        navigation.append(dict(params))

    with ExitStack() as stack:
        service = build_service(settings, stack, navigator=navigate, alert=print_alert)
        print(f"Signed in as {user.name} ({user.role}).")
        print_usage()
        listing: list[Conversation] = []

        while True:
            try:
                command = input("> ")
            except EOFError:
                print("\nEOF received. Exiting.")
                break

            stripped = command.strip()
            lowered = stripped.lower()
            if lowered in EXIT_COMMANDS:
                print("Goodbye!")
                break
            if not stripped:
                continue

            verb, _, argument = stripped.partition(" ")
            verb = verb.lower()
            role: Optional[str] = None
            if verb == "list":
                listing = handle_list_command(service, user)
                continue
            if verb == "open":
                params = target_from_listing(argument, listing, user)
                if params is None:
                    print("Usage: open <n> (run 'list' first)")
                    continue
                navigation.append(params)
            elif verb == "chat":
                target: Optional[ChatTarget] = parse_chat_argument(argument)
                if target is None:
                    print("Usage: chat <user_id> [name=..] [role=..] [vehicle=..]")
                    continue
                role = target.role
                if not service.initiate_chat(
                    user, target.user_id, target.name, target.role, target.vehicle_id
                ):
                    continue
            else:
                print_usage()
                continue

            while navigation:
                params = navigation.pop(0)
                try:
                    run_thread(service, user, params, settings.poll_interval, role=role)
                except Exception as exc:  # noqa: BLE001 - present friendly message.
                    print(f"Encountered an error in the conversation: {exc}")


def main() -> None:
    """Entry point for the interactive CLI."""

    try:
        run_cli()
    except KeyboardInterrupt:
        print("\nInterrupted. Goodbye!")
        sys.exit(1)


if __name__ == "__main__":
    main()
