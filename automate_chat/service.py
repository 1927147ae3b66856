"""Messaging operations: send, mark read, list and start conversations."""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional

from .errors import InvalidArgument, UploadError
from .identity import ConversationResolver, IdGenerator
from .media import DEFAULT_UPLOAD_FOLDER, MediaUploader
from .models import (
    DEFAULT_DISPLAY_NAME,
    Conversation,
    LastMessage,
    Message,
    User,
    later_timestamp,
    merge_messages,
    utc_now_iso,
)
from .stores import SyncedConversationStore

logger = logging.getLogger(__name__)

CHAT_ROOM_SCREEN = "ChatRoom"

Navigator = Callable[[str, Mapping[str, Any]], None]
Alert = Callable[[str, str], None]


def _log_alert(title: str, message: str) -> None:
    logger.warning("%s: %s", title, message)


def unread_count(conversation: Conversation, viewer_id: str) -> int:
    """Number of counterpart messages ``viewer_id`` has not read yet."""

    return sum(
        1 for message in conversation.messages if message.sender != viewer_id and not message.read
    )


def normalize_conversation(conversation: Conversation) -> Conversation:
    """Fill in summary fields list rendering relies on."""

    if conversation.last_message is None and conversation.messages:
        conversation.last_message = LastMessage.from_message(conversation.messages[-1])
    for participant in conversation.participants:
        if not conversation.participant_names.get(participant):
            conversation.participant_names[participant] = DEFAULT_DISPLAY_NAME
    return conversation


class ChatService:
    """Local-first messaging on top of a :class:`SyncedConversationStore`.

    Every operation takes the acting user explicitly.
    """

    def __init__(
        self,
        store: SyncedConversationStore,
        uploader: Optional[MediaUploader] = None,
        ids: Optional[IdGenerator] = None,
        navigator: Optional[Navigator] = None,
        alert: Optional[Alert] = None,
        upload_folder: str = DEFAULT_UPLOAD_FOLDER,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.store = store
        self.uploader = uploader
        self.ids = ids or IdGenerator()
        self.resolver = ConversationResolver(store.local, self.ids, clock=clock)
        self.navigator = navigator
        self.alert = alert or _log_alert
        self.upload_folder = upload_folder
        self.clock = clock

    def open_conversation(
        self,
        user: User,
        other_user_id: str,
        other_user_name: Optional[str] = None,
        other_user_role: Optional[str] = None,
        conversation_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
    ) -> Conversation:
        """Resolve (or create) the pair's conversation and mark it read for ``user``."""

        conversation = self.resolver.resolve(
            user,
            other_user_id,
            other_user_name=other_user_name,
            other_user_role=other_user_role,
            conversation_id=conversation_id,
            vehicle_id=vehicle_id,
        )
        return self.mark_read(conversation, user.id)

    def send_message(
        self,
        conversation: Conversation,
        sender: User,
        content: str,
        image_uri: Optional[str] = None,
    ) -> Conversation:
        """
        Append a message and persist the conversation.

        The local cache write is the durability boundary; the remote mirror
        afterwards is best effort and never fails the send.

        Args:
            conversation (Conversation): Current state of the conversation.
            sender (User): The participant sending the message.
            content (str): Text of the message, may be empty with an image.
            image_uri (Optional[str]): Local image to attach.

        Returns:
            Conversation: The locally persisted conversation.

        Raises:
            InvalidArgument: If sender, conversation or content are missing.
        """
        if sender is None or not sender.id:
            raise InvalidArgument("Sender ID is required")
        if conversation is None or not conversation.participants:
            raise InvalidArgument("Invalid conversation object")
        if sender.id not in conversation.participants:
            raise InvalidArgument(f"{sender.id} is not a participant of {conversation.id}")
        if conversation.other_participant(sender.id) is None:
            raise InvalidArgument("Could not find other participant in conversation")
        text = content or ""
        if not text.strip() and not image_uri:
            raise InvalidArgument("A message needs text or an image")

        image_url = self._upload(image_uri, conversation.id) if image_uri else None

        timestamp = self.clock()
        message = Message(
            id=self.ids.next_id(),
            sender=sender.id,
            sender_name=sender.name,
            content=text,
            image_url=image_url,
            timestamp=timestamp,
            read=False,
        )

        updated = self._with_cached_messages(conversation)
        updated.messages.append(message)
        updated.last_message = LastMessage.from_message(message)
        updated.last_message_timestamp = later_timestamp(
            conversation.last_message_timestamp, timestamp
        )
        if not updated.created_at:
            updated.created_at = timestamp

        mirrored = self.store.put(updated)
        logger.info(
            "Sent message %s in %s (image=%s, mirrored=%s)",
            message.id,
            updated.id,
            bool(image_url),
            mirrored,
        )
        return updated

    def _with_cached_messages(self, conversation: Conversation) -> Conversation:
        """Copy of ``conversation`` that also keeps every message in the local cache.

        A view adopted from the remote store may lack messages only this
        device has; writing it back as-is would drop them locally.
        """

        updated = conversation.copy()
        cached = self.store.cached_copy(conversation)
        if cached is not None:
            updated.messages = merge_messages(cached.messages, updated.messages)
        return updated

    def _upload(self, image_uri: str, conversation_id: str) -> str:
        if self.uploader is None:
            logger.warning("No media uploader configured, keeping local image reference")
            return image_uri
        try:
            return self.uploader.upload(
                image_uri, self.upload_folder, conversation_id=conversation_id
            )
        except UploadError as exc:
            logger.warning("Image upload failed, keeping local reference %s: %s", image_uri, exc)
            return image_uri

    def mark_read(self, conversation: Conversation, viewer_id: str) -> Conversation:
        """Mark the counterpart's messages as read for ``viewer_id``.

        Returns the very same object when nothing was unread.
        """

        if conversation is None or not viewer_id:
            return conversation
        if unread_count(conversation, viewer_id) == 0:
            return conversation

        updated = self._with_cached_messages(conversation)
        for message in updated.messages:
            if message.sender != viewer_id and not message.read:
                message.read = True
        if updated.last_message is not None and updated.last_message.sender != viewer_id:
            updated.last_message.read = True

        if updated.other_participant(viewer_id) is not None:
            self.store.put(updated)
        return updated

    def list_conversations(self, user_id: str) -> list[Conversation]:
        """Every conversation of ``user_id``, most recent first."""

        if not user_id:
            return []
        conversations = [normalize_conversation(item) for item in self.store.query(user_id)]
        conversations.sort(key=lambda item: item.sort_timestamp(), reverse=True)
        return conversations

    def initiate_chat(
        self,
        current_user: Optional[User],
        other_user_id: str,
        other_user_name: Optional[str] = None,
        other_user_role: Optional[str] = None,
        vehicle_id: Optional[str] = None,
    ) -> bool:
        """Resolve the conversation with another user and navigate to it."""

        if current_user is None or not current_user.id:
            logger.error("Cannot start a chat without the current user's identity")
            self.alert("Error", "Failed to start chat. Please try again.")
            return False
        if not other_user_id:
            self.alert("Error", "Cannot start conversation: Missing user information")
            return False

        try:
            conversation = self.resolver.resolve(
                current_user,
                other_user_id,
                other_user_name=other_user_name or DEFAULT_DISPLAY_NAME,
                other_user_role=other_user_role,
                vehicle_id=vehicle_id,
            )
        except Exception:  # noqa: BLE001 - reported to the user below.
            logger.exception("Error initiating chat with %s", other_user_id)
            self.alert("Error", "Failed to start chat. Please try again.")
            return False

        params = {
            "conversationId": conversation.id,
            "otherUserId": other_user_id,
            "otherUserName": other_user_name or DEFAULT_DISPLAY_NAME,
            "vehicleId": vehicle_id,
        }
        logger.info("Navigating to %s with %s", CHAT_ROOM_SCREEN, params)
        if self.navigator is not None:
            self.navigator(CHAT_ROOM_SCREEN, params)
        return True
