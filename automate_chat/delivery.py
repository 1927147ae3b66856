"""Keep an open conversation current via remote change feeds or local polling."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Tuple

from .errors import SubscriptionUnavailable
from .models import Conversation, LastMessage, Message, User, fingerprint_messages
from .service import ChatService
from .storage import LocalConversationCache
from .stores import ConversationStore, Subscription

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0


@dataclass
class ConversationChanged:
    """Normalized update event emitted by every update source."""

    conversation_id: str
    messages: list[Message] = field(default_factory=list)
    last_message: Optional[LastMessage] = None
    last_message_timestamp: Optional[str] = None
    reconcile_read: bool = False
    source: str = ""

    @classmethod
    def from_conversation(
        cls, conversation: Conversation, source: str, reconcile_read: bool = False
    ) -> "ConversationChanged":
        return cls(
            conversation_id=conversation.id,
            messages=conversation.messages,
            last_message=conversation.last_message,
            last_message_timestamp=conversation.last_message_timestamp,
            reconcile_read=reconcile_read,
            source=source,
        )

    @classmethod
    def from_document(
        cls, conversation_id: str, document: Mapping[str, Any], source: str
    ) -> "ConversationChanged":
        conversation = Conversation.from_dict({"id": conversation_id, **document})
        return cls.from_conversation(conversation, source)

    def messages_fingerprint(self) -> str:
        return fingerprint_messages(self.messages)


ChangeHandler = Callable[[ConversationChanged], None]


class UpdateSource(ABC):
    """One transport delivering :class:`ConversationChanged` events."""

    name = ""

    @abstractmethod
    def start(self, handler: ChangeHandler) -> None:
        """Begin delivering events; raise ``SubscriptionUnavailable`` if impossible."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop delivery. No event reaches the handler once this returns."""


class PushUpdateSource(UpdateSource):
    name = "push"

    def __init__(self, store: ConversationStore, conversation_id: str) -> None:
        self.store = store
        self.conversation_id = conversation_id
        self._subscription: Optional[Subscription] = None

    def start(self, handler: ChangeHandler) -> None:
        def on_document(document: Mapping[str, Any]) -> None:
            handler(ConversationChanged.from_document(self.conversation_id, document, self.name))

        self._subscription = self.store.subscribe(self.conversation_id, on_document)

    def cancel(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None


class PollUpdateSource(UpdateSource):
    """Re-read the local cache under both symmetric keys at a fixed interval."""

    name = "poll"

    def __init__(
        self,
        cache: LocalConversationCache,
        participants: Tuple[str, str],
        interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.cache = cache
        self.participants = participants
        self.interval = interval
        self._handler: Optional[ChangeHandler] = None
        self._stop_event = threading.Event()
        self._lock = threading.RLock()
        self._cancelled = False
        self._thread: Optional[threading.Thread] = None

    def start(self, handler: ChangeHandler, run_thread: bool = True) -> None:
        self._handler = handler
        if not run_thread:
            return
        self._thread = threading.Thread(target=self.run, name="chat-poll", daemon=True)
        self._thread.start()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.poll_once()
            except Exception:  # noqa: BLE001 - keep polling after a failed tick.
                logger.exception("Error checking for messages")

    def poll_once(self) -> bool:
        """Run one tick; returns whether an event was handed to the handler."""

        with self._lock:
            if self._cancelled or self._handler is None:
                return False
            conversation = self.cache.get_pair(*self.participants)
            if conversation is None:
                return False
            self._handler(
                ConversationChanged.from_conversation(conversation, self.name, reconcile_read=True)
            )
            return True

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval + 1.0)


ConversationListener = Callable[[Conversation], None]


class ChatThread:
    """View model of one open conversation.

    ``open`` resolves the conversation, marks it read and starts exactly one
    update source: the remote change feed when it can be established,
    otherwise polling of the local cache. ``close`` tears that source down.
    """

    def __init__(
        self,
        service: ChatService,
        user: User,
        other_user_id: str,
        other_user_name: Optional[str] = None,
        other_user_role: Optional[str] = None,
        conversation_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.service = service
        self.user = user
        self.other_user_id = other_user_id
        self.other_user_name = other_user_name
        self.other_user_role = other_user_role
        self.conversation_id = conversation_id
        self.vehicle_id = vehicle_id
        self.poll_interval = poll_interval
        self.conversation: Optional[Conversation] = None
        self.source: Optional[UpdateSource] = None
        self._listeners: list[ConversationListener] = []
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._closed = False

    def __enter__(self) -> "ChatThread":
        self.open()
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def add_listener(self, listener: ConversationListener) -> None:
        self._listeners.append(listener)

    @property
    def display_name(self) -> str:
        if self.conversation is not None:
            name = self.conversation.participant_names.get(self.other_user_id)
            if name:
                return name
        return self.other_user_name or "User"

    def open(self) -> Conversation:
        conversation = self.service.open_conversation(
            self.user,
            self.other_user_id,
            other_user_name=self.other_user_name,
            other_user_role=self.other_user_role,
            conversation_id=self.conversation_id,
            vehicle_id=self.vehicle_id,
        )
        with self._lock:
            self._closed = False
            self.conversation = conversation
        self.source = self._select_source(conversation)
        return conversation

    def _select_source(self, conversation: Conversation) -> UpdateSource:
        push = PushUpdateSource(self.service.store, conversation.id)
        try:
            push.start(self.handle_change)
        except SubscriptionUnavailable as exc:
            logger.info("Could not subscribe to %s, using polling instead: %s", conversation.id, exc)
        else:
            return push

        poll = PollUpdateSource(
            self.service.store.local,
            (self.user.id, self.other_user_id),
            interval=self.poll_interval,
        )
        poll.start(self.handle_change)
        return poll

    def handle_change(self, event: ConversationChanged) -> None:
        """Adopt an update if its messages differ from the current view."""

        with self._lock:
            if self._closed or self.conversation is None:
                return
            current = self.conversation
            if event.messages_fingerprint() == current.messages_fingerprint():
                return

            updated = current.copy()
            updated.messages = list(event.messages)
            updated.last_message = event.last_message
            updated.last_message_timestamp = event.last_message_timestamp
            if event.reconcile_read:
                updated = self.service.mark_read(updated, self.user.id)
            self.conversation = updated
            logger.debug("Applied %s update to %s", event.source, updated.id)

        self._notify(updated)

    def send(self, content: str, image_uri: Optional[str] = None) -> Conversation:
        """Send through the append protocol; precondition errors propagate."""

        with self._send_lock:
            with self._lock:
                if self.conversation is None:
                    raise RuntimeError("the thread must be opened before sending")
                current = self.conversation
            updated = self.service.send_message(current, self.user, content, image_uri)
            with self._lock:
                self.conversation = updated
        self._notify(updated)
        return updated

    def close(self) -> None:
        with self._lock:
            self._closed = True
            source = self.source
            self.source = None
        # Cancel outside the view lock: an in-flight delivery may be waiting on it.
        if source is not None:
            source.cancel()

    def _notify(self, conversation: Conversation) -> None:
        for listener in list(self._listeners):
            try:
                listener(conversation)
            except Exception:  # noqa: BLE001 - a listener must not break delivery.
                logger.exception("Conversation listener failed")
