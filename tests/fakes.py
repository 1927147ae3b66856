"""In-memory collaborators shared by the test modules."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from automate_chat.errors import RemoteStoreError, SubscriptionUnavailable
from automate_chat.models import Conversation, LastMessage, later_timestamp
from automate_chat.remote import merge_messages
from automate_chat.stores import ChangeCallback, ConversationStore, Subscription


class FakeRemoteStore(ConversationStore):
    """Remote store double with switchable outages and manual event publishing."""

    def __init__(self, merge: bool = True) -> None:
        self.documents: dict[str, dict[str, Any]] = {}
        self.merge = merge
        self.online = True
        self.subscribable = True
        self.put_calls = 0
        self.subscriptions: dict[str, list[Subscription]] = {}

    def _check(self) -> None:
        if not self.online:
            raise RemoteStoreError("network unreachable")

    def get(self, key: str) -> Optional[Conversation]:
        self._check()
        document = self.documents.get(key)
        return Conversation.from_dict(document) if document else None

    def put(self, conversation: Conversation) -> None:
        self.put_calls += 1
        self._check()
        existing = self.documents.get(conversation.id)
        if existing is None or not self.merge:
            self.documents[conversation.id] = conversation.to_dict()
            return
        remote = Conversation.from_dict(existing)
        remote.messages = merge_messages(remote.messages, conversation.messages)
        if remote.messages:
            remote.last_message = LastMessage.from_message(remote.messages[-1])
        remote.last_message_timestamp = later_timestamp(
            remote.last_message_timestamp, conversation.last_message_timestamp
        )
        self.documents[conversation.id] = remote.to_dict()

    def query(self, user_id: str) -> list[Conversation]:
        self._check()
        conversations = [
            Conversation.from_dict(document)
            for document in self.documents.values()
            if user_id in document.get("participants", [])
        ]
        return sorted(conversations, key=lambda item: item.sort_timestamp(), reverse=True)

    def subscribe(self, conversation_id: str, callback: ChangeCallback) -> Subscription:
        if not self.subscribable or not self.online:
            raise SubscriptionUnavailable("feed offline")
        subscription = Subscription(callback)
        self.subscriptions.setdefault(conversation_id, []).append(subscription)
        return subscription

    def publish(self, conversation_id: str, document: Mapping[str, Any]) -> int:
        delivered = 0
        for subscription in self.subscriptions.get(conversation_id, []):
            if subscription.deliver(document):
                delivered += 1
        return delivered


class FakeUploader:
    def __init__(self, url: Optional[str] = "https://cdn.example.com/chat_images/pic.jpg", error=None) -> None:
        self.url = url
        self.error = error
        self.calls: list[tuple[str, str, str]] = []

    def upload(self, local_uri: str, folder_hint: str = "chat_images", conversation_id: str = "") -> str:
        self.calls.append((local_uri, folder_hint, conversation_id))
        if self.error is not None:
            raise self.error
        return self.url


class TickingClock:
    """ISO timestamps one second apart, starting at a fixed instant."""

    def __init__(self, start: int = 1_700_000_000) -> None:
        self.current = start

    def __call__(self) -> str:
        from datetime import datetime, timezone

        self.current += 1
        moment = datetime.fromtimestamp(self.current, tz=timezone.utc)
        return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")
