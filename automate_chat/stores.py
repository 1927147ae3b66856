"""Store capability interface and the local-first composite store."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, Optional

from .errors import RemoteStoreError, SubscriptionUnavailable
from .identity import conversation_keys
from .models import Conversation, merge_conversation

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Mapping[str, Any]], None]


class Subscription:
    """Handle for a live change feed.

    ``deliver`` forwards events to the callback until ``cancel`` returns;
    after that no further event reaches the callback.
    """

    def __init__(self, callback: ChangeCallback, on_cancel: Optional[Callable[[], None]] = None) -> None:
        self._callback = callback
        self._on_cancel = on_cancel
        self._lock = threading.RLock()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, payload: Mapping[str, Any]) -> bool:
        with self._lock:
            if not self._active:
                return False
            self._callback(payload)
            return True

    def cancel(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = False
        if self._on_cancel is not None:
            self._on_cancel()


class ConversationStore(ABC):
    """Capability shared by the local cache, the remote store and the composite."""

    @abstractmethod
    def get(self, key: str) -> Optional[Conversation]:
        """Point read. Local stores take a symmetric key, remote ones an id."""

    @abstractmethod
    def put(self, conversation: Conversation) -> Any:
        """Persist the full conversation document."""

    @abstractmethod
    def query(self, user_id: str) -> list[Conversation]:
        """Every conversation involving ``user_id``, newest first."""

    @abstractmethod
    def subscribe(self, conversation_id: str, callback: ChangeCallback) -> Subscription:
        """Deliver remote changes of one conversation to ``callback``."""


class SyncedConversationStore(ConversationStore):
    """Write locally first, then mirror to the remote store on a best-effort basis.

    The local write is the durability boundary: its errors propagate. Remote
    failures are logged and swallowed; the next mutation mirrors the full
    conversation again.
    """

    def __init__(self, local: ConversationStore, remote: Optional[ConversationStore] = None) -> None:
        self.local = local
        self.remote = remote

    def get(self, key: str) -> Optional[Conversation]:
        return self.local.get(key)

    def put(self, conversation: Conversation) -> bool:
        """Persist locally and return whether the remote mirror succeeded."""

        self.local.put(conversation)
        return self.mirror(conversation)

    def mirror(self, conversation: Conversation) -> bool:
        if self.remote is None:
            return False
        try:
            self.remote.put(conversation)
        except RemoteStoreError as exc:
            logger.warning("Remote mirror failed for %s, keeping local copy only: %s", conversation.id, exc)
            return False
        logger.debug("Mirrored conversation %s to the remote store", conversation.id)
        return True

    def query(self, user_id: str) -> list[Conversation]:
        if self.remote is not None:
            try:
                conversations = self.remote.query(user_id)
            except RemoteStoreError as exc:
                logger.warning("Remote conversation query failed, scanning local cache: %s", exc)
            else:
                logger.info("Found %d conversations in the remote store", len(conversations))
                return self._warm_cache(conversations)

        conversations = self.local.query(user_id)
        logger.info("Found %d conversations in the local cache", len(conversations))
        return conversations

    def cached_copy(self, conversation: Conversation) -> Optional[Conversation]:
        """The local entry for the conversation's participant pair, if any."""

        if len(conversation.participants) != 2:
            return None
        for key in conversation_keys(*conversation.participants):
            cached = self.local.get(key)
            if cached is not None:
                return cached
        return None

    def _warm_cache(self, conversations: list[Conversation]) -> list[Conversation]:
        """Fold remote results into the cache without dropping unsent local messages."""

        warmed: list[Conversation] = []
        for conversation in conversations:
            if len(conversation.participants) != 2:
                warmed.append(conversation)
                continue
            try:
                cached = self.cached_copy(conversation)
                if cached is not None:
                    conversation = merge_conversation(cached, conversation)
                self.local.put(conversation)
            except Exception:  # noqa: BLE001 - warm-up must not fail the listing.
                logger.exception("Could not cache conversation %s locally", conversation.id)
            warmed.append(conversation)
        return warmed

    def subscribe(self, conversation_id: str, callback: ChangeCallback) -> Subscription:
        if self.remote is None:
            raise SubscriptionUnavailable("no remote store configured")
        return self.remote.subscribe(conversation_id, callback)
