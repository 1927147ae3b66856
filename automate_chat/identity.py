"""Conversation identity: symmetric cache keys, id generation and look-up-or-create."""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable, Optional, Tuple

from .errors import InvalidArgument
from .models import DEFAULT_DISPLAY_NAME, DEFAULT_ROLE, Conversation, User, utc_now_iso

if TYPE_CHECKING:
    from .storage import LocalConversationCache

logger = logging.getLogger(__name__)

KEY_PREFIX = "chat_"
CONVERSATION_ID_PREFIX = "conv_"


def conversation_key(first_id: str, second_id: str) -> str:
    return f"{KEY_PREFIX}{first_id}_{second_id}"


def conversation_keys(first_id: str, second_id: str) -> Tuple[str, str]:
    """Return both symmetric cache keys for a participant pair."""

    return conversation_key(first_id, second_id), conversation_key(second_id, first_id)


class IdGenerator:
    """Device-local monotonic ids: millisecond clock plus a counter.

    Two calls within the same millisecond (or after the clock stepped back)
    still produce strictly increasing ids on this device.
    """

    _COUNTER_WIDTH = 3
    _COUNTER_LIMIT = 10**_COUNTER_WIDTH

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._last_millis = 0
        self._counter = 0

    def next_id(self) -> str:
        with self._lock:
            millis = int(self._clock() * 1000)
            if millis > self._last_millis:
                self._last_millis = millis
                self._counter = 0
            else:
                self._counter += 1
                if self._counter >= self._COUNTER_LIMIT:
                    self._last_millis += 1
                    self._counter = 0
            return f"{self._last_millis}{self._counter:0{self._COUNTER_WIDTH}d}"

    def next_conversation_id(self) -> str:
        return f"{CONVERSATION_ID_PREFIX}{self.next_id()}"


class ConversationResolver:
    """Find the conversation for a participant pair, creating it when absent."""

    def __init__(
        self,
        cache: "LocalConversationCache",
        ids: Optional[IdGenerator] = None,
        clock: Callable[[], str] = utc_now_iso,
    ) -> None:
        self.cache = cache
        self.ids = ids or IdGenerator()
        self.clock = clock

    def find(self, user_id: str, other_user_id: str) -> Optional[Conversation]:
        """Look up both symmetric keys, preferring ``chat_{user}_{other}``."""

        for key in conversation_keys(user_id, other_user_id):
            conversation = self.cache.get(key)
            if conversation is not None:
                return conversation
        return None

    def resolve(
        self,
        user: User,
        other_user_id: str,
        other_user_name: Optional[str] = None,
        other_user_role: Optional[str] = None,
        conversation_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
    ) -> Conversation:
        if not user.id or not other_user_id:
            raise InvalidArgument("both participant ids are required to resolve a conversation")

        existing = self.find(user.id, other_user_id)
        if existing is not None:
            logger.debug("Loaded existing conversation %s", existing.id)
            return existing

        now = self.clock()
        conversation = Conversation(
            id=conversation_id or self.ids.next_conversation_id(),
            participants=[user.id, other_user_id],
            participant_names={
                user.id: user.name or DEFAULT_DISPLAY_NAME,
                other_user_id: other_user_name or DEFAULT_DISPLAY_NAME,
            },
            participant_roles={
                user.id: user.role or DEFAULT_ROLE,
                other_user_id: other_user_role or DEFAULT_ROLE,
            },
            messages=[],
            last_message_timestamp=now,
            vehicle_id=vehicle_id,
            created_at=now,
        )
        self.cache.put(conversation)
        logger.info("Created conversation %s between %s and %s", conversation.id, user.id, other_user_id)
        return conversation
