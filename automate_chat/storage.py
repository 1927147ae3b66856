"""Durable per-device cache for conversation documents."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence, Tuple

from .errors import InvalidArgument, SubscriptionUnavailable
from .identity import KEY_PREFIX, conversation_keys
from .models import Conversation
from .stores import ChangeCallback, ConversationStore, Subscription

logger = logging.getLogger(__name__)

DEFAULT_CACHE_PATH = Path.home() / ".automate_chat_cache.sqlite3"


class LocalConversationCache(ConversationStore):
    """Key/value cache in SQLite holding full conversation documents.

    Every conversation lives under both ``chat_{a}_{b}`` and ``chat_{b}_{a}``
    so either participant finds it without a directory lookup. The two
    values are written from a single serialization in one transaction.
    """

    def __init__(self, db_path: Path | str = DEFAULT_CACHE_PATH) -> None:
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # The poll loop reads from its own thread; access is serialized below.
        self._connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._lock = threading.RLock()
        self._connection.execute("PRAGMA journal_mode=WAL;")
        self._initialise_schema()

    def __enter__(self) -> "LocalConversationCache":
        return self

    def __exit__(self, exc_type, exc, traceback) -> None:
        self.close()

    def close(self) -> None:
        """Close the underlying SQLite connection."""

        with self._lock:
            self._connection.close()

    def _initialise_schema(self) -> None:
        with self._lock, self._connection:
            self._connection.execute(
                """
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL DEFAULT 0
                )
                """
            )

    # Raw key/value access.

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            cursor = self._connection.execute(
                "SELECT value FROM cache_entries WHERE key = ?",
                (key,),
            )
            row = cursor.fetchone()
        return str(row[0]) if row else None

    def set_items(self, items: Iterable[Tuple[str, str]]) -> None:
        """Write several entries atomically."""

        now = time.time()
        with self._lock, self._connection:
            for key, value in items:
                if not key:
                    raise ValueError("cache key must be provided")
                self._connection.execute(
                    """
                    INSERT INTO cache_entries (key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (key, value, now),
                )

    def set_item(self, key: str, value: str) -> None:
        self.set_items([(key, value)])

    def remove_item(self, key: str) -> None:
        with self._lock, self._connection:
            self._connection.execute("DELETE FROM cache_entries WHERE key = ?", (key,))

    def get_all_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            if prefix:
                cursor = self._connection.execute(
                    "SELECT key FROM cache_entries WHERE substr(key, 1, ?) = ? ORDER BY key",
                    (len(prefix), prefix),
                )
            else:
                cursor = self._connection.execute("SELECT key FROM cache_entries ORDER BY key")
            return [str(row[0]) for row in cursor.fetchall()]

    def multi_get(self, keys: Sequence[str]) -> list[Tuple[str, Optional[str]]]:
        return [(key, self.get_item(key)) for key in keys]

    # Conversation documents.

    def get(self, key: str) -> Optional[Conversation]:
        """Load the conversation stored under a symmetric key."""

        payload = self.get_item(key)
        if payload is None:
            return None
        return self._decode(key, payload)

    def get_pair(self, first_id: str, second_id: str) -> Optional[Conversation]:
        for key in conversation_keys(first_id, second_id):
            conversation = self.get(key)
            if conversation is not None:
                return conversation
        return None

    def put(self, conversation: Conversation) -> Tuple[str, str]:
        """Write ``conversation`` under both symmetric keys and return them."""

        if not conversation.id:
            raise InvalidArgument("conversation id must be provided")
        if len(conversation.participants) != 2:
            raise InvalidArgument(
                f"conversation {conversation.id} must have exactly two participants"
            )

        keys = conversation_keys(*conversation.participants)
        payload = conversation.to_json()
        self.set_items((key, payload) for key in keys)
        logger.debug("Saved conversation %s under %s and %s", conversation.id, *keys)
        return keys

    def query(self, user_id: str) -> list[Conversation]:
        """Scan the ``chat_`` namespace for conversations involving ``user_id``."""

        seen: dict[str, Conversation] = {}
        for key, payload in self.multi_get(self.get_all_keys(prefix=KEY_PREFIX)):
            if payload is None:
                continue
            conversation = self._decode(key, payload)
            if conversation is None or user_id not in conversation.participants:
                continue
            # Both symmetric keys hold the same document.
            dedupe_key = conversation.id or key
            current = seen.get(dedupe_key)
            if current is None or conversation.sort_timestamp() > current.sort_timestamp():
                seen[dedupe_key] = conversation

        return sorted(seen.values(), key=lambda item: item.sort_timestamp(), reverse=True)

    def subscribe(self, conversation_id: str, callback: ChangeCallback) -> Subscription:
        raise SubscriptionUnavailable("the local cache does not publish change events")

    @staticmethod
    def _decode(key: str, payload: str) -> Optional[Conversation]:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError:
            logger.error("Discarding undecodable cache entry %s", key)
            return None
        if not isinstance(data, Mapping):
            logger.error("Cache entry %s is not a conversation document", key)
            return None
        return Conversation.from_dict(data)
