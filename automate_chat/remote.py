"""Client for the shared remote conversation document store."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Mapping, Optional
from urllib.parse import quote

from curl_cffi.requests import Session
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from .errors import RemoteStoreError, SubscriptionUnavailable
from .media import is_remote_url
from .models import Conversation, LastMessage, Message, later_timestamp, merge_messages
from .stores import ChangeCallback, ConversationStore, Subscription

logger = logging.getLogger(__name__)

USER_AGENT = "automate-chat/1.0"
DEFAULT_PAGE_SIZE = 50


def _publishable(message: Message) -> Message:
    """Strip device-local image references before a message leaves the device."""

    if message.image_url and not is_remote_url(message.image_url):
        return Message(**{**vars(message), "image_url": None})
    return message


class RemoteConversationStore(ConversationStore):
    """Point reads, upserts, participant queries and change feeds over HTTP/WebSocket.

    Use as a context manager, like the HTTP session it wraps::

        with RemoteConversationStore("https://chat.example.com/api") as remote:
            remote.query("user-1")
    """

    def __init__(
        self,
        base_url: str,
        ws_url: Optional[str] = None,
        api_token: Optional[str] = None,
        proxies: Optional[dict] = None,
        request_timeout: float = 30.0,
        subscribe_timeout: float = 5.0,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        if not base_url:
            raise ValueError("base_url must be provided")
        self.base_url = base_url.rstrip("/")
        self.ws_url = ws_url.rstrip("/") if ws_url else None
        self.api_token = api_token
        self.proxies = proxies
        self.request_timeout = request_timeout
        self.subscribe_timeout = subscribe_timeout
        self.page_size = page_size
        self.session: Any = None
        self._subscriptions: set[Subscription] = set()

    def __enter__(self) -> "RemoteConversationStore":
        self.session = Session(
            impersonate="chrome", timeout=self.request_timeout, proxies=self.proxies
        )
        return self

    def __exit__(self, *args) -> None:
        try:
            for subscription in list(self._subscriptions):
                subscription.cancel()
        finally:
            if self.session is not None:
                self.session.close()

    def build_request_headers(self) -> dict[str, str]:
        headers = {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    def _document_url(self, conversation_id: str) -> str:
        return f"{self.base_url}/conversations/{quote(conversation_id, safe='')}"

    def _request(self, method: str, url: str, expected: tuple[int, ...] = (200,), **kwargs):
        if self.session is None:
            raise RemoteStoreError("remote store session is not open")
        try:
            response = self.session.request(
                method, url, headers=self.build_request_headers(), **kwargs
            )
        except Exception as exc:
            raise RemoteStoreError(f"{method} {url} failed: {exc}") from exc

        if response.status_code not in expected:
            raise RemoteStoreError(
                f"{method} {url} was rejected",
                status_code=response.status_code,
                body=getattr(response, "text", ""),
            )
        return response

    @staticmethod
    def _json(response) -> Any:
        try:
            return response.json()
        except Exception as exc:
            raise RemoteStoreError(
                f"invalid JSON from the remote store: {exc}",
                status_code=response.status_code,
                body=getattr(response, "text", ""),
            ) from exc

    def fetch_document(self, conversation_id: str) -> Optional[dict]:
        """Return the raw document, or ``None`` when it does not exist."""

        response = self._request("GET", self._document_url(conversation_id), expected=(200, 404))
        if response.status_code == 404:
            return None
        document = self._json(response)
        if not isinstance(document, Mapping):
            raise RemoteStoreError(f"conversation {conversation_id} is not a JSON object")
        return {"id": conversation_id, **document}

    def get(self, key: str) -> Optional[Conversation]:
        document = self.fetch_document(key)
        return Conversation.from_dict(document) if document is not None else None

    def create(self, conversation: Conversation) -> None:
        """Create the document under the conversation's own id."""

        document = conversation.to_dict()
        document["messages"] = [_publishable(message).to_dict() for message in conversation.messages]
        if conversation.messages:
            document["lastMessage"] = LastMessage.from_message(
                _publishable(conversation.messages[-1])
            ).to_dict()
        self._request("PUT", self._document_url(conversation.id), expected=(200, 201), json=document)

    def update(self, conversation_id: str, fields: Mapping[str, Any]) -> None:
        self._request(
            "PATCH", self._document_url(conversation_id), expected=(200, 204), json=dict(fields)
        )

    def put(self, conversation: Conversation) -> None:
        """Upsert: merge into an existing document, or create it from local state."""

        existing = self.fetch_document(conversation.id)
        if existing is None:
            self.create(conversation)
            return

        remote = Conversation.from_dict(existing)
        messages = [
            _publishable(message)
            for message in merge_messages(remote.messages, conversation.messages)
        ]
        fields: dict[str, Any] = {
            "messages": [message.to_dict() for message in messages],
            "lastMessageTimestamp": later_timestamp(
                remote.last_message_timestamp, conversation.last_message_timestamp
            ),
        }
        if messages:
            fields["lastMessage"] = LastMessage.from_message(messages[-1]).to_dict()
        self.update(conversation.id, fields)

    def query_page(self, user_id: str, offset: int = 0, limit: Optional[int] = None) -> dict:
        params = {
            "participant": user_id,
            "orderBy": "lastMessageTimestamp",
            "direction": "desc",
            "offset": offset,
            "limit": limit or self.page_size,
        }
        response = self._request("GET", f"{self.base_url}/conversations", params=params)
        payload = self._json(response)
        if not isinstance(payload, Mapping):
            raise RemoteStoreError("conversation query did not return a JSON object")
        return dict(payload)

    def query(self, user_id: str) -> list[Conversation]:
        """Return every conversation containing ``user_id``, newest first."""

        conversations: list[Conversation] = []
        offset = 0
        limit = self.page_size

        while True:
            page = self.query_page(user_id, offset=offset, limit=limit)
            items = page.get("items", [])
            for item in items:
                if isinstance(item, Mapping):
                    conversations.append(Conversation.from_dict(item))
            if len(items) < limit:
                break
            offset += limit

        conversations.sort(key=lambda item: item.sort_timestamp(), reverse=True)
        return conversations

    def subscribe(self, conversation_id: str, callback: ChangeCallback) -> Subscription:
        """Open a change feed; raises ``SubscriptionUnavailable`` if it cannot connect."""

        if not self.ws_url:
            raise SubscriptionUnavailable("no change feed URL configured")

        url = f"{self.ws_url}/conversations/{quote(conversation_id, safe='')}"
        listener = ChangeFeedListener(url, self.build_request_headers(), conversation_id)

        def on_cancel() -> None:
            self._subscriptions.discard(subscription)
            listener.stop()

        subscription = Subscription(callback, on_cancel=on_cancel)
        listener.start(subscription)

        if not listener.wait_connected(self.subscribe_timeout):
            subscription.cancel()
            reason = listener.error or "timed out waiting for the change feed"
            raise SubscriptionUnavailable(f"could not subscribe to {conversation_id}: {reason}")

        self._subscriptions.add(subscription)
        logger.info("Subscribed to changes of conversation %s", conversation_id)
        return subscription


class ChangeFeedListener:
    """Runs one WebSocket change feed on a background thread."""

    def __init__(self, url: str, headers: Mapping[str, str], conversation_id: str) -> None:
        self.url = url
        self.headers = dict(headers)
        self.conversation_id = conversation_id
        self.error: Optional[Exception] = None
        self.connected = False
        self._settled = threading.Event()
        self._stop_requested = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._websocket = None
        self._subscription: Optional[Subscription] = None
        self._thread: Optional[threading.Thread] = None

    def start(self, subscription: Subscription) -> None:
        self._subscription = subscription

        def run_listener():
            asyncio.run(self.listen())

        self._thread = threading.Thread(
            target=run_listener, name=f"change-feed-{self.conversation_id}", daemon=True
        )
        self._thread.start()

    def wait_connected(self, timeout: float) -> bool:
        self._settled.wait(timeout)
        return self.connected

    async def listen(self) -> None:
        self._loop = asyncio.get_running_loop()
        try:
            async with connect(self.url, additional_headers=self.headers) as websocket:
                self._websocket = websocket
                self.connected = True
                self._settled.set()
                if self._stop_requested:
                    return
                while True:
                    try:
                        raw = await websocket.recv()
                    except ConnectionClosed:
                        break
                    self.dispatch(raw)
        except Exception as exc:  # noqa: BLE001 - reported through wait_connected.
            self.error = exc
            if self.connected:
                logger.error("Change feed for %s dropped: %s", self.conversation_id, exc)
        finally:
            self._settled.set()

    def dispatch(self, raw: str | bytes) -> None:
        try:
            event = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring malformed change event for %s", self.conversation_id)
            return
        if not isinstance(event, Mapping):
            return

        document = event["data"] if "data" in event else event
        if not isinstance(document, Mapping) or event.get("exists") is False:
            return
        if self._subscription is None:
            return
        try:
            self._subscription.deliver(document)
        except Exception:  # noqa: BLE001 - one bad event must not end the feed.
            logger.exception("Change callback failed for %s", self.conversation_id)

    def stop(self) -> None:
        self._stop_requested = True
        loop = self._loop
        websocket = self._websocket
        if loop is not None and websocket is not None and not loop.is_closed():
            try:
                asyncio.run_coroutine_threadsafe(websocket.close(), loop)
            except RuntimeError:
                pass
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)
