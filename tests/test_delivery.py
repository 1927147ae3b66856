import pytest

from automate_chat.delivery import (
    ChatThread,
    ConversationChanged,
    PollUpdateSource,
    PushUpdateSource,
)
from automate_chat.errors import InvalidArgument
from automate_chat.identity import IdGenerator
from automate_chat.models import LastMessage, Message, User
from automate_chat.service import ChatService, unread_count
from automate_chat.storage import LocalConversationCache
from automate_chat.stores import SyncedConversationStore
from tests.fakes import FakeRemoteStore, TickingClock

SAM = User("u1", "Sam", "renter")
ALEX = User("u2", "Alex", "mechanic")


@pytest.fixture
def cache(tmp_path):
    with LocalConversationCache(tmp_path / "sam.sqlite3") as local_cache:
        yield local_cache


@pytest.fixture
def remote():
    return FakeRemoteStore()


@pytest.fixture
def service(cache, remote):
    return ChatService(SyncedConversationStore(cache, remote), clock=TickingClock())


def _thread(service, **kwargs):
    kwargs.setdefault("poll_interval", 60.0)
    return ChatThread(service, SAM, ALEX.id, other_user_name=ALEX.name, conversation_id="conv-1", **kwargs)


def _incoming(conversation, content, message_id="9000"):
    message = Message(
        id=message_id,
        sender=ALEX.id,
        sender_name=ALEX.name,
        content=content,
        timestamp="2030-01-01T00:00:00.000Z",
    )
    updated = conversation.copy()
    updated.messages.append(message)
    updated.last_message = LastMessage.from_message(message)
    updated.last_message_timestamp = message.timestamp
    return updated


def test_open_prefers_push_when_subscription_succeeds(service, remote):
    with _thread(service) as thread:
        assert isinstance(thread.source, PushUpdateSource)
        assert len(remote.subscriptions["conv-1"]) == 1


def test_open_falls_back_to_polling(service, remote):
    remote.subscribable = False

    with _thread(service) as thread:
        assert isinstance(thread.source, PollUpdateSource)
        assert thread.source.participants == (SAM.id, ALEX.id)


def test_push_update_is_adopted_without_marking_read(service, remote):
    received = []
    with _thread(service) as thread:
        thread.add_listener(received.append)
        incoming = _incoming(thread.conversation, "still free?")

        delivered = remote.publish("conv-1", incoming.to_dict())

        assert delivered == 1
        assert [m.content for m in thread.conversation.messages] == ["still free?"]
        assert unread_count(thread.conversation, SAM.id) == 1
        assert len(received) == 1


def test_duplicate_push_is_ignored(service, remote):
    received = []
    with _thread(service) as thread:
        thread.add_listener(received.append)
        document = _incoming(thread.conversation, "hello").to_dict()

        remote.publish("conv-1", document)
        remote.publish("conv-1", document)

        assert len(received) == 1


def test_poll_adopts_cache_changes_and_marks_read(service, cache, remote):
    remote.subscribable = False
    with _thread(service) as thread:
        cache.put(_incoming(thread.conversation, "written by another screen"))

        assert thread.source.poll_once() is True

        assert [m.content for m in thread.conversation.messages] == ["written by another screen"]
        assert unread_count(thread.conversation, SAM.id) == 0
        assert thread.conversation.last_message.read
        stored = cache.get("chat_u2_u1")
        assert stored.messages[0].read


def test_no_delivery_after_close(service, cache, remote):
    received = []
    thread = _thread(service)
    thread.open()
    thread.add_listener(received.append)
    push_source = thread.source

    thread.close()

    assert remote.publish("conv-1", _incoming(thread.conversation, "too late").to_dict()) == 0
    assert received == []
    assert thread.source is None
    assert push_source._subscription is None


def test_poll_source_stops_after_cancel(cache):
    events = []
    source = PollUpdateSource(cache, (SAM.id, ALEX.id), interval=60.0)
    source.start(events.append, run_thread=False)

    assert source.poll_once() is False
    source.cancel()

    assert source.poll_once() is False
    assert events == []


def test_late_event_on_closed_thread_is_dropped(service):
    thread = _thread(service)
    conversation = thread.open()
    thread.close()

    thread.handle_change(ConversationChanged.from_conversation(_incoming(conversation, "late"), "push"))

    assert thread.conversation.messages == []


def test_send_updates_view_and_notifies(service, remote):
    received = []
    with _thread(service) as thread:
        thread.add_listener(received.append)

        updated = thread.send("Is the car available?")

        assert thread.conversation is updated
        assert received == [updated]
        assert remote.documents["conv-1"]["messages"][0]["content"] == "Is the car available?"


def test_send_precondition_errors_leave_view_untouched(service):
    with _thread(service) as thread:
        before = thread.conversation

        with pytest.raises(InvalidArgument):
            thread.send("   ")

        assert thread.conversation is before


def test_send_before_open_is_an_error(service):
    with pytest.raises(RuntimeError):
        _thread(service).send("hi")


def test_listener_failure_does_not_break_delivery(service, remote):
    received = []

    def broken(conversation):
        raise ValueError("boom")

    with _thread(service) as thread:
        thread.add_listener(broken)
        thread.add_listener(received.append)

        remote.publish("conv-1", _incoming(thread.conversation, "hi").to_dict())

        assert len(received) == 1


def test_display_name_falls_back_to_default(service):
    thread = ChatThread(service, SAM, "u7")

    assert thread.display_name == "User"
    thread.open()
    assert thread.display_name == "User"
    thread.close()


def test_push_race_keeps_own_messages_in_local_cache(tmp_path):
    remote = FakeRemoteStore(merge=False)
    with LocalConversationCache(tmp_path / "a.sqlite3") as cache_a, LocalConversationCache(
        tmp_path / "b.sqlite3"
    ) as cache_b:
        service_a = ChatService(SyncedConversationStore(cache_a, remote), clock=TickingClock())
        service_b = ChatService(
            SyncedConversationStore(cache_b, remote),
            ids=IdGenerator(clock=lambda: 100.0),
            clock=TickingClock(start=1_699_999_000),
        )

        with _thread(service_a) as thread:
            thread.send("a1")
            other = service_b.open_conversation(ALEX, SAM.id, SAM.name, conversation_id="conv-1")
            service_b.send_message(other, ALEX, "b1")
            assert [m["content"] for m in remote.documents["conv-1"]["messages"]] == ["b1"]

            remote.publish("conv-1", remote.documents["conv-1"])
            assert [m.content for m in thread.conversation.messages] == ["b1"]

            updated = thread.send("a2")

        assert [m.content for m in updated.messages] == ["b1", "a1", "a2"]
        assert [m.content for m in cache_a.get("chat_u1_u2").messages] == ["b1", "a1", "a2"]
        assert [m["content"] for m in remote.documents["conv-1"]["messages"]] == ["b1", "a1", "a2"]
