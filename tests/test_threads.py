"""Tests for the live message thread session."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from lms_chat.backend.memory import InMemoryBackend, InMemoryChangeFeed
from lms_chat.exceptions import AuthenticationError, BackendError, SendError
from lms_chat.models import ChangeEvent, EventKind, SessionState, now_iso
from lms_chat.threads import MessageThreadSession, new_temp_id


class GatedBackend(InMemoryBackend):
    """Holds every insert until ``gate`` is set."""

    gate = None
    fail = False

    async def insert_message(self, *args, **kwargs):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise BackendError("insert rejected")
        return await super().insert_message(*args, **kwargs)


class SlowConfirmBackend(InMemoryBackend):
    """Persists and publishes at once but answers only when ``release`` is set."""

    release = None

    async def insert_message(self, *args, **kwargs):
        row = await super().insert_message(*args, **kwargs)
        if self.release is not None:
            await self.release.wait()
        return row


def seed(backend):
    backend.add_profile("alice", first_name="Alice")
    backend.add_profile("bob", first_name="Bob", role="coach")
    backend.add_profile("carol", first_name="Carol")
    return backend


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def backend(feed):
    return seed(InMemoryBackend(current_user="alice", feed=feed))


def message_row(message_id, sender, recipient, content="hi", course_id=None):
    now = now_iso()
    return {
        "id": message_id,
        "sender_id": sender,
        "recipient_id": recipient,
        "content": content,
        "course_id": course_id,
        "created_at": now,
        "updated_at": now,
        "read_at": None,
    }


async def wait_for_insert_calls(backend, count):
    while len(backend.requests("insert_message")) < count:
        await asyncio.sleep(0)


def test_temp_ids_are_unique_and_prefixed():
    first, second = new_temp_id(), new_temp_id()
    assert first.startswith("temp-")
    assert first != second


def test_open_loads_history_and_subscribes(backend, feed):
    async def scenario():
        await backend.insert_message("bob", "alice", "welcome")
        await backend.insert_message("alice", "bob", "thanks")
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        return session

    session = asyncio.run(scenario())
    assert session.state is SessionState.READY
    assert [m.content for m in session.messages] == ["welcome", "thanks"]
    assert session.messages[0].sender_profile.display_name == "Bob"
    assert session.messages[0].recipient_profile.display_name == "Alice"
    assert session.subscribed
    assert feed.channels() == ["messages-alice-bob"]
    batches = backend.requests("fetch_profiles")
    assert len(batches) == 1
    assert sorted(batches[0]) == ["alice", "bob"]


def test_history_only_contains_the_pair(backend, feed):
    async def scenario():
        await backend.insert_message("bob", "alice", "for alice")
        await backend.insert_message("carol", "alice", "from carol")
        await backend.insert_message("bob", "carol", "bob to carol")
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        await backend.insert_message("carol", "alice", "live from carol")
        await feed.drain()
        return session

    session = asyncio.run(scenario())
    assert [m.content for m in session.messages] == ["for alice"]
    for message in session.messages:
        assert {message.sender_id, message.recipient_id} == {"alice", "bob"}


def test_no_counterpart_stays_idle(backend, feed):
    async def scenario():
        session = MessageThreadSession(backend, feed)
        await session.open()
        return session

    session = asyncio.run(scenario())
    assert session.state is SessionState.IDLE
    assert not session.subscribed
    assert backend.requests("fetch_thread") == []


def test_signed_out_fetch_sets_error(feed):
    backend = seed(InMemoryBackend(current_user=None, feed=feed))

    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        return session

    session = asyncio.run(scenario())
    assert session.state is SessionState.ERROR
    assert isinstance(session.error, AuthenticationError)
    assert session.messages == []
    assert not session.subscribed


def test_backend_error_keeps_last_known_list(backend, feed):
    async def scenario():
        await backend.insert_message("bob", "alice", "kept")
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        backend.fetch_thread = AsyncMock(side_effect=BackendError("timeout"))
        result = await session.fetch_history()
        return session, result

    session, result = asyncio.run(scenario())
    assert [m.content for m in result] == ["kept"]
    assert session.state is SessionState.ERROR
    assert isinstance(session.error, BackendError)


def test_send_shows_optimistic_entry_then_confirmed(feed):
    backend = seed(GatedBackend(current_user="alice", feed=feed))

    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        before = session.messages
        backend.gate = asyncio.Event()
        task = asyncio.create_task(session.send("hello"))
        while not session.messages:
            await asyncio.sleep(0)
        pending = session.messages
        backend.gate.set()
        confirmed = await task
        await feed.drain()
        return session, before, pending, confirmed

    session, before, pending, confirmed = asyncio.run(scenario())
    assert before == []
    assert len(pending) == 1
    assert pending[0].id.startswith("temp-")
    assert pending[0].sender_id == "alice"
    assert pending[0].content == "hello"
    assert len(session.messages) == 1
    assert session.messages[0].id == confirmed.id
    assert not session.messages[0].is_optimistic


def test_feed_event_before_confirmation_does_not_duplicate(feed):
    backend = seed(SlowConfirmBackend(current_user="alice", feed=feed))

    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        backend.release = asyncio.Event()
        task = asyncio.create_task(session.send("race"))
        await wait_for_insert_calls(backend, 1)
        await feed.drain()
        delivered = session.messages
        backend.release.set()
        confirmed = await task
        await feed.drain()
        return session, delivered, confirmed

    session, delivered, confirmed = asyncio.run(scenario())
    assert len(delivered) == 1
    assert delivered[0].id == confirmed.id
    assert [m.id for m in session.messages] == [confirmed.id]


def test_many_sends_settle_to_one_entry_each(backend, feed):
    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        for i in range(3):
            await session.send(f"sequential {i}")
        await asyncio.gather(*(session.send(f"concurrent {i}") for i in range(3)))
        await feed.drain()
        return session

    session = asyncio.run(scenario())
    ids = [m.id for m in session.messages]
    assert len(ids) == 6
    assert len(set(ids)) == 6
    assert not any(m.is_optimistic for m in session.messages)


def test_identical_concurrent_sends_keep_both(feed):
    backend = seed(SlowConfirmBackend(current_user="alice", feed=feed))

    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        backend.release = asyncio.Event()
        tasks = [asyncio.create_task(session.send("same")) for _ in range(2)]
        await wait_for_insert_calls(backend, 2)
        await feed.drain()
        backend.release.set()
        confirmed = await asyncio.gather(*tasks)
        await feed.drain()
        return session, confirmed

    session, confirmed = asyncio.run(scenario())
    assert sorted(m.id for m in session.messages) == sorted(m.id for m in confirmed)


def test_send_then_fetch_round_trip(backend, feed):
    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        await session.send("  round trip  ")
        await feed.drain()
        return await session.fetch_history()

    messages = asyncio.run(scenario())
    assert len(messages) == 1
    assert messages[0].content == "round trip"
    assert messages[0].sender_id == "alice"


def test_send_failure_rolls_back(backend, feed):
    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        backend.insert_message = AsyncMock(side_effect=BackendError("rls violation"))
        with pytest.raises(SendError) as exc_info:
            await session.send("lost")
        return session, exc_info.value

    session, error = asyncio.run(scenario())
    assert session.messages == []
    assert isinstance(error.__cause__, BackendError)


def test_send_validation(backend, feed):
    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        with pytest.raises(ValueError):
            await session.send("   ")
        idle = MessageThreadSession(backend, feed)
        with pytest.raises(ValueError):
            await idle.send("hello")
        backend.sign_out()
        with pytest.raises(AuthenticationError):
            await session.send("hello")

    asyncio.run(scenario())
    assert backend.requests("insert_message") == []


def test_send_outside_thread_leaves_list_alone(backend, feed):
    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        confirmed = await session.send("psst", recipient_id="carol")
        await feed.drain()
        return session, confirmed

    session, confirmed = asyncio.run(scenario())
    assert confirmed.recipient_id == "carol"
    assert session.messages == []


def test_course_scoped_thread(backend, feed):
    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob", course_id="c1")
        await session.open()
        await session.send("about c1")
        await backend.insert_message("bob", "alice", "other course", course_id="c2")
        await backend.insert_message("bob", "alice", "same course", course_id="c1")
        await feed.drain()
        return session

    session = asyncio.run(scenario())
    assert [m.content for m in session.messages] == ["about c1", "same course"]
    assert all(m.course_id == "c1" for m in session.messages)


def test_live_insert_is_enriched(backend, feed):
    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        await backend.insert_message("bob", "alice", "live")
        await feed.drain()
        return session

    session = asyncio.run(scenario())
    assert [m.content for m in session.messages] == ["live"]
    assert session.messages[0].sender_profile.role == "coach"
    assert session.unread_count() == 1


def test_applying_same_insert_twice_is_idempotent(backend, feed):
    event = ChangeEvent(
        kind=EventKind.INSERT, table="messages", new=message_row("m1", "bob", "alice")
    )

    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        await session.apply_insert(event)
        once = session.messages
        await session.apply_insert(event)
        return once, session.messages

    once, twice = asyncio.run(scenario())
    assert [m.id for m in once] == ["m1"]
    assert twice == once


def test_update_and_delete_events(backend, feed):
    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        first = await session.send("read me")
        second = await session.send("delete me")
        read_at = now_iso()
        await backend.mark_messages_read([first.id], read_at)
        backend.delete_message(second.id)
        await feed.drain()
        return session, first, read_at

    session, first, read_at = asyncio.run(scenario())
    assert [m.id for m in session.messages] == [first.id]
    assert session.messages[0].read_at == read_at


def test_mark_read_batch_is_single_call(backend, feed):
    async def scenario():
        rows = [await backend.insert_message("bob", "alice", f"m{i}") for i in range(3)]
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        ids = [row["id"] for row in rows]
        await session.mark_read_batch(ids)
        return session, ids

    session, ids = asyncio.run(scenario())
    assert backend.requests("mark_messages_read") == [ids]
    assert all(m.read_at for m in session.messages)
    assert session.unread_count() == 0


def test_mark_read_skips_temp_and_own_messages(backend, feed):
    async def scenario():
        own = await backend.insert_message("alice", "bob", "mine")
        theirs = await backend.insert_message("bob", "alice", "theirs")
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        await session.mark_read_batch(["temp-1-abc", own["id"], theirs["id"], theirs["id"]])
        await session.mark_read("temp-2-def")
        return theirs

    theirs = asyncio.run(scenario())
    assert backend.requests("mark_messages_read") == [[theirs["id"]]]


def test_mark_read_signed_out_is_noop(backend, feed):
    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        backend.sign_out()
        await session.mark_read("m1")

    asyncio.run(scenario())
    assert backend.requests("mark_messages_read") == []


def test_mark_read_failure_raises(backend, feed):
    async def scenario():
        row = await backend.insert_message("bob", "alice", "hello")
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        backend.mark_messages_read = AsyncMock(side_effect=BackendError("denied"))
        with pytest.raises(BackendError):
            await session.mark_read(row["id"])
        return session

    session = asyncio.run(scenario())
    assert session.unread_count() == 1


def test_mark_all_read_marks_each_id_once(backend, feed):
    on_read = AsyncMock()

    async def scenario():
        await backend.insert_message("bob", "alice", "one")
        await backend.insert_message("alice", "bob", "reply")
        await backend.insert_message("bob", "alice", "two")
        session = MessageThreadSession(backend, feed, counterpart_id="bob", on_read=on_read)
        await session.open()
        first = await session.mark_all_read()
        second = await session.mark_all_read()
        return session, first, second

    session, first, second = asyncio.run(scenario())
    assert len(first) == 2
    assert second == []
    assert backend.requests("mark_messages_read") == [first]
    assert session.unread_count() == 0
    on_read.assert_awaited_once()


def test_mark_all_read_retries_after_failure(backend, feed):
    async def scenario():
        await backend.insert_message("bob", "alice", "one")
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        original = backend.mark_messages_read
        backend.mark_messages_read = AsyncMock(side_effect=BackendError("denied"))
        with pytest.raises(BackendError):
            await session.mark_all_read()
        backend.mark_messages_read = original
        return await session.mark_all_read()

    assert len(asyncio.run(scenario())) == 1


def test_set_counterpart_switches_channel(backend, feed):
    async def scenario():
        await backend.insert_message("bob", "alice", "from bob")
        await backend.insert_message("carol", "alice", "from carol")
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        await session.set_counterpart("carol")
        await backend.insert_message("bob", "alice", "late bob")
        await feed.drain()
        return session

    session = asyncio.run(scenario())
    assert feed.channels() == ["messages-alice-carol"]
    assert [m.content for m in session.messages] == ["from carol"]


def test_insert_for_previous_counterpart_is_ignored(backend, feed):
    event = ChangeEvent(
        kind=EventKind.INSERT, table="messages", new=message_row("m1", "bob", "alice")
    )

    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        await session.set_counterpart("carol")
        await session.apply_insert(event)
        return session

    session = asyncio.run(scenario())
    assert session.messages == []


def test_close_is_idempotent_and_final(backend, feed):
    async def scenario():
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        await session.close()
        await session.close()
        with pytest.raises(RuntimeError):
            await session.open()
        return session

    session = asyncio.run(scenario())
    assert feed.channel_count == 0
    assert not session.subscribed


def test_confirmation_after_counterpart_switch_stays_out_of_new_thread(feed):
    backend = seed(GatedBackend(current_user="alice", feed=feed))

    async def scenario():
        await backend.insert_message("carol", "alice", "from carol")
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        backend.gate = asyncio.Event()
        task = asyncio.create_task(session.send("for bob"))
        while not session.messages:
            await asyncio.sleep(0)
        await session.set_counterpart("carol")
        backend.gate.set()
        confirmed = await task
        await feed.drain()
        return session, confirmed

    session, confirmed = asyncio.run(scenario())
    assert confirmed.recipient_id == "bob"
    assert [m.content for m in session.messages] == ["from carol"]
    for message in session.messages:
        assert {message.sender_id, message.recipient_id} == {"alice", "carol"}


def test_failed_send_after_counterpart_switch_leaves_new_thread_alone(feed):
    backend = seed(GatedBackend(current_user="alice", feed=feed))

    async def scenario():
        await backend.insert_message("carol", "alice", "from carol")
        session = MessageThreadSession(backend, feed, counterpart_id="bob")
        await session.open()
        backend.gate = asyncio.Event()
        backend.fail = True
        task = asyncio.create_task(session.send("for bob"))
        while not session.messages:
            await asyncio.sleep(0)
        await session.set_counterpart("carol")
        backend.gate.set()
        with pytest.raises(SendError):
            await task
        return session

    session = asyncio.run(scenario())
    assert [m.content for m in session.messages] == ["from carol"]
