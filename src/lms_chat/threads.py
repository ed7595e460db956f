"""Live message thread between the viewer and one counterpart."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Awaitable, Callable, Iterable

from lms_chat.backend.base import BaseBackend, BaseChangeFeed
from lms_chat.exceptions import AuthenticationError, BackendError, ChatClientError, SendError
from lms_chat.feed import ChangeFeedSubscriber, SubscriptionHandle, ThreadScope, is_thread_event
from lms_chat.models import TEMP_ID_PREFIX, ChangeEvent, EventKind, Message, SessionState, now_iso
from lms_chat.profiles import ProfileCache

logger = logging.getLogger(__name__)

_UNSET = object()


def new_temp_id() -> str:
    """Local identifier for an optimistic message."""
    return f"{TEMP_ID_PREFIX}{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class MessageThreadSession:
    """Owns the message list for one (viewer, counterpart, course) thread.

    Keeps the list in sync with the change feed once open, applies sends
    optimistically and reconciles them with the confirmed rows regardless of
    whether the insert response or the feed event arrives first.

    Args:
        backend: Relational backend.
        feed: Change-feed transport; the session opens its own channel on it.
        counterpart_id: The other participant. None leaves the session idle.
        course_id: Optional thread scope.
        profiles: Profile cache to use; a fresh one is created if omitted.
        on_read: Awaited after ``mark_all_read`` marks anything, e.g. an
            inbox refresh.
    """

    def __init__(
        self,
        backend: BaseBackend,
        feed: BaseChangeFeed,
        counterpart_id: str | None = None,
        course_id: str | None = None,
        profiles: ProfileCache | None = None,
        on_read: Callable[[], Awaitable[object]] | None = None,
    ):
        self._backend = backend
        self._subscriber = ChangeFeedSubscriber(feed)
        self.profiles = profiles if profiles is not None else ProfileCache(backend)
        self.counterpart_id = counterpart_id
        self.course_id = course_id
        self.on_read = on_read

        self.state = SessionState.IDLE
        self.error: ChatClientError | None = None
        self.viewer_id: str | None = None
        self._messages: list[Message] = []
        self._handle: SubscriptionHandle | None = None
        self._marked: set[str] = set()
        self._pending: set[str] = set()
        self._arrived_while_loading: set[str] = set()
        self._fetch_seq = 0
        self._background: set[asyncio.Task] = set()
        self._closed = False

    # ---- Read-only views ----

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    @property
    def loading(self) -> bool:
        return self.state is SessionState.LOADING

    @property
    def subscribed(self) -> bool:
        return self._handle is not None and self._handle.active

    @property
    def scope(self) -> ThreadScope | None:
        if not self.viewer_id or not self.counterpart_id:
            return None
        return ThreadScope(self.viewer_id, self.counterpart_id, self.course_id)

    def unread_count(self) -> int:
        if not self.viewer_id:
            return 0
        return sum(1 for m in self._messages if m.is_unread_for(self.viewer_id))

    # ---- Lifecycle ----

    async def open(self) -> None:
        """Fetch history and, once ready, subscribe to the thread's changes."""
        if self._closed:
            raise RuntimeError("Thread session is closed")
        await self.fetch_history()
        if self.state is SessionState.READY and not self.subscribed:
            self._handle = await self._subscriber.subscribe(
                self.scope,
                on_insert=self.apply_insert,
                on_update=self.apply_update,
                on_delete=self.apply_delete,
            )

    async def set_counterpart(self, counterpart_id: str | None, course_id=_UNSET) -> None:
        """Switch to another thread, closing the old subscription first."""
        await self._subscriber.unsubscribe(self._handle)
        self._handle = None
        self._fetch_seq += 1
        self.counterpart_id = counterpart_id
        if course_id is not _UNSET:
            self.course_id = course_id
        self._messages = []
        self._marked.clear()
        self._pending.clear()
        self.state = SessionState.IDLE
        self.error = None
        await self.open()

    async def close(self) -> None:
        """Tear down permanently. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._fetch_seq += 1
        await self._subscriber.close()
        self._handle = None
        for task in list(self._background):
            task.cancel()
        logger.debug(f"Thread session with {self.counterpart_id} closed")

    # ---- Fetch ----

    async def fetch_history(self) -> list[Message]:
        """Load the whole thread, oldest first, with participant profiles.

        Errors are recorded on ``error`` and ``state`` rather than raised.
        """
        if not self.counterpart_id:
            self.state = SessionState.IDLE
            return []

        self._fetch_seq += 1
        seq = self._fetch_seq
        self.state = SessionState.LOADING
        self.error = None
        self._arrived_while_loading.clear()

        try:
            viewer = await self._backend.current_user_id()
            if not viewer:
                raise AuthenticationError("User not authenticated")
            rows = await self._backend.fetch_thread(viewer, self.counterpart_id, self.course_id)
        except AuthenticationError as e:
            if seq == self._fetch_seq:
                self.viewer_id = None
                self._messages = []
                self._set_error(e)
            return []
        except BackendError as e:
            logger.error(f"Error fetching messages with {self.counterpart_id}: {e}")
            if seq == self._fetch_seq:
                self._set_error(e)
            return self.messages

        user_ids = set()
        for row in rows:
            user_ids.add(row["sender_id"])
            user_ids.add(row["recipient_id"])
        await self.profiles.ensure_many(user_ids)

        if seq != self._fetch_seq:
            logger.debug("Discarding stale thread fetch")
            return self.messages

        self.viewer_id = viewer
        fetched = [self._enrich(Message.from_row(row)) for row in rows]
        fetched_ids = {m.id for m in fetched}
        carried = [
            m for m in self._messages
            if m.id not in fetched_ids
            and (m.id in self._pending or m.id in self._arrived_while_loading)
        ]
        self._messages = fetched + carried
        self.state = SessionState.READY
        logger.debug(f"Loaded {len(fetched)} messages with {self.counterpart_id}")
        return self.messages

    def _set_error(self, error: ChatClientError) -> None:
        self.error = error
        self.state = SessionState.ERROR

    def _enrich(self, message: Message) -> Message:
        if message.sender_profile is None:
            message.sender_profile = self.profiles.get(message.sender_id)
        if message.recipient_profile is None:
            message.recipient_profile = self.profiles.get(message.recipient_id)
        return message

    # ---- Send ----

    async def send(
        self,
        content: str,
        recipient_id: str | None = None,
        course_id: str | None = None,
    ) -> Message:
        """Send a message, showing it immediately and reconciling on confirm.

        Raises:
            ValueError: Empty content or no recipient.
            AuthenticationError: No viewer identity.
            SendError: The insert failed; the optimistic entry is removed.
        """
        body = content.strip()
        if not body:
            raise ValueError("Message content is empty")
        recipient = recipient_id or self.counterpart_id
        if not recipient:
            raise ValueError("No recipient for message")

        viewer = await self._backend.current_user_id()
        if not viewer:
            raise AuthenticationError("User not authenticated")

        course = course_id if course_id is not None else self.course_id
        in_thread = (
            not self._closed
            and recipient == self.counterpart_id
            and (self.course_id is None or course == self.course_id)
        )

        temp_id = new_temp_id()
        if in_thread:
            now = now_iso()
            self._messages.append(
                Message(
                    id=temp_id,
                    sender_id=viewer,
                    recipient_id=recipient,
                    content=body,
                    created_at=now,
                    updated_at=now,
                    course_id=course,
                    sender_profile=self.profiles.get(viewer),
                    recipient_profile=self.profiles.get(recipient),
                )
            )
            self._pending.add(temp_id)
            self._warm_profiles([viewer, recipient])

        try:
            row = await self._backend.insert_message(viewer, recipient, body, course)
        except BackendError as e:
            logger.warning(f"Error sending message to {recipient}, rolling back: {e}")
            if self._index_of(temp_id) != -1:
                self._messages = [m for m in self._messages if m.id != temp_id]
            raise SendError(f"Failed to send message: {e}") from e
        finally:
            self._pending.discard(temp_id)

        confirmed = self._enrich(Message.from_row(row))
        if in_thread and self._still_in_thread(viewer, row):
            self._reconcile_confirmed(temp_id, confirmed)
        return confirmed

    def _still_in_thread(self, viewer: str, row: dict) -> bool:
        """Whether a confirmed row still belongs to this thread after the insert await."""
        if self._closed or not self.counterpart_id:
            return False
        scope = ThreadScope(viewer, self.counterpart_id, self.course_id)
        return is_thread_event(scope, ChangeEvent(EventKind.INSERT, scope.table, new=row))

    def _warm_profiles(self, user_ids: list[str]) -> None:
        if all(user_id in self.profiles for user_id in user_ids):
            return
        task = asyncio.ensure_future(self.profiles.ensure_many(user_ids))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _index_of(self, message_id: str) -> int:
        for i, message in enumerate(self._messages):
            if message.id == message_id:
                return i
        return -1

    def _index_of_optimistic(self, sender_id: str, content: str) -> int:
        for i, message in enumerate(self._messages):
            if message.is_optimistic and message.sender_id == sender_id and message.content == content:
                return i
        return -1

    def _reconcile_confirmed(self, temp_id: str, confirmed: Message) -> None:
        if self._index_of(confirmed.id) != -1:
            # The feed (or a refetch) delivered it first.
            self._messages = [m for m in self._messages if m.id != temp_id]
            return
        index = self._index_of(temp_id)
        if index == -1:
            index = self._index_of_optimistic(confirmed.sender_id, confirmed.content)
        if index == -1:
            self._messages.append(confirmed)
        else:
            self._messages[index] = confirmed

    # ---- Read state ----

    async def mark_read(self, message_id: str) -> None:
        await self.mark_read_batch([message_id])

    async def mark_read_batch(self, message_ids: Iterable[str]) -> None:
        """Set ``read_at`` on the given messages with a single backend update.

        Messages known to be sent by the viewer and optimistic entries are
        skipped. No identity is a no-op.

        Raises:
            BackendError: The update failed.
        """
        viewer = await self._backend.current_user_id()
        if not viewer:
            return
        known = {m.id: m for m in self._messages}
        ids = []
        for message_id in dict.fromkeys(message_ids):
            if not message_id or message_id.startswith(TEMP_ID_PREFIX):
                continue
            message = known.get(message_id)
            if message is not None and message.recipient_id != viewer:
                continue
            ids.append(message_id)
        if not ids:
            return

        read_at = now_iso()
        try:
            await self._backend.mark_messages_read(ids, read_at)
        except BackendError as e:
            logger.error(f"Error marking {len(ids)} messages as read: {e}")
            raise

        marked = set(ids)
        self._messages = [
            m.patched({"read_at": read_at}) if m.id in marked and not m.read_at else m
            for m in self._messages
        ]

    async def mark_all_read(self) -> list[str]:
        """Mark every loaded message addressed to the viewer as read.

        Each id is sent at most once per thread; ``on_read`` is awaited
        afterwards when anything was marked.
        """
        if not self.viewer_id:
            return []
        ids = [
            m.id for m in self._messages
            if m.is_unread_for(self.viewer_id)
            and not m.is_optimistic
            and m.id not in self._marked
        ]
        if not ids:
            return []
        self._marked.update(ids)
        try:
            await self.mark_read_batch(ids)
        except BackendError:
            self._marked.difference_update(ids)
            raise
        if self.on_read is not None:
            await self.on_read()
        return ids

    # ---- Feed reconciliation ----

    async def apply_insert(self, event: ChangeEvent) -> None:
        """Merge a feed-delivered message. Replaying an event is a no-op."""
        row = event.new
        if not row.get("id") or self._closed:
            return
        sender_profile = await self.profiles.ensure(row["sender_id"])
        recipient_profile = await self.profiles.ensure(row["recipient_id"])
        # The counterpart may have changed while the profiles loaded.
        scope = self.scope
        if self._closed or scope is None or not is_thread_event(scope, event):
            return

        if self._index_of(row["id"]) != -1:
            return
        message = Message.from_row(row, sender_profile, recipient_profile)
        if self.loading:
            self._arrived_while_loading.add(message.id)
        index = self._index_of_optimistic(message.sender_id, message.content)
        if index == -1:
            self._messages.append(message)
        else:
            self._messages[index] = message

    async def apply_update(self, event: ChangeEvent) -> None:
        row = event.new
        index = self._index_of(row.get("id", ""))
        if index != -1:
            self._messages[index] = self._messages[index].patched(row)

    async def apply_delete(self, event: ChangeEvent) -> None:
        message_id = event.old.get("id") or event.new.get("id")
        if message_id:
            self._messages = [m for m in self._messages if m.id != message_id]
