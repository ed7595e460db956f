"""In-process backend and change feed for local development and tests."""

from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from typing import Any

from lms_chat.backend.base import BaseBackend, BaseChangeFeed, FeedCallback
from lms_chat.exceptions import BackendError, ChangeFeedError
from lms_chat.models import ChangeEvent, EventKind, now_iso, timestamp_key

logger = logging.getLogger(__name__)


class InMemoryChangeFeed(BaseChangeFeed):
    """Fan-out of published events to listeners, delivered as loop tasks."""

    def __init__(self):
        self._listeners: dict[int, tuple[str, str, FeedCallback]] = {}
        self._next_token = 0
        self._tasks: set[asyncio.Task] = set()
        self.closed = False

    async def listen(self, channel: str, table: str, callback: FeedCallback) -> int:
        if self.closed:
            raise ChangeFeedError("Change feed is closed")
        self._next_token += 1
        self._listeners[self._next_token] = (channel, table, callback)
        logger.debug(f"Channel {channel} listening on {table}")
        return self._next_token

    async def remove(self, token: int) -> None:
        entry = self._listeners.pop(token, None)
        if entry:
            logger.debug(f"Channel {entry[0]} removed")

    async def aclose(self) -> None:
        self._listeners.clear()
        self.closed = True

    @property
    def channel_count(self) -> int:
        return len(self._listeners)

    def channels(self) -> list[str]:
        return [channel for channel, _, _ in self._listeners.values()]

    def publish(self, event: ChangeEvent) -> None:
        """Schedule delivery of ``event`` to every listener on its table."""
        loop = asyncio.get_running_loop()
        for _, table, callback in list(self._listeners.values()):
            if table != event.table:
                continue
            task = loop.create_task(callback(copy.deepcopy(event)))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait until every scheduled delivery (and any it triggers) is done."""
        while self._tasks:
            pending = list(self._tasks)
            await asyncio.gather(*pending, return_exceptions=True)
            self._tasks.difference_update(pending)


class InMemoryBackend(BaseBackend):
    """Dict-backed messages/profiles/conversations store.

    Keeps one conversation summary per (pair, course) up to date on every
    insert and read, the way the hosted database triggers do, and publishes
    row changes to ``feed`` when one is given.

    Args:
        current_user: Viewer identity; None means signed out.
        feed: Change feed to publish row events to.
    """

    def __init__(self, current_user: str | None = None, feed: InMemoryChangeFeed | None = None):
        self.current_user = current_user
        self.feed = feed
        self.messages: dict[str, dict[str, Any]] = {}
        self.profiles: dict[str, dict[str, Any]] = {}
        self.conversations: dict[tuple[str, str, str | None], dict[str, Any]] = {}
        self.request_log: list[tuple[str, Any]] = []

    # ---- Seeding ----

    def add_profile(self, profile_id: str, **columns) -> dict[str, Any]:
        row = {"id": profile_id, "role": "student", "updated_at": now_iso(), **columns}
        self.profiles[profile_id] = row
        return row

    def sign_in(self, user_id: str) -> None:
        self.current_user = user_id

    def sign_out(self) -> None:
        self.current_user = None

    def delete_message(self, message_id: str) -> None:
        """Remove a message row (moderation); publishes a DELETE with the id only."""
        row = self.messages.pop(message_id, None)
        if row is not None:
            self._publish(EventKind.DELETE, "messages", old={"id": message_id})
            self._recount_unread(self._conversation_key(row))

    def requests(self, name: str) -> list[Any]:
        """Arguments of every logged call to ``name``."""
        return [args for op, args in self.request_log if op == name]

    # ---- BaseBackend ----

    async def current_user_id(self) -> str | None:
        return self.current_user

    async def fetch_thread(
        self, user_a: str, user_b: str, course_id: str | None = None
    ) -> list[dict[str, Any]]:
        self.request_log.append(("fetch_thread", (user_a, user_b, course_id)))
        pair = {user_a, user_b}
        rows = [
            row for row in self.messages.values()
            if {row["sender_id"], row["recipient_id"]} == pair
            and (course_id is None or row.get("course_id") == course_id)
        ]
        rows.sort(key=lambda row: timestamp_key(row["created_at"]))
        return copy.deepcopy(rows)

    async def insert_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
        course_id: str | None = None,
    ) -> dict[str, Any]:
        self.request_log.append(("insert_message", (sender_id, recipient_id, content, course_id)))
        if sender_id == recipient_id:
            raise BackendError("Sender and recipient must differ")
        now = now_iso()
        row = {
            "id": str(uuid.uuid4()),
            "sender_id": sender_id,
            "recipient_id": recipient_id,
            "content": content,
            "course_id": course_id,
            "created_at": now,
            "updated_at": now,
            "read_at": None,
        }
        self.messages[row["id"]] = row
        self._publish(EventKind.INSERT, "messages", new=row)
        self._touch_conversation(row)
        return copy.deepcopy(row)

    async def mark_messages_read(self, message_ids: list[str], read_at: str) -> None:
        self.request_log.append(("mark_messages_read", list(message_ids)))
        touched = []
        for message_id in message_ids:
            row = self.messages.get(message_id)
            if row is None:
                continue
            old = copy.deepcopy(row)
            row["read_at"] = read_at
            row["updated_at"] = read_at
            self._publish(EventKind.UPDATE, "messages", new=row, old=old)
            touched.append(row)
        for key in {self._conversation_key(row) for row in touched}:
            self._recount_unread(key)

    async def fetch_profile(self, profile_id: str) -> dict[str, Any] | None:
        self.request_log.append(("fetch_profile", profile_id))
        row = self.profiles.get(profile_id)
        return copy.deepcopy(row) if row else None

    async def fetch_profiles(self, profile_ids: list[str]) -> list[dict[str, Any]]:
        self.request_log.append(("fetch_profiles", list(profile_ids)))
        return [copy.deepcopy(self.profiles[i]) for i in profile_ids if i in self.profiles]

    async def fetch_conversations(
        self, viewer_id: str, course_id: str | None = None
    ) -> list[dict[str, Any]]:
        self.request_log.append(("fetch_conversations", (viewer_id, course_id)))
        rows = [
            row for row in self.conversations.values()
            if viewer_id in (row["user1_id"], row["user2_id"])
            and (course_id is None or row.get("course_id") == course_id)
        ]
        rows.sort(key=lambda row: timestamp_key(row.get("last_message_at")), reverse=True)
        return copy.deepcopy(rows)

    # ---- Summary maintenance ----

    @staticmethod
    def _conversation_key(row: dict[str, Any]) -> tuple[str, str, str | None]:
        user1, user2 = sorted((row["sender_id"], row["recipient_id"]))
        return user1, user2, row.get("course_id")

    def _touch_conversation(self, message: dict[str, Any]) -> None:
        key = self._conversation_key(message)
        existing = self.conversations.get(key)
        old = copy.deepcopy(existing) if existing else {}
        if existing is None:
            existing = {
                "id": str(uuid.uuid4()),
                "user1_id": key[0],
                "user2_id": key[1],
                "course_id": key[2],
                "unread_count_user1": 0,
                "unread_count_user2": 0,
            }
            self.conversations[key] = existing
        existing["last_message_content"] = message["content"]
        existing["last_message_at"] = message["created_at"]
        existing["last_sender_id"] = message["sender_id"]
        if message["recipient_id"] == existing["user1_id"]:
            existing["unread_count_user1"] += 1
        else:
            existing["unread_count_user2"] += 1
        kind = EventKind.UPDATE if old else EventKind.INSERT
        self._publish(kind, "conversations", new=existing, old=old)

    def _recount_unread(self, key: tuple[str, str, str | None]) -> None:
        summary = self.conversations.get(key)
        if summary is None:
            return
        old = copy.deepcopy(summary)
        for column, user_id in (
            ("unread_count_user1", summary["user1_id"]),
            ("unread_count_user2", summary["user2_id"]),
        ):
            summary[column] = sum(
                1 for row in self.messages.values()
                if self._conversation_key(row) == key
                and row["recipient_id"] == user_id
                and not row.get("read_at")
            )
        if summary != old:
            self._publish(EventKind.UPDATE, "conversations", new=summary, old=old)

    def _publish(self, kind: EventKind, table: str, new: dict | None = None, old: dict | None = None) -> None:
        if self.feed is None:
            return
        self.feed.publish(
            ChangeEvent(
                kind=kind,
                table=table,
                new=copy.deepcopy(new or {}),
                old=copy.deepcopy(old or {}),
                commit_timestamp=now_iso(),
            )
        )
