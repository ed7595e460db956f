"""The viewer's inbox: one row per counterpart and course."""

from __future__ import annotations

import logging

from lms_chat.backend.base import BaseBackend, BaseChangeFeed
from lms_chat.config import DEFAULT_DEBOUNCE_SECONDS
from lms_chat.exceptions import AuthenticationError, BackendError, ChatClientError
from lms_chat.feed import ChangeFeedSubscriber, InboxScope, SubscriptionHandle
from lms_chat.models import (
    ChangeEvent,
    Conversation,
    ConversationSummary,
    SessionState,
    timestamp_key,
)
from lms_chat.profiles import ProfileCache
from lms_chat.scheduler import CoalescingScheduler

logger = logging.getLogger(__name__)


class ConversationListSession:
    """Keeps the viewer's conversation summaries current.

    Summaries are maintained by the backend; this session only re-reads
    them. Change-feed events touching the viewer are coalesced so a burst
    of activity causes a single refetch.

    Args:
        backend: Relational backend.
        feed: Change-feed transport.
        course_id: Only show conversations scoped to this course.
        profiles: Profile cache to use; a fresh one is created if omitted.
        debounce_seconds: Refresh coalescing window.
    """

    def __init__(
        self,
        backend: BaseBackend,
        feed: BaseChangeFeed,
        course_id: str | None = None,
        profiles: ProfileCache | None = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        self._backend = backend
        self._subscriber = ChangeFeedSubscriber(feed)
        self.profiles = profiles if profiles is not None else ProfileCache(backend)
        self.course_id = course_id
        self.refresh_scheduler = CoalescingScheduler(self.refresh, debounce_seconds)

        self.state = SessionState.IDLE
        self.error: ChatClientError | None = None
        self.viewer_id: str | None = None
        self._conversations: list[Conversation] = []
        self._handle: SubscriptionHandle | None = None
        self._fetch_seq = 0
        self._closed = False

    @property
    def conversations(self) -> list[Conversation]:
        return list(self._conversations)

    @property
    def loading(self) -> bool:
        return self.state is SessionState.LOADING

    @property
    def subscribed(self) -> bool:
        return self._handle is not None and self._handle.active

    async def open(self) -> None:
        """Load the inbox and subscribe to summary changes for the viewer."""
        if self._closed:
            raise RuntimeError("Conversation list session is closed")
        await self.fetch_all()
        if self.viewer_id and not self.subscribed:
            on_change = self._on_change
            self._handle = await self._subscriber.subscribe(
                InboxScope(self.viewer_id, self.course_id),
                on_insert=on_change,
                on_update=on_change,
                on_delete=on_change,
            )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._fetch_seq += 1
        await self.refresh_scheduler.aclose()
        await self._subscriber.close()
        self._handle = None

    async def _on_change(self, event: ChangeEvent) -> None:
        if not self._closed:
            self.refresh_scheduler.signal()

    async def fetch_all(self) -> list[Conversation]:
        """Load the viewer's conversations, most recent first.

        Errors are recorded on ``error`` and ``state`` rather than raised.
        """
        self._fetch_seq += 1
        seq = self._fetch_seq
        self.state = SessionState.LOADING
        self.error = None

        try:
            viewer = await self._backend.current_user_id()
            if not viewer:
                raise AuthenticationError("User not authenticated")
            rows = await self._backend.fetch_conversations(viewer, self.course_id)
        except AuthenticationError as e:
            if seq == self._fetch_seq:
                self.viewer_id = None
                self._conversations = []
                self.error = e
                self.state = SessionState.ERROR
            return []
        except BackendError as e:
            logger.error(f"Error fetching conversations: {e}")
            if seq == self._fetch_seq:
                self.error = e
                self.state = SessionState.ERROR
            return self.conversations

        summaries = [ConversationSummary.from_row(row) for row in rows]
        await self.profiles.ensure_many(s.other_user(viewer) for s in summaries)

        if seq != self._fetch_seq:
            logger.debug("Discarding stale conversation fetch")
            return self.conversations

        conversations = []
        for summary in summaries:
            other = summary.other_user(viewer)
            conversations.append(
                Conversation.for_viewer(summary, viewer, self.profiles.get(other))
            )
        conversations.sort(key=lambda c: timestamp_key(c.last_message_at), reverse=True)

        self.viewer_id = viewer
        self._conversations = conversations
        self.state = SessionState.READY
        logger.debug(f"Loaded {len(conversations)} conversations")
        return self.conversations

    async def refresh(self) -> list[Conversation]:
        """Re-read the inbox now, e.g. after marking a thread read."""
        if self._closed:
            return self.conversations
        return await self.fetch_all()

    def find(self, other_user_id: str, course_id: str | None = None) -> Conversation | None:
        for conversation in self._conversations:
            if conversation.other_user_id != other_user_id:
                continue
            if course_id is None or conversation.course_id == course_id:
                return conversation
        return None

    def total_unread(self) -> int:
        return sum(c.unread_count or 0 for c in self._conversations)

    def unread_conversations(self) -> list[Conversation]:
        return [c for c in self._conversations if (c.unread_count or 0) > 0]
