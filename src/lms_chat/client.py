"""Facade wiring a backend and change feed into messaging sessions."""

from __future__ import annotations

import logging

from lms_chat.backend.base import BaseBackend, BaseChangeFeed
from lms_chat.config import DEFAULT_DEBOUNCE_SECONDS, BackendConfig
from lms_chat.conversations import ConversationListSession
from lms_chat.threads import MessageThreadSession

logger = logging.getLogger(__name__)


class ChatClient:
    """Creates thread and inbox sessions over one backend and feed.

    Each session gets its own profile cache. Usage::

        async with ChatClient.from_env() as chat:
            inbox = await chat.open_inbox()
            thread = await chat.open_thread("coach-id", inbox=inbox)
            await thread.send("Hi!")

    Args:
        backend: Relational backend.
        feed: Change-feed transport shared by all sessions.
        debounce_seconds: Inbox refresh coalescing window.
    """

    def __init__(
        self,
        backend: BaseBackend,
        feed: BaseChangeFeed,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        self.backend = backend
        self.feed = feed
        self.debounce_seconds = debounce_seconds
        self._threads: list[MessageThreadSession] = []
        self._inboxes: list[ConversationListSession] = []

    @classmethod
    def from_config(cls, config: BackendConfig) -> ChatClient:
        from lms_chat.backend.postgrest import PostgrestBackend
        from lms_chat.backend.realtime import RealtimeChangeFeed

        return cls(
            PostgrestBackend(config),
            RealtimeChangeFeed(config),
            debounce_seconds=config.debounce_seconds,
        )

    @classmethod
    def from_env(cls) -> ChatClient:
        """Build a client from environment variables.

        Raises:
            ConfigurationError: SUPABASE_URL or SUPABASE_ANON_KEY is missing.
        """
        return cls.from_config(BackendConfig.from_env())

    def thread(
        self, counterpart_id: str | None = None, course_id: str | None = None
    ) -> MessageThreadSession:
        session = MessageThreadSession(
            self.backend, self.feed, counterpart_id=counterpart_id, course_id=course_id
        )
        self._threads.append(session)
        return session

    def inbox(self, course_id: str | None = None) -> ConversationListSession:
        session = ConversationListSession(
            self.backend, self.feed, course_id=course_id, debounce_seconds=self.debounce_seconds
        )
        self._inboxes.append(session)
        return session

    async def open_thread(
        self,
        counterpart_id: str,
        course_id: str | None = None,
        inbox: ConversationListSession | None = None,
    ) -> MessageThreadSession:
        """Open a thread; with ``inbox`` given, marking it read refreshes the inbox."""
        session = self.thread(counterpart_id, course_id)
        if inbox is not None:
            session.on_read = inbox.refresh
        await session.open()
        return session

    async def open_inbox(self, course_id: str | None = None) -> ConversationListSession:
        session = self.inbox(course_id)
        await session.open()
        return session

    async def aclose(self) -> None:
        for thread in self._threads:
            await thread.close()
        for inbox in self._inboxes:
            await inbox.close()
        self._threads.clear()
        self._inboxes.clear()
        await self.feed.aclose()
        await self.backend.aclose()
        logger.debug("Chat client closed")

    async def __aenter__(self) -> ChatClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
