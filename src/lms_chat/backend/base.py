"""Abstract base classes for the relational backend and its change feed."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable

from lms_chat.models import ChangeEvent

FeedCallback = Callable[[ChangeEvent], Awaitable[None]]


class BaseBackend(ABC):
    """Async interface to the messages, profiles and conversations tables.

    Rows are returned as plain dicts keyed by column name. Implementations
    raise ``BackendError`` on any query failure.
    """

    @abstractmethod
    async def current_user_id(self) -> str | None:
        """Identifier of the authenticated viewer, or None if signed out."""
        ...

    @abstractmethod
    async def fetch_thread(
        self, user_a: str, user_b: str, course_id: str | None = None
    ) -> list[dict[str, Any]]:
        """Messages between two users in either direction, oldest first."""
        ...

    @abstractmethod
    async def insert_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
        course_id: str | None = None,
    ) -> dict[str, Any]:
        """Insert one message and return the persisted row."""
        ...

    @abstractmethod
    async def mark_messages_read(self, message_ids: list[str], read_at: str) -> None:
        """Set ``read_at`` on all given messages in a single update."""
        ...

    @abstractmethod
    async def fetch_profile(self, profile_id: str) -> dict[str, Any] | None:
        """Fetch one profile row."""
        ...

    @abstractmethod
    async def fetch_profiles(self, profile_ids: list[str]) -> list[dict[str, Any]]:
        """Fetch many profile rows in one query."""
        ...

    @abstractmethod
    async def fetch_conversations(
        self, viewer_id: str, course_id: str | None = None
    ) -> list[dict[str, Any]]:
        """Conversation summaries involving the viewer, most recent first."""
        ...

    async def aclose(self) -> None:
        """Release any underlying transport."""
        return None


class BaseChangeFeed(ABC):
    """Transport delivering row-level change notifications for one table.

    The transport does no per-pair filtering; every event on ``table`` is
    handed to the callback.
    """

    @abstractmethod
    async def listen(self, channel: str, table: str, callback: FeedCallback) -> Any:
        """Open a channel for ``table`` and return a token for ``remove``."""
        ...

    @abstractmethod
    async def remove(self, token: Any) -> None:
        """Close a channel opened by ``listen``. Unknown tokens are ignored."""
        ...

    async def aclose(self) -> None:
        """Close all channels and the connection."""
        return None
