"""Scoped change-feed subscriptions with client-side relevance filtering."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Union

from lms_chat.backend.base import BaseChangeFeed
from lms_chat.exceptions import ChangeFeedError
from lms_chat.models import ChangeEvent, EventKind

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChangeEvent], Awaitable[None]]


@dataclass(frozen=True)
class ThreadScope:
    """Messages between ``viewer_id`` and ``counterpart_id``."""

    viewer_id: str
    counterpart_id: str
    course_id: str | None = None

    table = "messages"

    @property
    def channel_name(self) -> str:
        return f"messages-{self.viewer_id}-{self.counterpart_id}"


@dataclass(frozen=True)
class InboxScope:
    """Conversation summaries where ``viewer_id`` is a participant."""

    viewer_id: str
    course_id: str | None = None

    table = "conversations"

    @property
    def channel_name(self) -> str:
        return f"conversations-{self.viewer_id}"


Scope = Union[ThreadScope, InboxScope]


def is_thread_event(scope: ThreadScope, event: ChangeEvent) -> bool:
    """True if the event's message belongs to the scoped thread.

    A delete carrying only the primary key cannot be attributed to a pair
    and is let through; removing an unknown id is a no-op.
    """
    record = event.record
    sender = record.get("sender_id")
    recipient = record.get("recipient_id")
    if sender is None and recipient is None:
        return event.kind is EventKind.DELETE and "id" in record
    if {sender, recipient} != {scope.viewer_id, scope.counterpart_id}:
        return False
    if scope.course_id is not None and "course_id" in record:
        return record.get("course_id") == scope.course_id
    return True


def is_inbox_event(scope: InboxScope, event: ChangeEvent) -> bool:
    """True if either summary participant, before or after the change, is the viewer."""
    for record in (event.new, event.old):
        if scope.viewer_id in (record.get("user1_id"), record.get("user2_id")):
            return True
    return False


def is_relevant(scope: Scope, event: ChangeEvent) -> bool:
    if event.table and event.table != scope.table:
        return False
    if isinstance(scope, ThreadScope):
        return is_thread_event(scope, event)
    return is_inbox_event(scope, event)


@dataclass
class SubscriptionHandle:
    """Returned by ``subscribe``; pass to ``unsubscribe`` to close."""

    id: int
    scope: Scope
    token: object = None
    active: bool = False
    delivered: int = field(default=0, compare=False)
    dropped: int = field(default=0, compare=False)


class ChangeFeedSubscriber:
    """Opens one transport channel per scope and dispatches typed callbacks."""

    def __init__(self, feed: BaseChangeFeed):
        self._feed = feed
        self._ids = itertools.count(1)
        self._handles: dict[int, SubscriptionHandle] = {}

    @property
    def active_handles(self) -> list[SubscriptionHandle]:
        return [h for h in self._handles.values() if h.active]

    async def subscribe(
        self,
        scope: Scope,
        on_insert: EventHandler,
        on_update: EventHandler | None = None,
        on_delete: EventHandler | None = None,
    ) -> SubscriptionHandle:
        """Subscribe to changes relevant to ``scope``.

        A transport failure is logged and yields an inactive handle; the
        caller keeps its last-known state.
        """
        handle = SubscriptionHandle(id=next(self._ids), scope=scope)
        handlers = {
            EventKind.INSERT: on_insert,
            EventKind.UPDATE: on_update,
            EventKind.DELETE: on_delete,
        }

        async def dispatch(event: ChangeEvent) -> None:
            if not handle.active or not is_relevant(scope, event):
                handle.dropped += 1
                return
            handler = handlers.get(event.kind)
            if handler is None:
                return
            handle.delivered += 1
            try:
                await handler(event)
            except Exception:
                logger.exception(f"Handler for {event.kind.value} on {scope.channel_name} failed")

        try:
            handle.token = await self._feed.listen(scope.channel_name, scope.table, dispatch)
        except ChangeFeedError as e:
            logger.warning(f"Subscription to {scope.channel_name} failed: {e}")
            return handle

        handle.active = True
        self._handles[handle.id] = handle
        logger.debug(f"Subscribed to {scope.channel_name}")
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle | None) -> None:
        """Close a subscription. Safe to call more than once."""
        if handle is None or not handle.active:
            return
        handle.active = False
        self._handles.pop(handle.id, None)
        try:
            await self._feed.remove(handle.token)
        except ChangeFeedError as e:
            logger.warning(f"Error closing {handle.scope.channel_name}: {e}")
        logger.debug(f"Unsubscribed from {handle.scope.channel_name}")

    async def close(self) -> None:
        for handle in list(self._handles.values()):
            await self.unsubscribe(handle)
