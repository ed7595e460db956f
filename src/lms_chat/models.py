"""Data models for messages, profiles, conversations and change events."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any

from dateutil import parser as date_parser

TEMP_ID_PREFIX = "temp-"
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp from the backend; None if absent or garbled."""
    if not value:
        return None
    try:
        parsed = date_parser.isoparse(value)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def timestamp_key(value: str | None) -> datetime:
    """Sort key for optional timestamps; missing values sort as the oldest."""
    return parse_timestamp(value) or _EPOCH


def _known_fields(cls, row: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in row.items() if k in names}


@dataclass
class Profile:
    """A user profile row."""

    id: str
    role: str = "student"  # "student", "coach" or "admin"
    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None
    email: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> Profile:
        data = _known_fields(cls, row)
        if data.get("role") is None:
            data.pop("role", None)
        return cls(**data)

    @property
    def display_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or self.username or self.id


@dataclass
class Message:
    """A direct message, optionally enriched with participant profiles."""

    id: str
    sender_id: str
    recipient_id: str
    content: str
    created_at: str
    updated_at: str
    read_at: str | None = None
    course_id: str | None = None
    sender_profile: Profile | None = field(default=None, compare=False)
    recipient_profile: Profile | None = field(default=None, compare=False)

    @classmethod
    def from_row(
        cls,
        row: dict,
        sender_profile: Profile | None = None,
        recipient_profile: Profile | None = None,
    ) -> Message:
        data = _known_fields(cls, row)
        data.pop("sender_profile", None)
        data.pop("recipient_profile", None)
        data.setdefault("updated_at", data.get("created_at", ""))
        return cls(
            **data,
            sender_profile=sender_profile,
            recipient_profile=recipient_profile,
        )

    @property
    def is_optimistic(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)

    def is_unread_for(self, user_id: str) -> bool:
        return self.recipient_id == user_id and not self.read_at

    def patched(self, row: dict) -> Message:
        """Copy with the persisted columns from ``row`` applied; profiles kept."""
        updates = _known_fields(type(self), row)
        updates.pop("sender_profile", None)
        updates.pop("recipient_profile", None)
        return replace(self, **updates)


@dataclass
class ConversationSummary:
    """Backend-maintained summary row for one (pair, course) thread."""

    user1_id: str
    user2_id: str
    id: str | None = None
    course_id: str | None = None
    last_message_content: str | None = None
    last_message_at: str | None = None
    last_sender_id: str | None = None
    unread_count_user1: int = 0
    unread_count_user2: int = 0

    @classmethod
    def from_row(cls, row: dict) -> ConversationSummary:
        data = _known_fields(cls, row)
        for key in ("unread_count_user1", "unread_count_user2"):
            if data.get(key) is None:
                data[key] = 0
        return cls(**data)

    def involves(self, user_id: str) -> bool:
        return user_id in (self.user1_id, self.user2_id)

    def other_user(self, viewer_id: str) -> str:
        return self.user2_id if self.user1_id == viewer_id else self.user1_id

    def unread_for(self, viewer_id: str) -> int:
        if self.user1_id == viewer_id:
            return self.unread_count_user1
        return self.unread_count_user2


@dataclass
class Conversation:
    """One inbox row, relative to the viewer."""

    user1_id: str
    user2_id: str
    other_user_id: str
    course_id: str | None = None
    last_message: str | None = None
    last_message_at: str | None = None
    last_sender_id: str | None = None
    other_user_profile: Profile | None = None
    unread_count: int = 0

    @classmethod
    def for_viewer(
        cls,
        summary: ConversationSummary,
        viewer_id: str,
        other_user_profile: Profile | None = None,
    ) -> Conversation:
        return cls(
            user1_id=summary.user1_id,
            user2_id=summary.user2_id,
            other_user_id=summary.other_user(viewer_id),
            course_id=summary.course_id,
            last_message=summary.last_message_content,
            last_message_at=summary.last_message_at,
            last_sender_id=summary.last_sender_id,
            other_user_profile=other_user_profile,
            unread_count=summary.unread_for(viewer_id),
        )


class EventKind(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass
class ChangeEvent:
    """A row-level change notification from the backend."""

    kind: EventKind
    table: str
    new: dict[str, Any] = field(default_factory=dict)
    old: dict[str, Any] = field(default_factory=dict)
    commit_timestamp: str | None = None

    @property
    def record(self) -> dict[str, Any]:
        """The row the event is about: ``new`` unless it is empty (deletes)."""
        return self.new or self.old


class SessionState(str, enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"
