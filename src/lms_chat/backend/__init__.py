"""Backend and change-feed implementations with abstract bases."""

from lms_chat.backend.base import BaseBackend, BaseChangeFeed, FeedCallback
from lms_chat.backend.memory import InMemoryBackend, InMemoryChangeFeed
from lms_chat.backend.postgrest import PostgrestBackend
from lms_chat.backend.realtime import RealtimeChangeFeed

__all__ = [
    "BaseBackend",
    "BaseChangeFeed",
    "FeedCallback",
    "InMemoryBackend",
    "InMemoryChangeFeed",
    "PostgrestBackend",
    "RealtimeChangeFeed",
]
