"""Real-time direct messaging for the LMS: threads, inbox and change feed."""

from lms_chat.client import ChatClient
from lms_chat.config import BackendConfig
from lms_chat.conversations import ConversationListSession
from lms_chat.exceptions import (
    AuthenticationError,
    BackendError,
    ChangeFeedError,
    ChatClientError,
    ConfigurationError,
    SendError,
)
from lms_chat.feed import ChangeFeedSubscriber, InboxScope, ThreadScope
from lms_chat.models import (
    ChangeEvent,
    Conversation,
    ConversationSummary,
    EventKind,
    Message,
    Profile,
    SessionState,
)
from lms_chat.profiles import ProfileCache
from lms_chat.scheduler import CoalescingScheduler
from lms_chat.threads import MessageThreadSession

__all__ = [
    "ChatClient",
    "BackendConfig",
    "ConversationListSession",
    "MessageThreadSession",
    "ChangeFeedSubscriber",
    "ThreadScope",
    "InboxScope",
    "ProfileCache",
    "CoalescingScheduler",
    "ChangeEvent",
    "Conversation",
    "ConversationSummary",
    "EventKind",
    "Message",
    "Profile",
    "SessionState",
    "ChatClientError",
    "ConfigurationError",
    "AuthenticationError",
    "BackendError",
    "SendError",
    "ChangeFeedError",
]
