"""Unified exception hierarchy for lms-chat."""


class ChatClientError(Exception):
    """Base exception for all lms-chat errors."""


class ConfigurationError(ChatClientError):
    """Backend URL or API key is missing or invalid."""


class AuthenticationError(ChatClientError):
    """No current viewer identity where one is required."""


# Backend
class BackendError(ChatClientError):
    """A query, insert or update against the backend failed."""


class SendError(BackendError):
    """Message insert failed; the optimistic entry was rolled back."""


# Change feed
class ChangeFeedError(ChatClientError):
    """Realtime transport or channel failure."""
