"""Backend configuration read from the environment."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from urllib.parse import urlparse

from lms_chat.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = "public"
DEFAULT_TIMEOUT = 10.0
# Window over which inbox refresh signals are coalesced
DEFAULT_DEBOUNCE_SECONDS = 0.3


@dataclass
class BackendConfig:
    """Connection settings for the hosted backend.

    Args:
        url: Project base URL, e.g. ``https://abc.supabase.co``.
        anon_key: Public API key sent as ``apikey`` on every request.
        access_token: User JWT. Without it the backend has no viewer identity.
        schema: Database schema holding the messaging tables.
        timeout: HTTP timeout in seconds.
        debounce_seconds: Inbox refresh coalescing window.
    """

    url: str
    anon_key: str
    access_token: str | None = None
    schema: str = DEFAULT_SCHEMA
    timeout: float = DEFAULT_TIMEOUT
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS

    @classmethod
    def from_env(cls) -> BackendConfig:
        """Build a config from ``SUPABASE_*`` and ``LMS_CHAT_*`` variables."""
        url = os.environ.get("SUPABASE_URL", "").strip()
        anon_key = os.environ.get("SUPABASE_ANON_KEY", "").strip()
        if not url or not anon_key:
            raise ConfigurationError(
                "Backend URL and anon key are required. "
                "Set SUPABASE_URL and SUPABASE_ANON_KEY in your environment."
            )
        return cls(
            url=url,
            anon_key=anon_key,
            access_token=os.environ.get("SUPABASE_ACCESS_TOKEN") or None,
            schema=os.environ.get("LMS_CHAT_SCHEMA", DEFAULT_SCHEMA),
            timeout=_float_env("LMS_CHAT_TIMEOUT", DEFAULT_TIMEOUT),
            debounce_seconds=_float_env("LMS_CHAT_DEBOUNCE_SECONDS", DEFAULT_DEBOUNCE_SECONDS),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.url) and bool(self.anon_key)

    @property
    def rest_url(self) -> str:
        return f"{self.url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.url.rstrip('/')}/auth/v1"

    @property
    def realtime_url(self) -> str:
        parsed = urlparse(self.url)
        scheme = "wss" if parsed.scheme == "https" else "ws"
        return f"{scheme}://{parsed.netloc}{parsed.path.rstrip('/')}/realtime/v1/websocket"


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric {name}={raw!r}, using {default}")
        return default
