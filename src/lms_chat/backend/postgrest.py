"""Backend over the hosted PostgREST and auth HTTP APIs."""

from __future__ import annotations

import logging
from typing import Any

from lms_chat.backend.base import BaseBackend
from lms_chat.config import BackendConfig
from lms_chat.exceptions import BackendError

logger = logging.getLogger(__name__)

CONVERSATION_COLUMNS = ",".join([
    "id",
    "user1_id",
    "user2_id",
    "last_message_content",
    "last_message_at",
    "last_sender_id",
    "unread_count_user1",
    "unread_count_user2",
    "course_id",
])

_RESERVED = set(',.:()"\\ ')


def _quote(value: str) -> str:
    """Quote a filter value for PostgREST if it contains reserved characters."""
    if any(ch in _RESERVED for ch in value):
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        return f'"{escaped}"'
    return value


def in_filter(values: list[str]) -> str:
    return f"in.({','.join(_quote(v) for v in values)})"


def pair_filter(user_a: str, user_b: str) -> str:
    """``or`` filter matching messages between two users in either direction."""
    a, b = _quote(user_a), _quote(user_b)
    return (
        f"(and(sender_id.eq.{a},recipient_id.eq.{b}),"
        f"and(sender_id.eq.{b},recipient_id.eq.{a}))"
    )


class PostgrestBackend(BaseBackend):
    """Async PostgREST client for the messaging tables.

    Args:
        config: Project URL, keys and timeout.
        client: Optional pre-built ``httpx.AsyncClient`` (e.g. with a mock
            transport). When omitted one is created and owned by the backend.
    """

    def __init__(self, config: BackendConfig, client=None):
        try:
            import httpx
        except ImportError:
            raise ImportError(
                "httpx is required for PostgrestBackend. "
                "Install with: pip install lms-chat[rest]"
            )
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout)
        self._user_id: str | None = None

    @property
    def client(self):
        """Access the underlying httpx client for advanced usage."""
        return self._client

    def _headers(self, write: bool = False) -> dict[str, str]:
        token = self.config.access_token or self.config.anon_key
        headers = {
            "apikey": self.config.anon_key,
            "Authorization": f"Bearer {token}",
            "Accept-Profile": self.config.schema,
        }
        if write:
            headers["Content-Profile"] = self.config.schema
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        params: dict[str, str] | None = None,
        json: Any = None,
        prefer: str | None = None,
    ) -> Any:
        import httpx

        headers = self._headers(write=method != "GET")
        if prefer:
            headers["Prefer"] = prefer
        url = f"{self.config.rest_url}/{table}"
        try:
            response = await self._client.request(
                method, url, params=params, json=json, headers=headers
            )
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {table} failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("message", response.text)
            except ValueError:
                detail = response.text
            raise BackendError(f"{method} {table} returned {response.status_code}: {detail}")

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def current_user_id(self) -> str | None:
        if self._user_id is not None:
            return self._user_id
        if not self.config.access_token:
            return None

        import httpx

        try:
            response = await self._client.get(
                f"{self.config.auth_url}/user",
                headers={
                    "apikey": self.config.anon_key,
                    "Authorization": f"Bearer {self.config.access_token}",
                },
            )
        except httpx.HTTPError as e:
            raise BackendError(f"Failed to resolve current user: {e}") from e

        if response.status_code in (401, 403):
            logger.warning("Access token rejected; treating viewer as signed out")
            return None
        if response.status_code >= 400:
            raise BackendError(f"Auth lookup returned {response.status_code}")
        self._user_id = response.json().get("id") or None
        return self._user_id

    async def fetch_thread(
        self, user_a: str, user_b: str, course_id: str | None = None
    ) -> list[dict[str, Any]]:
        params = {
            "select": "*",
            "or": pair_filter(user_a, user_b),
            "order": "created_at.asc",
        }
        if course_id:
            params["course_id"] = f"eq.{_quote(course_id)}"
        return await self._request("GET", "messages", params=params) or []

    async def insert_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
        course_id: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "sender_id": sender_id,
            "recipient_id": recipient_id,
            "content": content,
        }
        if course_id:
            body["course_id"] = course_id
        rows = await self._request(
            "POST", "messages", json=body, prefer="return=representation"
        )
        if not rows:
            raise BackendError("Insert into messages returned no row")
        return rows[0] if isinstance(rows, list) else rows

    async def mark_messages_read(self, message_ids: list[str], read_at: str) -> None:
        if not message_ids:
            return
        await self._request(
            "PATCH",
            "messages",
            params={"id": in_filter(message_ids)},
            json={"read_at": read_at},
            prefer="return=minimal",
        )

    async def fetch_profile(self, profile_id: str) -> dict[str, Any] | None:
        rows = await self._request(
            "GET", "profiles", params={"select": "*", "id": f"eq.{_quote(profile_id)}"}
        )
        return rows[0] if rows else None

    async def fetch_profiles(self, profile_ids: list[str]) -> list[dict[str, Any]]:
        if not profile_ids:
            return []
        return await self._request(
            "GET", "profiles", params={"select": "*", "id": in_filter(profile_ids)}
        ) or []

    async def fetch_conversations(
        self, viewer_id: str, course_id: str | None = None
    ) -> list[dict[str, Any]]:
        viewer = _quote(viewer_id)
        params = {
            "select": CONVERSATION_COLUMNS,
            "or": f"(user1_id.eq.{viewer},user2_id.eq.{viewer})",
            "order": "last_message_at.desc",
        }
        if course_id:
            params["course_id"] = f"eq.{_quote(course_id)}"
        return await self._request("GET", "conversations", params=params) or []

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
