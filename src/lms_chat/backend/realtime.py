"""Change feed over the hosted Realtime websocket (Phoenix channel protocol)."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any

from lms_chat.backend.base import BaseChangeFeed, FeedCallback
from lms_chat.config import BackendConfig
from lms_chat.exceptions import ChangeFeedError
from lms_chat.models import ChangeEvent, EventKind

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "1.0.0"
HEARTBEAT_INTERVAL = 25.0
JOIN_TIMEOUT = 10.0


def join_frame(
    topic: str, table: str, ref: str, schema: str = "public", access_token: str | None = None
) -> dict[str, Any]:
    """``phx_join`` frame subscribing ``topic`` to all changes on ``table``."""
    payload: dict[str, Any] = {
        "config": {
            "broadcast": {"self": False},
            "presence": {"key": ""},
            "postgres_changes": [{"event": "*", "schema": schema, "table": table}],
        }
    }
    if access_token:
        payload["access_token"] = access_token
    return {"topic": topic, "event": "phx_join", "payload": payload, "ref": ref, "join_ref": ref}


def leave_frame(topic: str, ref: str) -> dict[str, Any]:
    return {"topic": topic, "event": "phx_leave", "payload": {}, "ref": ref}


def heartbeat_frame(ref: str) -> dict[str, Any]:
    return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": ref}


def parse_change(frame: dict[str, Any]) -> ChangeEvent | None:
    """Translate a ``postgres_changes`` frame into a ChangeEvent.

    Returns None for any other frame or an unknown change type.
    """
    if frame.get("event") != "postgres_changes":
        return None
    data = (frame.get("payload") or {}).get("data") or {}
    try:
        kind = EventKind(data.get("type", ""))
    except ValueError:
        return None
    return ChangeEvent(
        kind=kind,
        table=data.get("table", ""),
        new=data.get("record") or {},
        old=data.get("old_record") or {},
        commit_timestamp=data.get("commit_timestamp"),
    )


@dataclass
class _Channel:
    topic: str
    table: str
    callback: FeedCallback


class RealtimeChangeFeed(BaseChangeFeed):
    """One websocket connection multiplexing a channel per ``listen`` call.

    The connection is opened lazily on the first ``listen``. A dropped
    connection is logged and not re-established.

    Args:
        config: Project URL, keys and schema.
        session: Optional ``aiohttp.ClientSession``; created and owned if omitted.
        heartbeat_interval: Seconds between Phoenix heartbeats.
    """

    def __init__(
        self,
        config: BackendConfig,
        session=None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ):
        try:
            import aiohttp  # noqa: F401
        except ImportError:
            raise ImportError(
                "aiohttp is required for RealtimeChangeFeed. "
                "Install with: pip install lms-chat[realtime]"
            )
        self.config = config
        self.heartbeat_interval = heartbeat_interval
        self._session = session
        self._owns_session = session is None
        self._ws = None
        self._refs = itertools.count(1)
        self._channels: dict[str, _Channel] = {}
        self._pending_replies: dict[str, asyncio.Future] = {}
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._deliveries: set[asyncio.Task] = set()
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def _next_ref(self) -> str:
        return str(next(self._refs))

    async def _ensure_connected(self) -> None:
        import aiohttp

        async with self._connect_lock:
            if self.connected:
                return
            if self._session is None:
                self._session = aiohttp.ClientSession()
            try:
                self._ws = await self._session.ws_connect(
                    self.config.realtime_url,
                    params={"apikey": self.config.anon_key, "vsn": PROTOCOL_VERSION},
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise ChangeFeedError(f"Failed to connect to realtime: {e}") from e
            logger.debug(f"Connected to {self.config.realtime_url}")
            self._reader_task = asyncio.create_task(self._read_loop())
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def _send(self, frame: dict[str, Any]) -> None:
        if not self.connected:
            raise ChangeFeedError("Realtime connection is not open")
        await self._ws.send_json(frame)

    async def _request(self, frame: dict[str, Any]) -> dict[str, Any]:
        """Send a frame and wait for the matching ``phx_reply``."""
        future = asyncio.get_running_loop().create_future()
        self._pending_replies[frame["ref"]] = future
        try:
            await self._send(frame)
            return await asyncio.wait_for(future, timeout=JOIN_TIMEOUT)
        except asyncio.TimeoutError as e:
            raise ChangeFeedError(f"No reply to {frame['event']} on {frame['topic']}") from e
        finally:
            self._pending_replies.pop(frame["ref"], None)

    async def listen(self, channel: str, table: str, callback: FeedCallback) -> str:
        await self._ensure_connected()
        ref = self._next_ref()
        topic = f"realtime:{channel}:{ref}"
        self._channels[topic] = _Channel(topic=topic, table=table, callback=callback)
        reply = await self._request(
            join_frame(topic, table, ref, self.config.schema, self.config.access_token)
        )
        status = (reply.get("payload") or {}).get("status")
        if status != "ok":
            self._channels.pop(topic, None)
            raise ChangeFeedError(f"Join of {topic} rejected: {reply.get('payload')}")
        logger.debug(f"Joined {topic} for table {table}")
        return topic

    async def remove(self, token: str) -> None:
        if self._channels.pop(token, None) is None:
            return
        if self.connected:
            try:
                await self._send(leave_frame(token, self._next_ref()))
            except ChangeFeedError as e:
                logger.warning(f"Could not leave {token}: {e}")
        logger.debug(f"Left {token}")

    async def _read_loop(self) -> None:
        import aiohttp

        async for msg in self._ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    frame = json.loads(msg.data)
                except ValueError:
                    logger.warning("Dropping non-JSON realtime frame")
                    continue
                self._handle_frame(frame)
            elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                break
        if self._channels:
            logger.warning(
                f"Realtime connection lost; {len(self._channels)} channel(s) "
                "will not receive further updates"
            )
        for future in self._pending_replies.values():
            if not future.done():
                future.set_exception(ChangeFeedError("Realtime connection lost"))

    def _handle_frame(self, frame: dict[str, Any]) -> None:
        event = frame.get("event")
        if event == "phx_reply":
            future = self._pending_replies.get(frame.get("ref"))
            if future and not future.done():
                future.set_result(frame)
            return
        if event == "phx_error":
            logger.warning(f"Channel error on {frame.get('topic')}")
            return

        change = parse_change(frame)
        if change is None:
            return
        channel = self._channels.get(frame.get("topic"))
        if channel is None:
            return
        if not change.table:
            change.table = channel.table
        task = asyncio.create_task(channel.callback(change))
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)

    async def _heartbeat_loop(self) -> None:
        while self.connected:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._send(heartbeat_frame(self._next_ref()))
            except ChangeFeedError:
                return

    async def aclose(self) -> None:
        for topic in list(self._channels):
            await self.remove(topic)
        for task in (self._heartbeat_task, self._reader_task):
            if task is not None:
                task.cancel()
        if self._ws is not None:
            await self._ws.close()
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._ws = None
