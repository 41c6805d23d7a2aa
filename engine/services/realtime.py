"""
Realtime change stream WebSocket client

Speaks the Phoenix channel protocol used by the realtime server in front of
PostgREST.

Connection flow:
1. Connect to <realtime_url>/websocket?apikey=<key>&vsn=1.0.0
2. Per table, send phx_join on topic realtime:public:<table> with a
   postgres_changes config (optional `column=op.value` filter)
3. Receive postgres_changes messages whose payload.data is the raw change
   (type/table/record/old_record/commit_timestamp)
4. Send a heartbeat on topic "phoenix" every 25 seconds
"""
import asyncio
import itertools
import inspect
from typing import Any, Dict, List, Optional, Tuple

import aiohttp
import orjson

from core.errors import TransientNetworkError
from core.logging import get_logger
from services.remote_store import EventCallback, Filters, Subscription, normalize_filter

logger = get_logger(__name__)

HEARTBEAT_INTERVAL = 25.0
PROTOCOL_VERSION = "1.0.0"


def channel_topic(table: str, schema: str = "public") -> str:
    return f"realtime:{schema}:{table}"


def filter_expression(filters: Optional[Filters]) -> Optional[str]:
    """Realtime supports a single `column=op.value` filter per channel."""
    if not filters:
        return None
    if len(filters) > 1:
        logger.warning("Realtime supports one filter per channel, using the first",
                       filters=list(filters))
    column, raw = next(iter(filters.items()))
    op, operand = normalize_filter(raw)
    if op == "in":
        return f"{column}=in.({','.join(str(v) for v in operand)})"
    return f"{column}={op}.{operand}"


def join_message(table: str, filters: Optional[Filters], ref: str) -> Dict[str, Any]:
    change: Dict[str, Any] = {"event": "*", "schema": "public", "table": table}
    expression = filter_expression(filters)
    if expression:
        change["filter"] = expression
    return {
        "topic": channel_topic(table),
        "event": "phx_join",
        "payload": {"config": {"postgres_changes": [change]}},
        "ref": ref,
        "join_ref": ref,
    }


def extract_change(message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Raw change payload of a postgres_changes message, or None."""
    if message.get("event") != "postgres_changes":
        return None
    payload = message.get("payload") or {}
    data = payload.get("data")
    return data if isinstance(data, dict) else None


class RealtimeClient:
    """One websocket, many table channels."""

    def __init__(self, url: str, api_key: str, heartbeat_interval: float = HEARTBEAT_INTERVAL,
                 session: Optional[aiohttp.ClientSession] = None):
        self.url = f"{url}/websocket?apikey={api_key}&vsn={PROTOCOL_VERSION}"
        self.heartbeat_interval = heartbeat_interval
        self.session = session
        self._owns_session = session is None
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None

        self._refs = itertools.count(1)
        # topic -> list of (token, callback)
        self._channels: Dict[str, List[Tuple[int, EventCallback]]] = {}
        self._receive_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._running = False
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._running and self.ws is not None and not self.ws.closed

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.connected:
                return
            try:
                if self.session is None:
                    timeout = aiohttp.ClientTimeout(total=None, connect=10)
                    self.session = aiohttp.ClientSession(timeout=timeout)
                self.ws = await self.session.ws_connect(self.url, autoping=True)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.error("Realtime connection failed", error=str(e))
                raise TransientNetworkError(f"Realtime connection failed: {e}") from e

            self._running = True
            self._receive_task = asyncio.create_task(self._receive_loop())
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
            logger.info("Realtime connected")

    async def close(self) -> None:
        self._running = False
        for task in [self._heartbeat_task, self._receive_task]:
            if task and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if self.ws and not self.ws.closed:
            await self.ws.close()
        if self._owns_session and self.session and not self.session.closed:
            await self.session.close()
        self._channels.clear()
        logger.info("Realtime disconnected")

    # =========================================================================
    # Channels
    # =========================================================================

    async def subscribe(self, table: str, filters: Optional[Filters],
                        on_event: EventCallback) -> Subscription:
        await self.connect()
        topic = channel_topic(table)
        token = next(self._refs)
        listeners = self._channels.setdefault(topic, [])
        if not listeners:
            await self._send(join_message(table, filters, str(token)))
        listeners.append((token, on_event))
        logger.info("Realtime channel joined", topic=topic)

        async def _leave():
            remaining = [entry for entry in self._channels.get(topic, []) if entry[0] != token]
            if remaining:
                self._channels[topic] = remaining
                return
            self._channels.pop(topic, None)
            if self.connected:
                await self._send({"topic": topic, "event": "phx_leave", "payload": {},
                                  "ref": str(next(self._refs))})

        return Subscription(table, _leave)

    async def _send(self, message: Dict[str, Any]) -> None:
        if not self.connected:
            raise TransientNetworkError("Realtime socket is not connected")
        await self.ws.send_str(orjson.dumps(message).decode())

    # =========================================================================
    # Background Tasks
    # =========================================================================

    async def _receive_loop(self):
        try:
            while self._running and self.ws and not self.ws.closed:
                msg = await self.ws.receive()

                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = orjson.loads(msg.data)
                    except orjson.JSONDecodeError:
                        logger.warning("Realtime sent invalid JSON")
                        continue
                    await self._handle_message(data)

                elif msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED,
                                  aiohttp.WSMsgType.ERROR):
                    logger.warning("Realtime connection closed by server", type=str(msg.type))
                    break
        except asyncio.CancelledError:
            pass
        finally:
            self._running = False

    async def _heartbeat_loop(self):
        try:
            while self.connected:
                await asyncio.sleep(self.heartbeat_interval)
                try:
                    await self._send({"topic": "phoenix", "event": "heartbeat",
                                      "payload": {}, "ref": str(next(self._refs))})
                except (TransientNetworkError, ConnectionError, aiohttp.ClientError) as e:
                    logger.error("Realtime heartbeat failed", error=str(e))
                    self._running = False
                    break
        except asyncio.CancelledError:
            pass

    async def _handle_message(self, message: Dict[str, Any]) -> None:
        event = message.get("event")
        topic = message.get("topic", "")

        if event == "phx_reply":
            status = (message.get("payload") or {}).get("status")
            if status != "ok":
                logger.warning("Realtime request rejected", topic=topic, payload=message.get("payload"))
            return
        if event == "phx_error":
            logger.error("Realtime channel error", topic=topic)
            return

        change = extract_change(message)
        if change is None:
            return
        for _, callback in list(self._channels.get(topic, [])):
            try:
                result = callback(change)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Change event callback failed", topic=topic, error=str(e))
