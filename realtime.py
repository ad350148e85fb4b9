"""
Supabase Realtime listener.

Joins a Phoenix channel over a websocket and reacts to postgres_changes events:
any change to the user's trackers, or to any observation, triggers a pull and
then the caller's refresh callback.

The socket runs on a daemon thread with its own asyncio loop so callers stay
synchronous. Change handlers run on the loop's default executor, so several
pulls can be in flight at once; there is no reconnect beyond what the
websocket library does.
"""

import asyncio
import itertools
import json
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import websockets

from cloud_sync import sync_from_cloud

logger = logging.getLogger(__name__)

# Type alias for change handlers
ChangeHandler = Callable[[Dict[str, Any]], None]

CHANNEL_NAME = "trackers-changes"


def _log_dispatch_error(future):
    if not future.cancelled() and future.exception() is not None:
        logger.error(f"Realtime dispatch failed: {future.exception()}")


def tracker_changes_filter(user_id: str) -> List[Dict[str, str]]:
    """postgres_changes bindings: this user's trackers and every observation row.

    The observations binding is not scoped to the user, so other users' edits
    also trigger a pull.
    """
    return [
        {"event": "*", "schema": "public", "table": "trackers", "filter": f"user_id=eq.{user_id}"},
        {"event": "*", "schema": "public", "table": "observations"},
    ]


class RealtimeChannel:
    """One Realtime channel subscription."""

    def __init__(self, url: str, channel: str, changes: List[Dict[str, str]],
                 on_change: ChangeHandler, access_token: Optional[str] = None,
                 heartbeat_interval: float = 30.0):
        self.url = url
        self.topic = f"realtime:{channel}"
        self.changes = changes
        self.on_change = on_change
        self.access_token = access_token
        self.heartbeat_interval = heartbeat_interval

        self._refs = itertools.count(1)
        self._join_ref: Optional[str] = None
        self._websocket: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._stopping = False
        self.joined = False

    def _next_ref(self) -> str:
        return str(next(self._refs))

    def build_join_message(self) -> Dict[str, Any]:
        self._join_ref = self._next_ref()
        payload: Dict[str, Any] = {
            "config": {
                "broadcast": {"ack": False, "self": False},
                "presence": {"key": ""},
                "postgres_changes": self.changes,
            },
        }
        if self.access_token:
            payload["access_token"] = self.access_token
        return {
            "topic": self.topic,
            "event": "phx_join",
            "payload": payload,
            "ref": self._join_ref,
            "join_ref": self._join_ref,
        }

    def build_heartbeat_message(self) -> Dict[str, Any]:
        return {"topic": "phoenix", "event": "heartbeat", "payload": {}, "ref": self._next_ref()}

    def build_leave_message(self) -> Dict[str, Any]:
        return {"topic": self.topic, "event": "phx_leave", "payload": {},
                "ref": self._next_ref(), "join_ref": self._join_ref}

    def handle_message(self, message: Dict[str, Any]) -> bool:
        """Process one decoded server message. Returns True if a change was dispatched."""
        if not isinstance(message, dict):
            logger.debug(f"Ignoring realtime frame that is not an object: {message!r}")
            return False
        if message.get("topic") != self.topic:
            return False

        event = message.get("event")
        if event == "phx_reply" and message.get("ref") == self._join_ref:
            status = (message.get("payload") or {}).get("status")
            self.joined = status == "ok"
            if self.joined:
                logger.info(f"Subscribed to {self.topic}")
            else:
                logger.error(f"Join of {self.topic} rejected: {message.get('payload')}")
            return False
        if event in ("phx_error", "phx_close"):
            logger.warning(f"Channel {self.topic} {event}")
            self.joined = False
            return False
        if event != "postgres_changes":
            return False

        data = (message.get("payload") or {}).get("data") or {}
        logger.debug(f"Change on {data.get('table')}: {data.get('type')}")
        try:
            self.on_change(data)
        except Exception as e:
            logger.error(f"Realtime change handler failed: {e}")
        return True

    # --- Connection ---

    def subscribe(self):
        """Open the socket on a background thread and join the channel."""
        if self._thread is not None:
            return
        self._stopping = False
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_async_loop, daemon=True)
        self._thread.start()

    def _run_async_loop(self):
        loop = self._loop
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._run())
        except Exception as e:
            logger.error(f"Realtime loop failed: {e}")
        finally:
            loop.close()

    async def _run(self):
        async with websockets.connect(self.url) as ws:
            self._websocket = ws
            await ws.send(json.dumps(self.build_join_message()))
            heartbeat = asyncio.ensure_future(self._heartbeat_loop())
            try:
                await self._receive_loop()
            finally:
                heartbeat.cancel()
                self._websocket = None

    async def _heartbeat_loop(self):
        while not self._stopping and self._websocket is not None:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self._websocket.send(json.dumps(self.build_heartbeat_message()))
            except websockets.ConnectionClosed:
                return

    async def _receive_loop(self):
        loop = asyncio.get_event_loop()
        while not self._stopping and self._websocket is not None:
            try:
                raw = await self._websocket.recv()
            except websockets.ConnectionClosed:
                if not self._stopping:
                    logger.warning("Realtime connection closed")
                return
            try:
                message = json.loads(raw)
            except ValueError:
                logger.debug(f"Ignoring non-JSON realtime frame: {raw!r}")
                continue
            # Pulls block on HTTP; keep them off the socket loop
            future = loop.run_in_executor(None, self.handle_message, message)
            future.add_done_callback(_log_dispatch_error)

    async def _close(self):
        ws = self._websocket
        if ws is None:
            return
        try:
            await ws.send(json.dumps(self.build_leave_message()))
        except websockets.ConnectionClosed:
            pass
        await ws.close()

    def unsubscribe(self):
        """Leave the channel and close the socket."""
        self._stopping = True
        loop, thread = self._loop, self._thread
        if loop is not None and loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._close(), loop)
            try:
                future.result(timeout=5.0)
            except Exception as e:
                logger.debug(f"Error closing realtime socket: {e}")
        if thread is not None:
            thread.join(timeout=5.0)
        self._loop = None
        self._thread = None
        self.joined = False
        logger.info(f"Unsubscribed from {self.topic}")


def setup_realtime_listeners(db, client, user_id: Optional[str], on_update: Callable[[], None],
                             media_dir=None) -> Callable[[], None]:
    """Pull and call on_update whenever the user's cloud data changes.

    Returns a function that tears the subscription down. Anonymous users get a no-op.
    """
    if not user_id:
        return lambda: None

    def on_change(_change: Dict[str, Any]):
        sync_from_cloud(db, client, user_id, media_dir=media_dir)
        on_update()

    channel = RealtimeChannel(
        client.realtime_url,
        CHANNEL_NAME,
        tracker_changes_filter(user_id),
        on_change,
        access_token=getattr(client, "access_token", None),
    )
    channel.subscribe()
    return channel.unsubscribe
