"""Websocket fan-out of supervisor events, filtered by channel and session."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from fastapi import WebSocket

logger = logging.getLogger(__name__)

CHANNELS = {"sessions", "coordinator", "chat", "system"}


def _session_ids(message: dict[str, Any]) -> set[str]:
    raw = list(message.get("session_ids") or [])
    raw.append(message.get("session_id"))
    return {str(value).strip() for value in raw if value is not None and str(value).strip()}


@dataclass
class _Subscriber:
    ws: WebSocket
    channels: set[str] = field(default_factory=set)
    session_ids: set[str] = field(default_factory=set)

    def wants(self, event: dict[str, Any]) -> bool:
        """System events reach everyone; others need the channel and, if filtered, the session."""
        channel = event.get("channel")
        if channel == "system":
            return True
        if channel not in self.channels:
            return False
        return not self.session_ids or str(event.get("entity_id") or "") in self.session_ids

    def apply(self, message: dict[str, Any]) -> None:
        action = message.get("action")
        channels = set(message.get("channels") or [])
        if action == "subscribe":
            self.channels |= channels & CHANNELS
            self.session_ids |= _session_ids(message)
        elif action == "unsubscribe":
            self.channels -= channels
            self.session_ids -= _session_ids(message)


class WebSocketHub:
    """Hold websocket subscribers and deliver events published from any thread."""

    def __init__(self) -> None:
        self._subscribers: dict[int, _Subscriber] = {}
        self._seq = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._lock = threading.Lock()

    @property
    def client_count(self) -> int:
        return len(self._subscribers)

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Remember the loop that ``publish_sync`` schedules deliveries on."""
        with self._lock:
            self._loop = loop

    async def handle_connection(self, websocket: WebSocket) -> None:
        """Serve one client: a ``connected`` greeting, then subscribe/unsubscribe/ping messages."""
        self.attach_loop(asyncio.get_running_loop())
        await websocket.accept()
        subscriber = _Subscriber(ws=websocket)
        key = id(websocket)
        self._subscribers[key] = subscriber
        try:
            await websocket.send_json({"channel": "system", "type": "connected", "payload": {"channels": sorted(CHANNELS)}})
            while True:
                message = json.loads(await websocket.receive_text())
                if not isinstance(message, dict):
                    continue
                if message.get("action") == "ping":
                    await websocket.send_json({"channel": "system", "type": "pong", "payload": {}})
                else:
                    subscriber.apply(message)
        except Exception:
            logger.debug("WebSocket client %s disconnected", key, exc_info=True)
        finally:
            self._subscribers.pop(key, None)

    async def publish(self, event: dict[str, Any]) -> None:
        """Deliver one event to every matching subscriber, dropping dead connections."""
        self._seq += 1
        text = json.dumps({**event, "seq": self._seq}, default=str)
        for key, subscriber in list(self._subscribers.items()):
            if not subscriber.wants(event):
                continue
            try:
                await subscriber.ws.send_text(text)
            except Exception:
                self._subscribers.pop(key, None)

    def publish_sync(self, event: dict[str, Any]) -> None:
        """Hand an event from a worker thread to the serving loop; dropped when none runs."""
        with self._lock:
            serving = self._loop
        if serving is not None and serving.is_running():
            asyncio.run_coroutine_threadsafe(self.publish(event), serving)
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Dropping %s event: no running event loop", event.get("type"))
            return
        self.attach_loop(current)
        current.create_task(self.publish(event))


hub = WebSocketHub()
