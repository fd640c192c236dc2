"""Event bus that records supervisor events and broadcasts them to observers."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from typing import Any, Callable, Optional

from ..domain.models import now_iso
from .ws import WebSocketHub, hub as default_hub

logger = logging.getLogger(__name__)

EventListener = Callable[[dict[str, Any]], None]


class EventBus:
    """Keep a bounded in-memory event history and fan events out to subscribers.

    Broadcasting is fire-and-forget: listener failures are logged and the
    websocket hub schedules delivery on its own loop, so ``emit`` never blocks
    the decision loop on slow clients.
    """
    def __init__(self, hub: Optional[WebSocketHub] = None, history_size: int = 500) -> None:
        """Initialize the EventBus.

        Args:
            hub (Optional[WebSocketHub]): Websocket hub to publish into; defaults to the module hub.
            history_size (int): Number of recent events retained for ``recent``.
        """
        self._hub = hub if hub is not None else default_hub
        self._history: deque[dict[str, Any]] = deque(maxlen=max(int(history_size), 1))
        self._listeners: list[EventListener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register an in-process listener and return its unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Record an event and publish it to listeners and connected clients.

        Args:
            channel (str): Channel for this call.
            event_type (str): Event type for this call.
            entity_id (str): Identifier for the related entity, usually a session id.
            payload (dict[str, Any]): Serialized payload consumed by observers.

        Returns:
            dict[str, Any]: The event envelope that was published.
        """
        event = {
            "id": f"evt-{uuid.uuid4().hex[:10]}",
            "ts": now_iso(),
            "channel": channel,
            "type": event_type,
            "entity_id": entity_id,
            "payload": payload,
        }
        with self._lock:
            self._history.append(event)
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.debug("Event listener failed for %s/%s", channel, event_type, exc_info=True)
        self._hub.publish_sync(event)
        return event

    def recent(self, *, channel: Optional[str] = None, entity_id: Optional[str] = None, limit: int = 100) -> list[dict[str, Any]]:
        """Return the newest recorded events, oldest first, optionally filtered."""
        with self._lock:
            events = list(self._history)
        if channel:
            events = [e for e in events if e["channel"] == channel]
        if entity_id:
            events = [e for e in events if e["entity_id"] == entity_id]
        return events[-limit:] if limit > 0 else []
