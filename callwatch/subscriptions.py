"""
Subscription hub - live WebSocket connections and call status fan-out.

Each subscriber either receives every call event or is narrowed to one call
id by a SUBSCRIBE message. Delivery is best effort: a failed send drops that
subscriber and the rest still get the event.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)

CALL_STATUS_UPDATE = "CALL_STATUS_UPDATE"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Subscriber:
    websocket: WebSocket
    call_id: Optional[str] = None  # None = all calls

    def matches(self, call_id: str) -> bool:
        return self.call_id is None or self.call_id == call_id


class SubscriptionHub:
    """Owns the set of connected UI clients."""

    def __init__(self):
        self._subscribers: Dict[WebSocket, Subscriber] = {}

    async def connect(self, websocket: WebSocket) -> Subscriber:
        await websocket.accept()
        subscriber = Subscriber(websocket=websocket)
        self._subscribers[websocket] = subscriber
        logger.info(f"[WebSocket] Connected - Total connections: {len(self._subscribers)}")
        await websocket.send_json({
            "type": "CONNECTED",
            "message": "Connected to call status updates",
            "timestamp": _timestamp(),
        })
        return subscriber

    def disconnect(self, websocket: WebSocket) -> None:
        if self._subscribers.pop(websocket, None) is not None:
            logger.info(f"[WebSocket] Disconnected - Total connections: {len(self._subscribers)}")

    def subscribe(self, websocket: WebSocket, call_id: Optional[str]) -> None:
        """Narrow a connection to one call id, or widen it again with None."""
        subscriber = self._subscribers.get(websocket)
        if subscriber is None:
            return
        subscriber.call_id = call_id or None
        logger.info(f"[WebSocket] Subscriber filter set to {subscriber.call_id or 'all calls'}")

    async def handle_message(self, websocket: WebSocket, raw: str) -> None:
        """Handle one client message: PING or SUBSCRIBE."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"[WebSocket] Ignoring malformed message: {raw[:100]}")
            return
        if not isinstance(message, dict):
            logger.warning(f"[WebSocket] Ignoring non-object message: {raw[:100]}")
            return

        msg_type = message.get("type")
        if msg_type == "PING":
            await websocket.send_json({"type": "PONG", "timestamp": _timestamp()})
        elif msg_type == "SUBSCRIBE":
            call_id = message.get("callId")
            self.subscribe(websocket, call_id)
            await websocket.send_json({"type": "SUBSCRIBED", "callId": call_id or None})
        else:
            logger.debug(f"[WebSocket] Unknown message type: {msg_type}")

    async def broadcast(self, event: Dict[str, Any]) -> int:
        """Send a call event to every matching subscriber.

        Returns the number of subscribers the event was delivered to.
        """
        call_id = event["callId"]
        message = {"type": CALL_STATUS_UPDATE, **event}

        # Snapshot: subscribers may connect or drop while we await sends
        targets = [s for s in list(self._subscribers.values()) if s.matches(call_id)]
        failed: List[WebSocket] = []
        delivered = 0
        for subscriber in targets:
            try:
                await subscriber.websocket.send_json(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"[WebSocket] Send failed for call {call_id}, dropping subscriber: {e}")
                failed.append(subscriber.websocket)

        for websocket in failed:
            self.disconnect(websocket)

        logger.debug(f"Broadcast {call_id} status={event.get('status')} to {delivered} subscribers")
        return delivered

    def __len__(self) -> int:
        return len(self._subscribers)
