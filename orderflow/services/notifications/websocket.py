"""
WebSocket Connection

Adapts a FastAPI/Starlette WebSocket to the hub's connection interface.
Frames are JSON objects: `{"event": "<name>", "data": {...}}`.
"""

import uuid
from typing import Any

from fastapi import WebSocket

from orderflow.services.notifications.base import BaseConnection


class WebSocketConnection(BaseConnection):
    """Real-time client connected over a websocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._connection_id = f"ws_{uuid.uuid4().hex[:16]}"

    @property
    def connection_id(self) -> str:
        return self._connection_id

    async def send(self, event_name: str, payload: dict[str, Any]) -> None:
        await self.websocket.send_json({"event": event_name, "data": payload})
