"""
Mock Notification Connection

Records every event instead of sending it over the network.
Used by the simulation script and the test-suite to observe the fan-out.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
import random
import uuid
from typing import Any, Optional

from orderflow.services.notifications.base import BaseConnection

logger = logging.getLogger(__name__)


class RecordingConnection(BaseConnection):
    """In-process connection that keeps received events in a list."""

    def __init__(
        self,
        connection_id: Optional[str] = None,
        failure_rate: float = 0.0,
        latency: float = 0.0,
    ):
        self._connection_id = connection_id or f"conn_mock_{uuid.uuid4().hex[:12]}"
        self.failure_rate = failure_rate
        self.latency = latency
        self.events: list[tuple[str, dict[str, Any]]] = []

    @property
    def connection_id(self) -> str:
        return self._connection_id

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    async def send(self, event_name: str, payload: dict[str, Any]) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._should_fail():
            raise ConnectionError(f"Simulated send failure to {self._connection_id}")
        self.events.append((event_name, payload))
        logger.debug(f"Mock connection {self._connection_id} received {event_name}")

    def events_named(self, event_name: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event_name]
