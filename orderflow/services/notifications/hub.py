"""
Notification Fan-out Hub

Pub/sub hub that pushes order events to connected clients grouped by
audience (`all`, `admin`, `order:<id>`, `delivery:<id>`).

Delivery model:
    - Best-effort, at-most-once, fire-and-forget
    - No persistence or replay for disconnected clients
    - publish() never blocks: each connection owns a bounded queue drained
      by its own task, which also preserves per-connection event order

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from orderflow.services.notifications.base import ALL_GROUP, BaseConnection

logger = logging.getLogger(__name__)


@dataclass
class _Member:
    connection: BaseConnection
    queue: asyncio.Queue
    groups: set[str] = field(default_factory=set)
    pump: Optional[asyncio.Task] = None
    dropped: int = 0


class NotificationFanout:
    """
    Registry of connections and their group memberships.

    Every connection joins `all` on connect and leaves every group on
    disconnect. Membership changes are guarded by a lock so they can be
    called from any thread; sends run on the event loop.

    Example:
        >>> hub = NotificationFanout()
        >>> await hub.connect(ws_connection)
        >>> hub.subscribe(ws_connection.connection_id, "admin")
        >>> hub.publish("admin", "OrderStatusChanged", {"orderId": 7, ...})
        1
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._members: dict[str, _Member] = {}
        self._groups: dict[str, set[str]] = {}
        self._lock = threading.RLock()
        logger.info(f"NotificationFanout initialized (queue_size={queue_size})")

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def connect(self, connection: BaseConnection) -> None:
        """Register a connection and start its delivery task."""
        connection_id = connection.connection_id
        member = _Member(connection=connection, queue=asyncio.Queue(maxsize=self.queue_size))

        with self._lock:
            if connection_id in self._members:
                raise ValueError(f"Connection {connection_id} is already registered")
            self._members[connection_id] = member

        member.pump = asyncio.create_task(
            self._pump(member), name=f"fanout-pump-{connection_id}"
        )
        self.subscribe(connection_id, ALL_GROUP)
        logger.info(f"Client connected: {connection_id}")

    async def disconnect(self, connection_id: str) -> None:
        """Drop a connection from every group and stop its delivery task."""
        with self._lock:
            member = self._members.pop(connection_id, None)
            if member is None:
                return
            for group in member.groups:
                members = self._groups.get(group)
                if members is not None:
                    members.discard(connection_id)
                    if not members:
                        del self._groups[group]
            member.groups.clear()

        if member.pump is not None:
            member.pump.cancel()
            try:
                await member.pump
            except asyncio.CancelledError:
                pass
        logger.info(f"Client disconnected: {connection_id} (dropped events: {member.dropped})")

    async def close(self) -> None:
        """Disconnect everyone (application shutdown)."""
        for connection_id in list(self._members):
            await self.disconnect(connection_id)

    # -------------------------------------------------------------------------
    # Group membership
    # -------------------------------------------------------------------------

    def subscribe(self, connection_id: str, group: str) -> bool:
        """Add a connection to a group. Returns False for unknown connections."""
        with self._lock:
            member = self._members.get(connection_id)
            if member is None:
                logger.warning(f"Subscribe ignored for unknown connection {connection_id}")
                return False
            member.groups.add(group)
            self._groups.setdefault(group, set()).add(connection_id)
        logger.debug(f"Client {connection_id} joined group {group}")
        return True

    def unsubscribe(self, connection_id: str, group: str) -> bool:
        with self._lock:
            member = self._members.get(connection_id)
            if member is None or group not in member.groups:
                return False
            member.groups.discard(group)
            members = self._groups.get(group)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._groups[group]
        logger.debug(f"Client {connection_id} left group {group}")
        return True

    def groups_of(self, connection_id: str) -> set[str]:
        with self._lock:
            member = self._members.get(connection_id)
            return set(member.groups) if member else set()

    def members_of(self, group: str) -> set[str]:
        with self._lock:
            return set(self._groups.get(group, ()))

    @property
    def connection_count(self) -> int:
        return len(self._members)

    # -------------------------------------------------------------------------
    # Publishing
    # -------------------------------------------------------------------------

    def publish(self, group: str, event_name: str, payload: dict[str, Any]) -> int:
        """
        Queue an event for every current member of `group`.

        Never blocks and never raises for delivery problems: a member whose
        queue is full loses the event (logged).

        Returns:
            Number of connections the event was queued for
        """
        with self._lock:
            targets = [self._members[c] for c in self._groups.get(group, ()) if c in self._members]

        queued = 0
        for member in targets:
            try:
                member.queue.put_nowait((event_name, payload))
                queued += 1
            except asyncio.QueueFull:
                member.dropped += 1
                logger.warning(
                    f"Dropping {event_name} for slow client "
                    f"{member.connection.connection_id} (group={group})"
                )

        logger.debug(f"Published {event_name} to {group}: {queued} recipient(s)")
        return queued

    def publish_many(self, groups: Iterable[str], event_name: str, payload: dict[str, Any]) -> int:
        """Publish the same event to several groups, in the given order."""
        return sum(self.publish(group, event_name, payload) for group in groups)

    async def drain(self) -> None:
        """Wait until every queued event has been handed to its connection."""
        with self._lock:
            queues = [m.queue for m in self._members.values()]
        for queue in queues:
            await queue.join()

    async def _pump(self, member: _Member) -> None:
        connection_id = member.connection.connection_id
        while True:
            event_name, payload = await member.queue.get()
            try:
                await member.connection.send(event_name, payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Failed to deliver {event_name} to {connection_id}: {e}")
            finally:
                member.queue.task_done()
