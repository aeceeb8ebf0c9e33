"""
Real-Time Notification Types

Connection interface, group names and event payload builders shared by the
fan-out hub and its transports.

Event payloads are deliberately minimal projections of an order: broad
subscribers (`all`) must never receive the full record.

Author: Khalil Bannouri
Version: 1.0.0
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional


# =============================================================================
# GROUPS
# =============================================================================

ALL_GROUP = "all"
ADMIN_GROUP = "admin"


def order_group(order_id: int) -> str:
    """Group for clients watching one order (customer tracking page)."""
    return f"order:{order_id}"


def delivery_group(delivery_person_id: int) -> str:
    """Group for one courier's devices."""
    return f"delivery:{delivery_person_id}"


# =============================================================================
# EVENTS
# =============================================================================

ORDER_CREATED = "OrderCreated"
ORDER_UPDATED = "OrderUpdated"
ORDER_STATUS_CHANGED = "OrderStatusChanged"
ORDER_LOCATION_UPDATED = "OrderLocationUpdated"


def status_changed_payload(
    order_id: int,
    status: str,
    timestamp: datetime,
    delivery_person_name: Optional[str] = None,
) -> dict[str, Any]:
    """`{orderId, status, deliveryPersonName, timestamp}` as sent to every group."""
    return {
        "orderId": order_id,
        "status": status,
        "deliveryPersonName": delivery_person_name,
        "timestamp": timestamp.isoformat(),
    }


def location_updated_payload(
    order_id: int,
    latitude: float,
    longitude: float,
    timestamp: datetime,
    estimated_delivery_minutes: Optional[int] = None,
) -> dict[str, Any]:
    return {
        "orderId": order_id,
        "latitude": latitude,
        "longitude": longitude,
        "estimatedDeliveryMinutes": estimated_delivery_minutes,
        "timestamp": timestamp.isoformat(),
    }


# =============================================================================
# CONNECTIONS
# =============================================================================

class BaseConnection(ABC):
    """One connected real-time client (websocket, test recorder...)."""

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique id assigned at connect time."""
        pass

    @abstractmethod
    async def send(self, event_name: str, payload: dict[str, Any]) -> None:
        """Deliver one event. May raise if the peer is gone."""
        pass
