"""
Order Lifecycle Domain Types

Plain dataclasses shared by the state machine, the stores and the
orchestrator. Nothing in this module performs I/O.

Author: Khalil Bannouri
Version: 1.0.0
"""

import enum
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


class OrderStatus(str, enum.Enum):
    """Order status workflow: pending -> preparing -> delivering -> completed."""
    PENDING = "pending"
    PREPARING = "preparing"
    DELIVERING = "delivering"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses shown on the kitchen/courier boards
ACTIVE_STATUSES = (OrderStatus.PENDING, OrderStatus.PREPARING, OrderStatus.DELIVERING)

# Archiving is only allowed once an order can no longer move
FINAL_STATUSES = (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


class Actor:
    """Well-known values for StatusHistoryEntry.changed_by."""
    ADMIN = "admin"
    DELIVERY = "delivery"
    SYSTEM = "system"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class GeoPoint:
    """A latitude/longitude pair stamped with the time it was reported."""
    latitude: float
    longitude: float
    updated_at: datetime


@dataclass(frozen=True)
class LocationSample:
    """One position fix produced by the courier's device."""
    latitude: float
    longitude: float
    captured_at: datetime
    accuracy: Optional[float] = None


@dataclass(frozen=True)
class StatusHistoryEntry:
    """One accepted transition. Created once, never mutated."""
    from_status: Optional[OrderStatus]
    to_status: OrderStatus
    changed_by: str
    changed_at: datetime
    note: Optional[str] = None


@dataclass
class Order:
    """
    Authoritative order record.

    `status` is a projection of the last entry in `status_history`; only the
    state machine moves it. `version` increases on every save and backs the
    optimistic concurrency check in the stores.
    """
    id: int
    status: OrderStatus = OrderStatus.PENDING
    total: Decimal = Decimal("0.00")
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    delivery_person_id: Optional[int] = None
    delivery_person_name: Optional[str] = None
    payment_method: Optional[str] = None
    requires_receipt: bool = False
    receipt_verified: bool = False
    receipt_verified_at: Optional[datetime] = None
    receipt_verified_by: Optional[str] = None
    delivery_location: Optional[GeoPoint] = None
    customer_location: Optional[GeoPoint] = None
    estimated_delivery_minutes: Optional[int] = None
    is_archived: bool = False
    status_history: list[StatusHistoryEntry] = field(default_factory=list)
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    def copy(self) -> "Order":
        """Detached copy; the history list is not shared with the original."""
        return replace(self, status_history=list(self.status_history))

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


@dataclass(frozen=True)
class DeliveryPerson:
    id: int
    name: str
    is_active: bool = True


@dataclass
class OrderPage:
    """One page of a filtered order listing."""
    orders: list[Order]
    total: int
    page: int
    page_size: int


@dataclass
class WebhookSubscription:
    """
    External endpoint registered for one event type.

    Counters are written only by the webhook dispatcher. A subscription with
    id 0 is synthesized from settings and never persisted.
    """
    id: int
    url: str
    event_type: str
    secret: Optional[str] = None
    is_active: bool = True
    success_count: int = 0
    failure_count: int = 0
    last_triggered_at: Optional[datetime] = None
    headers: Optional[dict[str, str]] = None
    created_at: Optional[datetime] = None

    @property
    def is_persisted(self) -> bool:
        return self.id > 0


EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in kilometers."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))
