"""
Notification Service Factory

Returns the process-wide real-time fan-out hub.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.notifications.base import (
    ADMIN_GROUP,
    ALL_GROUP,
    ORDER_CREATED,
    ORDER_LOCATION_UPDATED,
    ORDER_STATUS_CHANGED,
    ORDER_UPDATED,
    BaseConnection,
    delivery_group,
    location_updated_payload,
    order_group,
    status_changed_payload,
)
from orderflow.services.notifications.hub import NotificationFanout
from orderflow.services.notifications.mock import RecordingConnection

logger = logging.getLogger(__name__)


@lru_cache()
def get_notification_fanout() -> NotificationFanout:
    """Get the configured notification hub."""
    settings = get_settings()
    logger.info("Notification Service: Using in-process NotificationFanout")
    return NotificationFanout(queue_size=settings.notification_queue_size)


def reset_notification_service() -> None:
    """Clear the cached hub instance."""
    get_notification_fanout.cache_clear()


__all__ = [
    "get_notification_fanout",
    "reset_notification_service",
    "NotificationFanout",
    "BaseConnection",
    "RecordingConnection",
    "ALL_GROUP",
    "ADMIN_GROUP",
    "ORDER_CREATED",
    "ORDER_UPDATED",
    "ORDER_STATUS_CHANGED",
    "ORDER_LOCATION_UPDATED",
    "order_group",
    "delivery_group",
    "status_changed_payload",
    "location_updated_payload",
]
