"""
Location Tracking (courier client)

Usage:
    from orderflow.services.tracking import LocationTracker, get_location_provider

    tracker = LocationTracker(order_id, get_location_provider(), LocationUploader())
    await tracker.permission_changed(granted=True, background=True)
    await tracker.order_status_changed("delivering")

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from orderflow.services.tracking.base import BaseLocationProvider, TrackingMode
from orderflow.services.tracking.mock import MockLocationProvider
from orderflow.services.tracking.tracker import LocationTracker
from orderflow.services.tracking.uploader import LocationUploader

logger = logging.getLogger(__name__)


@lru_cache()
def get_location_provider() -> BaseLocationProvider:
    """
    Get the location source for this process.

    Only the simulated provider exists server-side; device builds supply
    their own BaseLocationProvider.
    """
    logger.info("Location Provider: Using MockLocationProvider")
    return MockLocationProvider()


def reset_location_provider() -> None:
    get_location_provider.cache_clear()


__all__ = [
    "get_location_provider",
    "reset_location_provider",
    "BaseLocationProvider",
    "MockLocationProvider",
    "LocationTracker",
    "LocationUploader",
    "TrackingMode",
]
