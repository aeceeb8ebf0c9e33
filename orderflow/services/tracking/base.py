"""
Location Tracking Abstract Base Class

Interface to the courier device's positioning features. The tracker only
talks to this interface, so its mode switching can be exercised without a
device.

Author: Khalil Bannouri
Version: 1.0.0
"""

from abc import ABC, abstractmethod
from enum import Enum

from orderflow.domain import LocationSample


class TrackingMode(str, Enum):
    """
    Tracker modes.

    Attributes:
        INACTIVE: Not tracking (order not in delivery, no permission, torn down)
        FOREGROUND_POLLING: Timer-driven fixes while the app is open
        BACKGROUND_TRACKING: Platform background task delivers samples
    """
    INACTIVE = "inactive"
    FOREGROUND_POLLING = "foreground_polling"
    BACKGROUND_TRACKING = "background_tracking"


class BaseLocationProvider(ABC):
    """Abstract base class for device location sources."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def get_current_position(self) -> LocationSample:
        """
        Read one position fix.

        Raises:
            LocationUnavailable: No fix could be obtained
        """
        pass

    @abstractmethod
    async def start_background_updates(self, interval_seconds: float, min_distance_meters: float) -> bool:
        """
        Register the background location task.

        Returns:
            True if the platform accepted the registration
        """
        pass

    @abstractmethod
    async def stop_background_updates(self) -> None:
        pass
