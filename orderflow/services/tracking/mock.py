"""
Mock Location Provider

Simulates a courier's phone GPS without a device.
Used by the simulation script and the test-suite.

Behavior:
    - Starts near the NYC center unless a position is given
    - Position only changes through move_to() / move_by()
    - Configurable failure rate for position reads
    - Background registration can be made to fail to force the
      foreground polling fallback

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
import random
from typing import Optional

from orderflow.core.errors import LocationUnavailable
from orderflow.domain import LocationSample, utcnow
from orderflow.services.tracking.base import BaseLocationProvider

logger = logging.getLogger(__name__)


class MockLocationProvider(BaseLocationProvider):
    """
    In-process location source.

    Example:
        >>> provider = MockLocationProvider(background_available=False)
        >>> sample = await provider.get_current_position()
        >>> round(sample.latitude, 2)
        40.71
    """

    NYC_CENTER_LAT = 40.7128
    NYC_CENTER_LNG = -74.0060

    def __init__(
        self,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        failure_rate: float = 0.0,
        background_available: bool = True,
        accuracy: float = 8.0,
    ):
        self.latitude = self.NYC_CENTER_LAT if latitude is None else latitude
        self.longitude = self.NYC_CENTER_LNG if longitude is None else longitude
        self.failure_rate = failure_rate
        self.background_available = background_available
        self.accuracy = accuracy
        self.background_running = False
        self.reads = 0

        logger.info(
            f"MockLocationProvider initialized "
            f"(failure_rate={failure_rate:.0%}, background={background_available})"
        )

    @property
    def provider_name(self) -> str:
        return "mock"

    def _should_fail(self) -> bool:
        return random.random() < self.failure_rate

    def move_to(self, latitude: float, longitude: float) -> None:
        self.latitude = latitude
        self.longitude = longitude

    def move_by(self, d_lat: float, d_lng: float) -> None:
        self.latitude += d_lat
        self.longitude += d_lng

    def sample(self) -> LocationSample:
        """Current position as a sample, without counting as a read."""
        return LocationSample(
            latitude=round(self.latitude, 6),
            longitude=round(self.longitude, 6),
            captured_at=utcnow(),
            accuracy=self.accuracy,
        )

    async def get_current_position(self) -> LocationSample:
        self.reads += 1
        if self._should_fail():
            logger.debug("Mock: Simulated GPS failure")
            raise LocationUnavailable("GPS fix unavailable")
        return self.sample()

    async def start_background_updates(self, interval_seconds: float, min_distance_meters: float) -> bool:
        self.background_running = self.background_available
        if self.background_running:
            logger.debug(
                f"Mock: Background updates registered "
                f"(every {interval_seconds}s / {min_distance_meters}m)"
            )
        else:
            logger.debug("Mock: Background task registration refused")
        return self.background_running

    async def stop_background_updates(self) -> None:
        self.background_running = False
