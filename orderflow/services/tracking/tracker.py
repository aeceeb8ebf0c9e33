"""
Courier Location Tracker

Client-side control loop that keeps the server informed of where the
courier is while an order is being delivered.

    INACTIVE ──(delivering + permission)──► BACKGROUND_TRACKING
        ▲                                    │ (no background permission
        │                                    │  or registration refused)
        │                                    ▼
        └──(status leaves delivering,   FOREGROUND_POLLING
            permission lost, teardown)

Every input is a discrete event method, so the whole state machine can be
driven from tests without a device or a real clock.

Throttle:
    At most one upstream push per TRACKING_PUSH_THROTTLE_SECONDS across all
    sampling paths (timer, background task, app resume). The slot is claimed
    synchronously right before the push, so two paths firing together can
    never both push. Only manual_refresh() bypasses it.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Union

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import LocationUnavailable
from orderflow.domain import LocationSample, OrderStatus, haversine_km
from orderflow.services.tracking.base import BaseLocationProvider, TrackingMode
from orderflow.services.tracking.uploader import LocationUploader

logger = logging.getLogger(__name__)


class LocationTracker:
    """
    Adaptive location sampling for one order on a courier device.

    Example:
        >>> tracker = LocationTracker(7, MockLocationProvider(), LocationUploader())
        >>> await tracker.permission_changed(granted=True, background=True)
        >>> await tracker.order_status_changed("delivering")
        >>> tracker.mode
        <TrackingMode.BACKGROUND_TRACKING: 'background_tracking'>
    """

    def __init__(
        self,
        order_id: int,
        provider: BaseLocationProvider,
        uploader: LocationUploader,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        settings = settings or get_settings()
        self.order_id = order_id
        self.provider = provider
        self.uploader = uploader
        self.interval = settings.tracking_sample_interval_seconds
        self.min_distance_meters = settings.tracking_min_distance_meters
        self.throttle_seconds = settings.tracking_push_throttle_seconds
        self._clock = clock
        self._sleep = sleep

        self.mode = TrackingMode.INACTIVE
        self.order_status: Optional[OrderStatus] = None
        self.permission_granted = False
        self.background_permission = False
        self.in_foreground = True
        self.closed = False

        self.push_count = 0
        self.last_pushed: Optional[LocationSample] = None
        self._last_push_at: Optional[float] = None
        self._timer: Optional[asyncio.Task] = None

    # =========================================================================
    # INPUT EVENTS
    # =========================================================================

    async def order_status_changed(self, status: Union[str, OrderStatus]) -> None:
        self.order_status = OrderStatus(status)
        await self._reconcile()

    async def permission_changed(self, granted: bool, background: bool = False) -> None:
        self.permission_granted = granted
        self.background_permission = granted and background
        await self._reconcile()

    async def app_backgrounded(self) -> None:
        self.in_foreground = False
        if self.mode == TrackingMode.FOREGROUND_POLLING:
            # Foreground timers do not run while the app is suspended
            await self._stop_timer()

    async def app_resumed(self) -> bool:
        """Returns True if the resume refresh produced a push."""
        self.in_foreground = True
        if self.mode == TrackingMode.INACTIVE:
            return False
        if self.mode == TrackingMode.FOREGROUND_POLLING:
            self._start_timer()
        return await self._refresh("resume")

    async def teardown(self) -> None:
        """Screen or task destroyed: stop for good."""
        self.closed = True
        await self._reconcile()

    async def tick(self) -> bool:
        """One scheduled sample. Returns True if a push happened."""
        if self.mode == TrackingMode.INACTIVE:
            return False
        return await self._refresh("tick")

    async def background_sample(self, sample: LocationSample) -> bool:
        """Sample delivered by the platform background task."""
        if self.mode != TrackingMode.BACKGROUND_TRACKING:
            logger.debug(f"Order #{self.order_id}: background sample ignored in mode {self.mode.value}")
            return False

        if self.last_pushed is not None:
            moved_m = haversine_km(
                self.last_pushed.latitude, self.last_pushed.longitude,
                sample.latitude, sample.longitude,
            ) * 1000
            if moved_m < self.min_distance_meters:
                logger.debug(f"Order #{self.order_id}: moved {moved_m:.0f}m, below threshold")
                return False

        if not self._claim_push_slot():
            return False
        return await self._push_quietly(sample, "background")

    async def manual_refresh(self) -> LocationSample:
        """
        User-triggered refresh. Ignores the throttle and reports failures.

        Raises:
            LocationUnavailable: The position could not be read
            httpx.HTTPError: The push failed
        """
        if self.closed:
            raise LocationUnavailable("Tracking has been stopped")
        try:
            sample = await self.provider.get_current_position()
        except LocationUnavailable:
            raise
        except Exception as e:
            raise LocationUnavailable(f"Could not read location: {e}") from e

        self._last_push_at = self._clock()
        await self._push(sample)
        return sample

    # =========================================================================
    # MODE TRANSITIONS
    # =========================================================================

    @property
    def should_track(self) -> bool:
        return (
            not self.closed
            and self.permission_granted
            and self.order_status == OrderStatus.DELIVERING
        )

    async def _reconcile(self) -> None:
        if not self.should_track:
            if self.mode != TrackingMode.INACTIVE:
                await self._stop_all()
                self._set_mode(TrackingMode.INACTIVE)
            return

        if self.mode == TrackingMode.INACTIVE:
            await self._enter_tracking()
            await self._refresh("start")
        elif self.mode == TrackingMode.BACKGROUND_TRACKING and not self.background_permission:
            await self.provider.stop_background_updates()
            self._enter_foreground()
        elif self.mode == TrackingMode.FOREGROUND_POLLING and self.background_permission:
            if await self._start_background():
                await self._stop_timer()
                self._set_mode(TrackingMode.BACKGROUND_TRACKING)

    async def _enter_tracking(self) -> None:
        if self.background_permission and await self._start_background():
            self._set_mode(TrackingMode.BACKGROUND_TRACKING)
        else:
            self._enter_foreground()

    def _enter_foreground(self) -> None:
        self._set_mode(TrackingMode.FOREGROUND_POLLING)
        if self.in_foreground:
            self._start_timer()

    async def _start_background(self) -> bool:
        try:
            return await self.provider.start_background_updates(self.interval, self.min_distance_meters)
        except Exception as e:
            logger.warning(f"Order #{self.order_id}: background tracking unavailable: {e}")
            return False

    async def _stop_all(self) -> None:
        await self._stop_timer()
        if self.mode == TrackingMode.BACKGROUND_TRACKING:
            try:
                await self.provider.stop_background_updates()
            except Exception as e:
                logger.warning(f"Order #{self.order_id}: stopping background updates failed: {e}")

    def _set_mode(self, mode: TrackingMode) -> None:
        if mode != self.mode:
            logger.info(f"Order #{self.order_id}: tracking {self.mode.value} -> {mode.value}")
            self.mode = mode

    # =========================================================================
    # FOREGROUND TIMER
    # =========================================================================

    def _start_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            return
        self._timer = asyncio.create_task(self._poll_loop(), name=f"tracker-{self.order_id}")

    async def _stop_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is None or timer.done():
            return
        timer.cancel()
        try:
            await timer
        except asyncio.CancelledError:
            pass

    async def _poll_loop(self) -> None:
        while True:
            await self._sleep(self.interval)
            await self.tick()

    # =========================================================================
    # PUSHING
    # =========================================================================

    def _throttle_open(self) -> bool:
        return self._last_push_at is None or self._clock() - self._last_push_at >= self.throttle_seconds

    def _claim_push_slot(self) -> bool:
        # No await between the check and the claim
        if not self._throttle_open():
            return False
        self._last_push_at = self._clock()
        return True

    async def _refresh(self, source: str) -> bool:
        if not self._throttle_open():
            logger.debug(f"Order #{self.order_id}: {source} refresh throttled")
            return False
        try:
            sample = await self.provider.get_current_position()
        except Exception as e:
            logger.warning(f"Order #{self.order_id}: location read failed ({source}), retrying next tick: {e}")
            return False
        if not self._claim_push_slot():
            return False
        return await self._push_quietly(sample, source)

    async def _push_quietly(self, sample: LocationSample, source: str) -> bool:
        try:
            await self._push(sample)
            return True
        except Exception as e:
            logger.warning(f"Order #{self.order_id}: location push failed ({source}), retrying next tick: {e}")
            return False

    async def _push(self, sample: LocationSample) -> None:
        await self.uploader.push(self.order_id, sample.latitude, sample.longitude)
        self.last_pushed = sample
        self.push_count += 1
