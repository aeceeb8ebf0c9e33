"""
Tests for the courier LocationTracker.

The tracker is driven through its event methods with a fake clock and a
sleep that never returns, so the foreground timer exists but never fires.
"""

import asyncio

import httpx
import pytest

from orderflow.core.config import Settings
from orderflow.core.errors import LocationUnavailable
from orderflow.domain import LocationSample, utcnow
from orderflow.services.tracking import (
    LocationTracker,
    LocationUploader,
    MockLocationProvider,
    TrackingMode,
)


class FakeClock:
    def __init__(self):
        self.now = 500.0

    def __call__(self) -> float:
        return self.now


class LocationApi:
    """MockTransport handler standing in for the delivery-location endpoint."""

    def __init__(self):
        self.status = 200
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json={})


async def never_wake(_seconds: float) -> None:
    await asyncio.Event().wait()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def api():
    return LocationApi()


@pytest.fixture
async def uploader(api):
    client = httpx.AsyncClient(transport=httpx.MockTransport(api))
    yield LocationUploader(base_url="http://orders.test", client=client)
    await client.aclose()


@pytest.fixture
async def make_tracker(uploader, clock):
    trackers = []

    def factory(provider=None, **settings_overrides):
        settings = Settings(_env_file=None, **settings_overrides)
        tracker = LocationTracker(
            7,
            provider or MockLocationProvider(),
            uploader,
            settings=settings,
            clock=clock,
            sleep=never_wake,
        )
        trackers.append(tracker)
        return tracker

    yield factory
    for tracker in trackers:
        await tracker.teardown()


async def start_delivering(tracker, background=True):
    await tracker.permission_changed(granted=True, background=background)
    await tracker.order_status_changed("delivering")


class TestModes:
    """Mode selection and exits."""

    async def test_inactive_until_delivering(self, make_tracker, api):
        tracker = make_tracker()
        await tracker.permission_changed(granted=True, background=True)
        await tracker.order_status_changed("preparing")

        assert tracker.mode == TrackingMode.INACTIVE
        assert api.requests == []

    async def test_inactive_without_permission(self, make_tracker):
        tracker = make_tracker()
        await tracker.order_status_changed("delivering")
        assert tracker.mode == TrackingMode.INACTIVE

    async def test_background_when_permitted(self, make_tracker, api):
        provider = MockLocationProvider()
        tracker = make_tracker(provider)

        await start_delivering(tracker)

        assert tracker.mode == TrackingMode.BACKGROUND_TRACKING
        assert provider.background_running
        assert tracker.push_count == 1
        assert api.requests[0].url.path == "/api/orders/7/delivery-location"
        assert api.requests[0].headers["X-Actor"] == "delivery"

    async def test_falls_back_to_foreground_when_registration_refused(self, make_tracker):
        tracker = make_tracker(MockLocationProvider(background_available=False))

        await start_delivering(tracker)

        assert tracker.mode == TrackingMode.FOREGROUND_POLLING
        assert tracker._timer is not None and not tracker._timer.done()

    async def test_foreground_without_background_permission(self, make_tracker):
        tracker = make_tracker()
        await start_delivering(tracker, background=False)
        assert tracker.mode == TrackingMode.FOREGROUND_POLLING

    async def test_losing_background_permission_downgrades(self, make_tracker):
        provider = MockLocationProvider()
        tracker = make_tracker(provider)
        await start_delivering(tracker)

        await tracker.permission_changed(granted=True, background=False)

        assert tracker.mode == TrackingMode.FOREGROUND_POLLING
        assert not provider.background_running

    async def test_gaining_background_permission_upgrades(self, make_tracker):
        tracker = make_tracker()
        await start_delivering(tracker, background=False)

        await tracker.permission_changed(granted=True, background=True)

        assert tracker.mode == TrackingMode.BACKGROUND_TRACKING
        assert tracker._timer is None

    @pytest.mark.parametrize("status", ["completed", "cancelled"])
    async def test_leaving_delivering_stops(self, make_tracker, status):
        provider = MockLocationProvider()
        tracker = make_tracker(provider)
        await start_delivering(tracker)

        await tracker.order_status_changed(status)

        assert tracker.mode == TrackingMode.INACTIVE
        assert not provider.background_running

    async def test_permission_revoked_stops(self, make_tracker):
        tracker = make_tracker()
        await start_delivering(tracker, background=False)

        await tracker.permission_changed(granted=False)

        assert tracker.mode == TrackingMode.INACTIVE
        assert tracker._timer is None

    async def test_teardown_is_final(self, make_tracker, clock):
        tracker = make_tracker()
        await start_delivering(tracker)

        await tracker.teardown()
        clock.now += 60
        await tracker.permission_changed(granted=True, background=True)

        assert tracker.mode == TrackingMode.INACTIVE
        assert await tracker.tick() is False


class TestThrottle:
    """At most one push per throttle window across every path."""

    async def test_ten_ticks_in_one_second_push_once(self, make_tracker, clock):
        tracker = make_tracker()
        await start_delivering(tracker, background=False)

        for _ in range(10):
            clock.now += 0.1
            await tracker.tick()

        assert tracker.push_count == 1

    async def test_tick_after_window_pushes(self, make_tracker, clock):
        tracker = make_tracker()
        await start_delivering(tracker, background=False)

        clock.now += 10
        assert await tracker.tick() is True
        assert tracker.push_count == 2

    async def test_concurrent_paths_push_once(self, make_tracker, clock):
        tracker = make_tracker()
        await start_delivering(tracker, background=False)
        clock.now += 30

        results = await asyncio.gather(tracker.tick(), tracker.app_resumed(), tracker.tick())

        assert results.count(True) == 1
        assert tracker.push_count == 2

    async def test_resume_refreshes_after_background(self, make_tracker, clock):
        tracker = make_tracker()
        await start_delivering(tracker, background=False)

        await tracker.app_backgrounded()
        assert tracker._timer is None
        clock.now += 45
        pushed = await tracker.app_resumed()

        assert pushed is True
        assert tracker.push_count == 2
        assert tracker._timer is not None

    async def test_resume_inside_window_is_throttled(self, make_tracker, clock):
        tracker = make_tracker()
        await start_delivering(tracker, background=False)

        clock.now += 2
        assert await tracker.app_resumed() is False


class TestBackgroundSamples:
    """Distance filter on platform-delivered samples."""

    async def test_small_movement_is_filtered(self, make_tracker, clock):
        provider = MockLocationProvider()
        tracker = make_tracker(provider)
        await start_delivering(tracker)
        clock.now += 60

        nearby = LocationSample(provider.latitude + 0.0001, provider.longitude, utcnow())
        far = LocationSample(provider.latitude + 0.001, provider.longitude, utcnow())

        assert await tracker.background_sample(nearby) is False
        assert await tracker.background_sample(far) is True
        assert tracker.last_pushed == far

    async def test_samples_are_throttled(self, make_tracker, clock):
        provider = MockLocationProvider()
        tracker = make_tracker(provider)
        await start_delivering(tracker)

        clock.now += 1
        far = LocationSample(provider.latitude + 0.01, provider.longitude, utcnow())
        assert await tracker.background_sample(far) is False

    async def test_ignored_in_foreground_mode(self, make_tracker, clock):
        tracker = make_tracker()
        await start_delivering(tracker, background=False)
        clock.now += 60

        sample = LocationSample(41.0, -74.0, utcnow())
        assert await tracker.background_sample(sample) is False


class TestFailures:
    """Read and push failures."""

    async def test_failed_read_is_retried_next_tick(self, make_tracker, clock):
        provider = MockLocationProvider(failure_rate=1.0)
        tracker = make_tracker(provider)
        await start_delivering(tracker, background=False)

        assert tracker.push_count == 0
        provider.failure_rate = 0.0
        assert await tracker.tick() is True

    async def test_failed_push_does_not_claim_last_position(self, make_tracker, api, clock):
        api.status = 503
        tracker = make_tracker()
        await start_delivering(tracker, background=False)

        assert tracker.push_count == 0
        assert tracker.last_pushed is None

    async def test_manual_refresh_bypasses_throttle(self, make_tracker):
        tracker = make_tracker()
        await start_delivering(tracker, background=False)

        sample = await tracker.manual_refresh()

        assert tracker.push_count == 2
        assert tracker.last_pushed == sample

    async def test_manual_refresh_reports_location_failure(self, make_tracker):
        tracker = make_tracker(MockLocationProvider(failure_rate=1.0))
        await start_delivering(tracker, background=False)

        with pytest.raises(LocationUnavailable):
            await tracker.manual_refresh()

    async def test_manual_refresh_reports_push_failure(self, make_tracker, api):
        tracker = make_tracker()
        await start_delivering(tracker, background=False)
        api.status = 500

        with pytest.raises(httpx.HTTPStatusError):
            await tracker.manual_refresh()

    async def test_manual_refresh_after_teardown(self, make_tracker):
        tracker = make_tracker()
        await tracker.teardown()

        with pytest.raises(LocationUnavailable):
            await tracker.manual_refresh()
