"""
Order Service

Orchestrates the order lifecycle: every mutation of an order goes through
this class.

Write path:
    lock(order_id) -> load -> state machine -> save(expected_version) -> effects

    - Mutations of one order are serialized by a per-order lock; different
      orders never wait for each other
    - A lost update detected by the store (ConcurrencyConflict) is retried
      once with a fresh load, then surfaced
    - Effects run after the commit and are isolated from each other: a
      failing cache invalidation never stops the notification, and neither
      can undo the committed state
    - Webhooks are handed to a background task (or Celery) and never delay
      or fail the caller

Read path:
    get_order / list_orders / get_history go through the CacheCoordinator and
    return the payload together with its ETag, or NotModified.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
import math
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, Awaitable, Callable, Optional, Union

from orderflow.core.config import Settings, WebhookDeliveryMode, get_settings
from orderflow.core.errors import (
    ConcurrencyConflict,
    InvalidCoordinates,
    InvalidStatusFilter,
)
from orderflow.domain import (
    ACTIVE_STATUSES,
    Actor,
    GeoPoint,
    Order,
    OrderStatus,
    StatusHistoryEntry,
    haversine_km,
    utcnow,
)
from orderflow.services.cache import (
    CacheCoordinator,
    CachedValue,
    NotModified,
    get_cache_coordinator,
    order_history_key,
    order_item_key,
    order_list_key,
)
from orderflow.services.cache.coordinator import LIST_NAMESPACE
from orderflow.services.locks import KeyedLock
from orderflow.services.notifications import (
    ADMIN_GROUP,
    ALL_GROUP,
    ORDER_CREATED,
    ORDER_LOCATION_UPDATED,
    ORDER_STATUS_CHANGED,
    ORDER_UPDATED,
    NotificationFanout,
    delivery_group,
    get_notification_fanout,
    location_updated_payload,
    order_group,
    status_changed_payload,
)
from orderflow.services.state_machine import (
    AppendHistory,
    DispatchWebhook,
    Effect,
    InvalidateCache,
    Notify,
    OrderStateMachine,
    TransitionResult,
)
from orderflow.services.storage import BaseOrderStore, get_order_store
from orderflow.services.webhooks import (
    WebhookDispatcher,
    get_webhook_dispatcher,
    order_webhook_payload,
)

logger = logging.getLogger(__name__)

ReadResult = Union[CachedValue, NotModified]

MAX_PAGE_SIZE = 100


# =============================================================================
# PAYLOADS
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def location_payload(point: Optional[GeoPoint]) -> Optional[dict[str, Any]]:
    if point is None:
        return None
    return {
        "latitude": point.latitude,
        "longitude": point.longitude,
        "updated_at": _iso(point.updated_at),
    }


def history_entry_payload(entry: StatusHistoryEntry) -> dict[str, Any]:
    return {
        "from_status": entry.from_status.value if entry.from_status else None,
        "to_status": entry.to_status.value,
        "changed_by": entry.changed_by,
        "changed_at": _iso(entry.changed_at),
        "note": entry.note,
    }


def order_payload(order: Order, include_history: bool = True) -> dict[str, Any]:
    """JSON-ready projection of an order, as cached and returned by the API."""
    payload = {
        "id": order.id,
        "status": order.status.value,
        "total": str(order.total),
        "customer_id": order.customer_id,
        "customer_name": order.customer_name,
        "delivery_person_id": order.delivery_person_id,
        "delivery_person_name": order.delivery_person_name,
        "payment_method": order.payment_method,
        "requires_receipt": order.requires_receipt,
        "receipt_verified": order.receipt_verified,
        "receipt_verified_at": _iso(order.receipt_verified_at),
        "receipt_verified_by": order.receipt_verified_by,
        "delivery_location": location_payload(order.delivery_location),
        "customer_location": location_payload(order.customer_location),
        "estimated_delivery_minutes": order.estimated_delivery_minutes,
        "is_archived": order.is_archived,
        "version": order.version,
        "created_at": _iso(order.created_at),
        "updated_at": _iso(order.updated_at),
    }
    if include_history:
        payload["status_history"] = [history_entry_payload(e) for e in order.status_history]
    return payload


def parse_status_filter(status_filter: Optional[str]) -> Optional[tuple[OrderStatus, ...]]:
    """'all' -> no filter, 'active' -> pending/preparing/delivering, else one status."""
    value = (status_filter or "all").strip().lower()
    if value == "all":
        return None
    if value == "active":
        return ACTIVE_STATUSES
    try:
        return (OrderStatus(value),)
    except ValueError:
        raise InvalidStatusFilter(status_filter)


def estimate_delivery_minutes(
    settings: Settings,
    from_lat: float,
    from_lng: float,
    to_lat: float,
    to_lng: float,
) -> int:
    """Travel time at the average courier speed plus preparation, clamped."""
    distance_km = haversine_km(from_lat, from_lng, to_lat, to_lng)
    minutes = math.ceil(distance_km / settings.average_delivery_speed_kmh * 60)
    minutes += settings.preparation_time_minutes
    return max(settings.min_delivery_time_minutes, min(settings.max_delivery_time_minutes, minutes))


# =============================================================================
# SERVICE
# =============================================================================

class OrderService:
    """
    Single mutation entry point for orders.

    Example:
        >>> service = get_order_service()
        >>> order = await service.request_transition(7, "preparing", actor="admin")
        >>> result = await service.get_order(7)
        >>> result.etag
        '"f0c1Qe8pU2m1bAZ9"'
    """

    def __init__(
        self,
        store: BaseOrderStore,
        cache: CacheCoordinator,
        fanout: NotificationFanout,
        dispatcher: WebhookDispatcher,
        state_machine: Optional[OrderStateMachine] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.cache = cache
        self.fanout = fanout
        self.dispatcher = dispatcher
        self.state_machine = state_machine or OrderStateMachine()
        self.settings = settings or get_settings()
        self.locks = KeyedLock()
        self._background: set[asyncio.Task] = set()

        logger.info(
            f"OrderService initialized (store={store.provider_name}, "
            f"webhooks={self.settings.webhook_delivery_mode.value})"
        )

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    async def _mutate(
        self,
        order_id: int,
        build: Callable[[Order], Awaitable[TransitionResult]],
    ) -> tuple[Order, TransitionResult]:
        """
        Load, build the new state and save it with a version check.

        Must be called with the order lock held. Retries once on conflict.
        """
        for attempt in (1, 2):
            current = await self.store.load_order(order_id)
            result = await build(current)
            if not result.changed:
                return current, result

            history = [e.entry for e in result.effects if isinstance(e, AppendHistory)]
            try:
                saved = await self.store.save_order(
                    result.order, expected_version=current.version, history=history
                )
                return saved, result
            except ConcurrencyConflict:
                if attempt == 2:
                    logger.error(f"Order #{order_id}: concurrent update conflict persisted after retry")
                    raise
                logger.warning(f"Order #{order_id}: concurrent update detected, retrying once")

    async def request_transition(
        self,
        order_id: int,
        new_status: Union[str, OrderStatus],
        actor: str,
        delivery_person_id: Optional[int] = None,
        note: Optional[str] = None,
    ) -> Order:
        """
        Move an order to a new status.

        Args:
            order_id: Order to change
            new_status: Target status
            actor: Who asked ("admin", "delivery", "system" or a username)
            delivery_person_id: Courier to assign with the change
            note: Free text stored on the history entry

        Returns:
            The committed order (unchanged for a repeated request)

        Raises:
            OrderNotFound, InvalidTransition, MissingDeliveryPerson,
            ReceiptNotVerified, ConcurrencyConflict
        """
        async def build(order: Order) -> TransitionResult:
            person_id, person_name = None, None
            if delivery_person_id is not None:
                person = await self.store.get_delivery_person(delivery_person_id)
                if person is None or not person.is_active:
                    logger.warning(
                        f"Order #{order_id}: ignoring unknown or inactive delivery person {delivery_person_id}"
                    )
                else:
                    person_id, person_name = person.id, person.name
            return self.state_machine.apply(
                order,
                new_status,
                actor,
                delivery_person_id=person_id,
                delivery_person_name=person_name,
                note=note,
            )

        async with self.locks.hold(order_id):
            order, result = await self._mutate(order_id, build)
            if result.changed:
                await self._run_effects(order, result.effects)
        return order

    async def archive_order(self, order_id: int) -> Order:
        """Soft-delete a completed or cancelled order."""
        async def build(order: Order) -> TransitionResult:
            return self.state_machine.archive(order)

        async with self.locks.hold(order_id):
            order, result = await self._mutate(order_id, build)
            if result.changed:
                logger.info(f"Order #{order_id} archived")
                await self._run_effects(order, result.effects)
        return order

    async def restore_order(self, order_id: int) -> Order:
        """Bring an archived order back into listings."""
        async def build(order: Order) -> TransitionResult:
            return self.state_machine.restore(order)

        async with self.locks.hold(order_id):
            order, result = await self._mutate(order_id, build)
            if result.changed:
                logger.info(f"Order #{order_id} restored from archive")
                await self._run_effects(order, result.effects)
        return order

    async def verify_receipt(self, order_id: int, actor: str, verified: bool = True) -> Order:
        """Mark the payment receipt of an order as (un)verified."""
        async def build(order: Order) -> TransitionResult:
            if order.receipt_verified == verified:
                return TransitionResult(order=order.copy(), changed=False)
            updated = order.copy()
            now = utcnow()
            updated.receipt_verified = verified
            updated.receipt_verified_at = now if verified else None
            updated.receipt_verified_by = actor if verified else None
            updated.updated_at = now
            return TransitionResult(order=updated, effects=[InvalidateCache(order_id)], changed=True)

        async with self.locks.hold(order_id):
            order, result = await self._mutate(order_id, build)
            if result.changed:
                logger.info(f"Order #{order_id}: receipt verified={verified} by {actor}")
                await self._run_effects(order, result.effects)
                self._publish(
                    [ADMIN_GROUP, order_group(order_id)],
                    ORDER_UPDATED,
                    {
                        "orderId": order_id,
                        "receiptVerified": order.receipt_verified,
                        "timestamp": _iso(order.updated_at),
                    },
                )
        return order

    def _validate_coordinates(self, latitude: float, longitude: float, check_zone: bool) -> None:
        if not -90 <= latitude <= 90:
            raise InvalidCoordinates(f"Invalid latitude {latitude}")
        if not -180 <= longitude <= 180:
            raise InvalidCoordinates(f"Invalid longitude {longitude}")
        if check_zone:
            s = self.settings
            if not (
                s.zone_min_latitude <= latitude <= s.zone_max_latitude
                and s.zone_min_longitude <= longitude <= s.zone_max_longitude
            ):
                logger.warning(f"Rejected courier position outside delivery zone: ({latitude}, {longitude})")
                raise InvalidCoordinates(
                    f"Position ({latitude}, {longitude}) is outside the delivery zone"
                )

    async def update_delivery_location(self, order_id: int, latitude: float, longitude: float) -> Order:
        """
        Store the courier's latest position and refresh the ETA.

        No state transition and no history: only cache invalidation and a
        location event for the admin dashboard and the order's watchers.
        """
        self._validate_coordinates(latitude, longitude, check_zone=True)

        async def build(order: Order) -> TransitionResult:
            now = utcnow()
            updated = order.copy()
            updated.delivery_location = GeoPoint(latitude, longitude, now)
            updated.updated_at = now
            if order.customer_location is not None:
                updated.estimated_delivery_minutes = estimate_delivery_minutes(
                    self.settings,
                    latitude,
                    longitude,
                    order.customer_location.latitude,
                    order.customer_location.longitude,
                )
            return TransitionResult(order=updated, effects=[InvalidateCache(order_id)], changed=True)

        async with self.locks.hold(order_id):
            order, result = await self._mutate(order_id, build)
            await self._run_effects(order, result.effects)

            groups = [ADMIN_GROUP, order_group(order_id)]
            if order.delivery_person_id is not None:
                groups.append(delivery_group(order.delivery_person_id))
            self._publish(
                groups,
                ORDER_LOCATION_UPDATED,
                location_updated_payload(
                    order_id,
                    latitude,
                    longitude,
                    order.delivery_location.updated_at,
                    order.estimated_delivery_minutes,
                ),
            )

        logger.debug(f"Order #{order_id}: courier at ({latitude}, {longitude}), eta={order.estimated_delivery_minutes}")
        return order

    async def update_customer_location(self, order_id: int, latitude: float, longitude: float) -> Order:
        """Store where the customer wants the order delivered."""
        self._validate_coordinates(latitude, longitude, check_zone=False)

        async def build(order: Order) -> TransitionResult:
            now = utcnow()
            updated = order.copy()
            updated.customer_location = GeoPoint(latitude, longitude, now)
            updated.updated_at = now
            return TransitionResult(order=updated, effects=[InvalidateCache(order_id)], changed=True)

        async with self.locks.hold(order_id):
            order, result = await self._mutate(order_id, build)
            await self._run_effects(order, result.effects)
        logger.info(f"Order #{order_id}: customer location set to ({latitude}, {longitude})")
        return order

    async def create_order(
        self,
        total: Union[Decimal, str, int],
        customer_id: Optional[int] = None,
        customer_name: Optional[str] = None,
        payment_method: Optional[str] = None,
        order_id: int = 0,
    ) -> Order:
        """Insert a new pending order with its seed history entry."""
        now = utcnow()
        order = Order(
            id=order_id,
            status=OrderStatus.PENDING,
            total=Decimal(str(total)),
            customer_id=customer_id,
            customer_name=customer_name,
            payment_method=payment_method,
            requires_receipt=self.settings.requires_receipt(payment_method),
            status_history=[
                StatusHistoryEntry(
                    from_status=None,
                    to_status=OrderStatus.PENDING,
                    changed_by=Actor.SYSTEM,
                    changed_at=now,
                )
            ],
            created_at=now,
            updated_at=now,
        )
        created = await self.store.create_order(order)
        logger.info(f"Order #{created.id} created (total={created.total}, payment={payment_method})")

        try:
            await self.cache.invalidate(LIST_NAMESPACE)
        except Exception as e:
            logger.error(f"Order #{created.id}: list cache invalidation failed: {e}")
        self._publish(
            [ALL_GROUP, ADMIN_GROUP],
            ORDER_CREATED,
            status_changed_payload(created.id, created.status.value, now),
        )
        return created

    # =========================================================================
    # EFFECTS
    # =========================================================================

    async def _run_effects(self, order: Order, effects: list[Effect]) -> None:
        for effect in effects:
            try:
                await self._execute(order, effect)
            except Exception as e:
                logger.error(f"Order #{order.id}: {type(effect).__name__} effect failed: {e}")

    async def _execute(self, order: Order, effect: Effect) -> None:
        if isinstance(effect, AppendHistory):
            # Committed in the same store transaction as the order row
            return
        if isinstance(effect, InvalidateCache):
            await self.cache.invalidate_order(effect.order_id)
        elif isinstance(effect, Notify):
            payload = status_changed_payload(
                effect.order_id,
                effect.status.value,
                effect.timestamp,
                effect.delivery_person_name,
            )
            self.fanout.publish_many(
                [ALL_GROUP, ADMIN_GROUP, order_group(effect.order_id)],
                ORDER_STATUS_CHANGED,
                payload,
            )
        elif isinstance(effect, DispatchWebhook):
            self._schedule_webhook(effect.event_type, order_webhook_payload(order))
        else:
            raise TypeError(f"Unknown effect {effect!r}")

    def _publish(self, groups: list[str], event_name: str, payload: dict[str, Any]) -> None:
        try:
            self.fanout.publish_many(groups, event_name, payload)
        except Exception as e:
            logger.error(f"Publishing {event_name} failed: {e}")

    def _schedule_webhook(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.settings.webhook_delivery_mode == WebhookDeliveryMode.CELERY:
            coro = self._enqueue_webhook(event_type, payload)
        else:
            coro = self._deliver_webhook(event_type, payload)
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _enqueue_webhook(self, event_type: str, payload: dict[str, Any]) -> None:
        from orderflow.tasks import deliver_order_webhook

        # Broker publish is blocking I/O; keep it off the event loop
        try:
            await asyncio.to_thread(deliver_order_webhook.delay, event_type, payload)
        except Exception:
            logger.exception(f"Queueing {event_type} webhook on Celery failed")
            return
        logger.info(f"Queued {event_type} webhook for order #{payload.get('orderId')} on Celery")

    async def _deliver_webhook(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            results = await self.dispatcher.dispatch_event(event_type, payload)
        except Exception:
            logger.exception(f"Webhook dispatch of {event_type} failed")
            return
        failed = [r for r in results if not r.success and not r.skipped]
        if failed:
            logger.warning(f"{event_type}: {len(failed)} of {len(results)} webhook(s) failed")

    async def drain(self) -> None:
        """Wait for background webhooks and queued notifications."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self.fanout.drain()

    # =========================================================================
    # READ PATH
    # =========================================================================

    async def get_order(self, order_id: int, if_none_match: Optional[str] = None) -> ReadResult:
        async def fetch() -> dict[str, Any]:
            return order_payload(await self.store.load_order(order_id))

        return await self.cache.get_conditional(
            order_item_key(order_id),
            fetch,
            if_none_match=if_none_match,
            ttl=self.settings.cache_item_ttl_seconds,
        )

    async def list_orders(
        self,
        status_filter: Optional[str] = "all",
        page: int = 1,
        page_size: int = 20,
        include_archived: bool = False,
        if_none_match: Optional[str] = None,
    ) -> ReadResult:
        """Newest-first page of orders. Filters: 'all', 'active' or a status."""
        statuses = parse_status_filter(status_filter)
        filter_name = (status_filter or "all").strip().lower()
        page = max(1, page)
        page_size = max(1, min(MAX_PAGE_SIZE, page_size))

        async def fetch() -> dict[str, Any]:
            result = await self.store.list_orders(
                statuses=statuses,
                page=page,
                page_size=page_size,
                include_archived=include_archived,
            )
            return {
                "orders": [order_payload(o, include_history=False) for o in result.orders],
                "total": result.total,
                "page": result.page,
                "page_size": result.page_size,
                "total_pages": math.ceil(result.total / result.page_size) if result.total else 0,
            }

        return await self.cache.get_conditional(
            order_list_key(filter_name, page, page_size, include_archived),
            fetch,
            if_none_match=if_none_match,
            ttl=self.settings.cache_list_ttl_seconds,
        )

    async def get_history(self, order_id: int, if_none_match: Optional[str] = None) -> ReadResult:
        """Status history, newest entry first."""
        async def fetch() -> list[dict[str, Any]]:
            entries = await self.store.get_history(order_id)
            return [history_entry_payload(e) for e in reversed(entries)]

        return await self.cache.get_conditional(
            order_history_key(order_id),
            fetch,
            if_none_match=if_none_match,
            ttl=self.settings.cache_item_ttl_seconds,
        )

    async def health_check(self) -> dict[str, bool]:
        return {
            "store": await self.store.health_check(),
            "cache": await self.cache.health_check(),
        }


@lru_cache()
def get_order_service() -> OrderService:
    """Process-wide OrderService wired to the configured backends."""
    return OrderService(
        store=get_order_store(),
        cache=get_cache_coordinator(),
        fanout=get_notification_fanout(),
        dispatcher=get_webhook_dispatcher(),
    )


def reset_order_service() -> None:
    get_order_service.cache_clear()
