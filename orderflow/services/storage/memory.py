"""
In-Memory Order Store

Process-local store used in development mode, by the simulation script
and by the test-suite. Mirrors the compare-and-set semantics of the SQL
store so concurrency behaviour can be exercised without a database.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import replace
from datetime import datetime
from typing import Optional, Sequence

from orderflow.core.errors import ConcurrencyConflict, OrderNotFound
from orderflow.domain import (
    DeliveryPerson,
    Order,
    OrderPage,
    OrderStatus,
    StatusHistoryEntry,
    WebhookSubscription,
    utcnow,
)
from orderflow.services.storage.base import BaseOrderStore

logger = logging.getLogger(__name__)


class MemoryOrderStore(BaseOrderStore):
    """Dictionary-backed order store."""

    def __init__(self):
        self._orders: dict[int, Order] = {}
        self._history: dict[int, list[StatusHistoryEntry]] = {}
        self._delivery_persons: dict[int, DeliveryPerson] = {}
        self._subscriptions: dict[int, WebhookSubscription] = {}
        self._next_order_id = 1
        self._next_subscription_id = 1
        logger.info("MemoryOrderStore initialized")

    @property
    def provider_name(self) -> str:
        return "memory"

    def _snapshot(self, order_id: int) -> Order:
        stored = self._orders[order_id]
        return replace(stored, status_history=list(self._history.get(order_id, [])))

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def create_order(self, order: Order) -> Order:
        order_id = order.id or self._next_order_id
        if order_id in self._orders:
            raise ValueError(f"Order #{order_id} already exists")
        self._next_order_id = max(self._next_order_id, order_id + 1)

        self._orders[order_id] = replace(order, id=order_id, version=0, status_history=[])
        self._history[order_id] = list(order.status_history)
        logger.debug(f"Order #{order_id} created in memory store")
        return self._snapshot(order_id)

    async def load_order(self, order_id: int) -> Order:
        if order_id not in self._orders:
            raise OrderNotFound(order_id)
        return self._snapshot(order_id)

    async def save_order(
        self,
        order: Order,
        expected_version: int,
        history: Sequence[StatusHistoryEntry] = (),
    ) -> Order:
        stored = self._orders.get(order.id)
        if stored is None:
            raise OrderNotFound(order.id)
        if stored.version != expected_version:
            raise ConcurrencyConflict(order.id, expected_version)

        self._orders[order.id] = replace(order, version=expected_version + 1, status_history=[])
        self._history.setdefault(order.id, []).extend(history)
        return self._snapshot(order.id)

    async def get_history(self, order_id: int) -> list[StatusHistoryEntry]:
        if order_id not in self._orders:
            raise OrderNotFound(order_id)
        return list(self._history.get(order_id, []))

    async def list_orders(
        self,
        statuses: Optional[Sequence[OrderStatus]] = None,
        page: int = 1,
        page_size: int = 20,
        include_archived: bool = False,
    ) -> OrderPage:
        matches = [
            o for o in self._orders.values()
            if (include_archived or not o.is_archived)
            and (not statuses or o.status in statuses)
        ]
        matches.sort(key=lambda o: (o.created_at, o.id), reverse=True)

        start = (page - 1) * page_size
        selected = matches[start:start + page_size]
        return OrderPage(
            orders=[self._snapshot(o.id) for o in selected],
            total=len(matches),
            page=page,
            page_size=page_size,
        )

    # =========================================================================
    # COURIERS
    # =========================================================================

    def add_delivery_person(self, delivery_person_id: int, name: str, is_active: bool = True) -> DeliveryPerson:
        person = DeliveryPerson(id=delivery_person_id, name=name, is_active=is_active)
        self._delivery_persons[delivery_person_id] = person
        return person

    async def get_delivery_person(self, delivery_person_id: int) -> Optional[DeliveryPerson]:
        return self._delivery_persons.get(delivery_person_id)

    # =========================================================================
    # WEBHOOK SUBSCRIPTIONS
    # =========================================================================

    def add_webhook_subscription(
        self,
        url: str,
        event_type: str,
        secret: Optional[str] = None,
        is_active: bool = True,
        headers: Optional[dict[str, str]] = None,
    ) -> WebhookSubscription:
        subscription = WebhookSubscription(
            id=self._next_subscription_id,
            url=url,
            event_type=event_type,
            secret=secret,
            is_active=is_active,
            headers=headers,
            created_at=utcnow(),
        )
        self._subscriptions[subscription.id] = subscription
        self._next_subscription_id += 1
        return replace(subscription)

    async def create_webhook_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        return self.add_webhook_subscription(
            subscription.url,
            subscription.event_type,
            secret=subscription.secret,
            is_active=subscription.is_active,
            headers=subscription.headers,
        )

    async def get_webhook_subscription(self, subscription_id: int) -> Optional[WebhookSubscription]:
        subscription = self._subscriptions.get(subscription_id)
        return replace(subscription) if subscription is not None else None

    async def list_webhook_subscriptions(
        self,
        event_type: Optional[str] = None,
        include_inactive: bool = False,
    ) -> list[WebhookSubscription]:
        return [
            replace(s) for s in self._subscriptions.values()
            if (event_type is None or s.event_type == event_type)
            and (include_inactive or s.is_active)
        ]

    async def deactivate_webhook_subscription(self, subscription_id: int) -> bool:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return False
        subscription.is_active = False
        return True

    async def record_webhook_attempt(
        self,
        subscription_id: int,
        success: bool,
        triggered_at: datetime,
    ) -> None:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            logger.warning(f"Webhook subscription {subscription_id} vanished before counters were updated")
            return
        if success:
            subscription.success_count += 1
        else:
            subscription.failure_count += 1
        subscription.last_triggered_at = triggered_at
