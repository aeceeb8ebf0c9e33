"""
SQL Order Store

Production implementation on SQLAlchemy's async ORM.
Used when ENV_MODE=production or ENV_MODE=staging.

Concurrency:
    save_order issues `UPDATE orders ... WHERE id = :id AND version = :expected`
    and treats zero affected rows as a lost update. Webhook counters are
    incremented in SQL (`success_count = success_count + 1`) so concurrent
    dispatches never overwrite each other.

Author: Khalil Bannouri
Version: 1.0.0
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow import models
from orderflow.core.errors import ConcurrencyConflict, OrderNotFound
from orderflow.domain import (
    DeliveryPerson,
    GeoPoint,
    Order,
    OrderPage,
    OrderStatus,
    StatusHistoryEntry,
    WebhookSubscription,
    utcnow,
)
from orderflow.services.storage.base import BaseOrderStore

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything in the domain is UTC-aware."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _point(lat: Optional[float], lng: Optional[float], at: Optional[datetime]) -> Optional[GeoPoint]:
    if lat is None or lng is None:
        return None
    return GeoPoint(latitude=lat, longitude=lng, updated_at=_aware(at))


def _entry_from_row(row: models.OrderStatusHistory) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        from_status=OrderStatus(row.from_status) if row.from_status else None,
        to_status=OrderStatus(row.to_status),
        changed_by=row.changed_by,
        changed_at=_aware(row.changed_at),
        note=row.note,
    )


def _entry_to_row(order_id: int, entry: StatusHistoryEntry) -> models.OrderStatusHistory:
    return models.OrderStatusHistory(
        order_id=order_id,
        from_status=entry.from_status.value if entry.from_status else None,
        to_status=entry.to_status.value,
        changed_by=entry.changed_by,
        note=entry.note,
        changed_at=entry.changed_at,
    )


def _order_columns(order: Order) -> dict:
    """Mutable column values of an order (everything but id/version/created_at)."""
    delivery = order.delivery_location
    customer = order.customer_location
    return {
        "status": order.status,
        "is_archived": order.is_archived,
        "customer_id": order.customer_id,
        "customer_name": order.customer_name,
        "total": order.total,
        "payment_method": order.payment_method,
        "requires_receipt": order.requires_receipt,
        "receipt_verified": order.receipt_verified,
        "receipt_verified_at": order.receipt_verified_at,
        "receipt_verified_by": order.receipt_verified_by,
        "delivery_person_id": order.delivery_person_id,
        "delivery_latitude": delivery.latitude if delivery else None,
        "delivery_longitude": delivery.longitude if delivery else None,
        "delivery_location_updated_at": delivery.updated_at if delivery else None,
        "customer_latitude": customer.latitude if customer else None,
        "customer_longitude": customer.longitude if customer else None,
        "customer_location_updated_at": customer.updated_at if customer else None,
        "estimated_delivery_minutes": order.estimated_delivery_minutes,
        "updated_at": order.updated_at,
    }


def _subscription_to_domain(row: models.WebhookSubscription) -> WebhookSubscription:
    headers = None
    if row.headers:
        try:
            headers = json.loads(row.headers)
        except ValueError:
            logger.warning(f"Ignoring malformed headers on webhook subscription {row.id}")
    return WebhookSubscription(
        id=row.id,
        url=row.url,
        event_type=row.event_type,
        secret=row.secret,
        is_active=row.is_active,
        success_count=row.success_count,
        failure_count=row.failure_count,
        last_triggered_at=_aware(row.last_triggered_at),
        headers=headers,
        created_at=_aware(row.created_at),
    )


class SqlOrderStore(BaseOrderStore):
    """Order store backed by a relational database."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self._session_maker = session_maker
        logger.info("SqlOrderStore initialized")

    @property
    def provider_name(self) -> str:
        return "sql"

    # =========================================================================
    # MAPPING
    # =========================================================================

    async def _to_domain(
        self,
        session: AsyncSession,
        row: models.Order,
        history: Optional[list[StatusHistoryEntry]] = None,
    ) -> Order:
        if history is None:
            history = await self._load_history(session, row.id)

        person_name = None
        if row.delivery_person_id is not None:
            person = await session.get(models.DeliveryPerson, row.delivery_person_id)
            person_name = person.name if person else None

        return Order(
            id=row.id,
            status=row.status,
            total=Decimal(row.total) if row.total is not None else Decimal("0.00"),
            customer_id=row.customer_id,
            customer_name=row.customer_name,
            delivery_person_id=row.delivery_person_id,
            delivery_person_name=person_name,
            payment_method=row.payment_method,
            requires_receipt=row.requires_receipt,
            receipt_verified=row.receipt_verified,
            receipt_verified_at=_aware(row.receipt_verified_at),
            receipt_verified_by=row.receipt_verified_by,
            delivery_location=_point(
                row.delivery_latitude, row.delivery_longitude, row.delivery_location_updated_at
            ),
            customer_location=_point(
                row.customer_latitude, row.customer_longitude, row.customer_location_updated_at
            ),
            estimated_delivery_minutes=row.estimated_delivery_minutes,
            is_archived=row.is_archived,
            status_history=history,
            version=row.version,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    async def _load_history(self, session: AsyncSession, order_id: int) -> list[StatusHistoryEntry]:
        result = await session.execute(
            select(models.OrderStatusHistory)
            .where(models.OrderStatusHistory.order_id == order_id)
            .order_by(models.OrderStatusHistory.changed_at, models.OrderStatusHistory.id)
        )
        return [_entry_from_row(r) for r in result.scalars().all()]

    # =========================================================================
    # ORDERS
    # =========================================================================

    async def create_order(self, order: Order) -> Order:
        async with self._session_maker() as session:
            async with session.begin():
                row = models.Order(version=0, created_at=order.created_at, **_order_columns(order))
                if order.id:
                    row.id = order.id
                session.add(row)
                await session.flush()
                for entry in order.status_history:
                    session.add(_entry_to_row(row.id, entry))
                order_id = row.id
            logger.info(f"Order #{order_id} created")
            return await self.load_order(order_id)

    async def load_order(self, order_id: int) -> Order:
        async with self._session_maker() as session:
            row = await session.get(models.Order, order_id)
            if row is None:
                raise OrderNotFound(order_id)
            return await self._to_domain(session, row)

    async def save_order(
        self,
        order: Order,
        expected_version: int,
        history: Sequence[StatusHistoryEntry] = (),
    ) -> Order:
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(models.Order)
                    .where(models.Order.id == order.id, models.Order.version == expected_version)
                    .values(version=expected_version + 1, **_order_columns(order))
                )
                if result.rowcount == 0:
                    exists = await session.scalar(
                        select(func.count(models.Order.id)).where(models.Order.id == order.id)
                    )
                    if not exists:
                        raise OrderNotFound(order.id)
                    raise ConcurrencyConflict(order.id, expected_version)

                for entry in history:
                    session.add(_entry_to_row(order.id, entry))

        return await self.load_order(order.id)

    async def get_history(self, order_id: int) -> list[StatusHistoryEntry]:
        async with self._session_maker() as session:
            if await session.get(models.Order, order_id) is None:
                raise OrderNotFound(order_id)
            return await self._load_history(session, order_id)

    async def list_orders(
        self,
        statuses: Optional[Sequence[OrderStatus]] = None,
        page: int = 1,
        page_size: int = 20,
        include_archived: bool = False,
    ) -> OrderPage:
        query = select(models.Order).order_by(models.Order.created_at.desc(), models.Order.id.desc())
        count_query = select(func.count(models.Order.id))

        if statuses:
            query = query.where(models.Order.status.in_(list(statuses)))
            count_query = count_query.where(models.Order.status.in_(list(statuses)))
        if not include_archived:
            query = query.where(models.Order.is_archived.is_(False))
            count_query = count_query.where(models.Order.is_archived.is_(False))

        async with self._session_maker() as session:
            total = await session.scalar(count_query) or 0
            result = await session.execute(query.offset((page - 1) * page_size).limit(page_size))
            rows = result.scalars().all()
            orders = [await self._to_domain(session, row) for row in rows]

        return OrderPage(orders=orders, total=total, page=page, page_size=page_size)

    # =========================================================================
    # COURIERS
    # =========================================================================

    async def get_delivery_person(self, delivery_person_id: int) -> Optional[DeliveryPerson]:
        async with self._session_maker() as session:
            row = await session.get(models.DeliveryPerson, delivery_person_id)
            if row is None:
                return None
            return DeliveryPerson(id=row.id, name=row.name, is_active=row.is_active)

    # =========================================================================
    # WEBHOOK SUBSCRIPTIONS
    # =========================================================================

    async def list_webhook_subscriptions(
        self,
        event_type: Optional[str] = None,
        include_inactive: bool = False,
    ) -> list[WebhookSubscription]:
        query = select(models.WebhookSubscription).order_by(models.WebhookSubscription.id)
        if event_type is not None:
            query = query.where(models.WebhookSubscription.event_type == event_type)
        if not include_inactive:
            query = query.where(models.WebhookSubscription.is_active.is_(True))

        async with self._session_maker() as session:
            result = await session.execute(query)
            return [_subscription_to_domain(row) for row in result.scalars().all()]

    async def get_webhook_subscription(self, subscription_id: int) -> Optional[WebhookSubscription]:
        async with self._session_maker() as session:
            row = await session.get(models.WebhookSubscription, subscription_id)
            return _subscription_to_domain(row) if row is not None else None

    async def create_webhook_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        async with self._session_maker() as session:
            async with session.begin():
                row = models.WebhookSubscription(
                    url=subscription.url,
                    event_type=subscription.event_type,
                    secret=subscription.secret,
                    is_active=subscription.is_active,
                    headers=json.dumps(subscription.headers) if subscription.headers else None,
                    success_count=0,
                    failure_count=0,
                    created_at=utcnow(),
                )
                session.add(row)
                await session.flush()
                return _subscription_to_domain(row)

    async def deactivate_webhook_subscription(self, subscription_id: int) -> bool:
        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(models.WebhookSubscription)
                    .where(models.WebhookSubscription.id == subscription_id)
                    .values(is_active=False)
                )
                return result.rowcount > 0

    async def record_webhook_attempt(
        self,
        subscription_id: int,
        success: bool,
        triggered_at: datetime,
    ) -> None:
        counter = (
            models.WebhookSubscription.success_count
            if success else models.WebhookSubscription.failure_count
        )
        async with self._session_maker() as session:
            async with session.begin():
                await session.execute(
                    update(models.WebhookSubscription)
                    .where(models.WebhookSubscription.id == subscription_id)
                    .values(**{counter.key: counter + 1, "last_triggered_at": triggered_at})
                )

    async def health_check(self) -> bool:
        try:
            async with self._session_maker() as session:
                await session.execute(select(1))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False
