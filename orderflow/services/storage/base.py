"""
Order Store Abstract Base Class

Defines the persistence contract the OrderService relies on.
Both MemoryOrderStore and SqlOrderStore must implement these methods.

Guarantees expected from every implementation:
    - Reads and writes are strongly consistent per order id
    - save_order is a compare-and-set on `version`: a stale write raises
      ConcurrencyConflict and changes nothing
    - History rows passed to save_order are committed atomically with the row

Author: Khalil Bannouri
Version: 1.0.0
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Sequence

from orderflow.domain import (
    DeliveryPerson,
    Order,
    OrderPage,
    OrderStatus,
    StatusHistoryEntry,
    WebhookSubscription,
)


class BaseOrderStore(ABC):
    """Abstract base class for order persistence."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the store name (e.g., "memory", "sql")."""
        pass

    # =========================================================================
    # ORDERS
    # =========================================================================

    @abstractmethod
    async def create_order(self, order: Order) -> Order:
        """
        Insert a new order together with its seed history.

        Args:
            order: Order to insert; `id == 0` lets the store assign one

        Returns:
            The stored order (with id and version 0)
        """
        pass

    @abstractmethod
    async def load_order(self, order_id: int) -> Order:
        """
        Load an order with its full status history.

        Raises:
            OrderNotFound: No such order
        """
        pass

    @abstractmethod
    async def save_order(
        self,
        order: Order,
        expected_version: int,
        history: Sequence[StatusHistoryEntry] = (),
    ) -> Order:
        """
        Persist an order if nobody else wrote it since `expected_version`.

        Args:
            order: New state of the order
            expected_version: Version the caller loaded
            history: New history entries to append in the same transaction

        Returns:
            The stored order with its incremented version

        Raises:
            ConcurrencyConflict: The stored version moved on
            OrderNotFound: No such order
        """
        pass

    @abstractmethod
    async def get_history(self, order_id: int) -> list[StatusHistoryEntry]:
        """History of one order, oldest first."""
        pass

    @abstractmethod
    async def list_orders(
        self,
        statuses: Optional[Sequence[OrderStatus]] = None,
        page: int = 1,
        page_size: int = 20,
        include_archived: bool = False,
    ) -> OrderPage:
        """Newest-first page of orders, optionally filtered by status."""
        pass

    # =========================================================================
    # COURIERS
    # =========================================================================

    @abstractmethod
    async def get_delivery_person(self, delivery_person_id: int) -> Optional[DeliveryPerson]:
        pass

    # =========================================================================
    # WEBHOOK SUBSCRIPTIONS
    # =========================================================================

    @abstractmethod
    async def list_webhook_subscriptions(
        self,
        event_type: Optional[str] = None,
        include_inactive: bool = False,
    ) -> list[WebhookSubscription]:
        """Subscriptions for one event type (or all), active ones unless asked otherwise."""
        pass

    @abstractmethod
    async def get_webhook_subscription(self, subscription_id: int) -> Optional[WebhookSubscription]:
        pass

    @abstractmethod
    async def create_webhook_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        """
        Insert a subscription.

        Args:
            subscription: Subscription to insert; its id is assigned by the store

        Returns:
            The stored subscription with zeroed counters
        """
        pass

    @abstractmethod
    async def deactivate_webhook_subscription(self, subscription_id: int) -> bool:
        """Stop deliveries to a subscription. Returns False if it does not exist."""
        pass

    @abstractmethod
    async def record_webhook_attempt(
        self,
        subscription_id: int,
        success: bool,
        triggered_at: datetime,
    ) -> None:
        """Atomically increment success_count or failure_count and stamp last_triggered_at."""
        pass

    async def health_check(self) -> bool:
        return True
