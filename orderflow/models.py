"""
SQLAlchemy Database Models

Persisted layout of the order lifecycle:
- Order rows with an optimistic-concurrency version column
- Append-only status history rows
- Webhook subscriptions with running delivery counters
- Delivery persons (looked up when a courier is assigned)

Author: Khalil Bannouri
Version: 1.0.0
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.sql import func

from orderflow.database import Base
from orderflow.domain import OrderStatus


class DeliveryPerson(Base):
    """Courier that can be assigned to orders."""
    __tablename__ = "delivery_persons"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    def __repr__(self):
        return f"<DeliveryPerson #{self.id} - {self.name}>"


class Order(Base):
    """
    Main Order table.

    `status` mirrors the last row of order_status_history; `version` is
    bumped by every update and checked on write.
    """
    __tablename__ = "orders"

    # Primary Key
    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # =========================================================================
    # ORDER STATUS
    # =========================================================================
    status = Column(
        Enum(OrderStatus),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )
    is_archived = Column(Boolean, default=False, nullable=False, index=True)
    version = Column(Integer, default=0, nullable=False)

    # =========================================================================
    # CUSTOMER
    # =========================================================================
    customer_id = Column(Integer, nullable=True, index=True)
    customer_name = Column(String(100), nullable=True)

    # =========================================================================
    # PRICING / PAYMENT
    # =========================================================================
    total = Column(Numeric(10, 2), nullable=False, default=0)
    payment_method = Column(String(50), nullable=True)  # cash, card, transfer...
    requires_receipt = Column(Boolean, default=False, nullable=False)
    receipt_verified = Column(Boolean, default=False, nullable=False)
    receipt_verified_at = Column(DateTime(timezone=True), nullable=True)
    receipt_verified_by = Column(String(100), nullable=True)

    # =========================================================================
    # DELIVERY
    # =========================================================================
    delivery_person_id = Column(Integer, ForeignKey("delivery_persons.id"), nullable=True, index=True)
    delivery_latitude = Column(Float, nullable=True)
    delivery_longitude = Column(Float, nullable=True)
    delivery_location_updated_at = Column(DateTime(timezone=True), nullable=True)
    customer_latitude = Column(Float, nullable=True)
    customer_longitude = Column(Float, nullable=True)
    customer_location_updated_at = Column(DateTime(timezone=True), nullable=True)
    estimated_delivery_minutes = Column(Integer, nullable=True)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<Order #{self.id} - {self.status.value} - v{self.version}>"


class OrderStatusHistory(Base):
    """One accepted status transition. Rows are never updated or deleted."""
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    changed_by = Column(String(100), nullable=False)  # "admin", "delivery", "system" or a username
    note = Column(Text, nullable=True)
    changed_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<OrderStatusHistory #{self.order_id} {self.from_status} -> {self.to_status}>"


class WebhookSubscription(Base):
    """External URL registered for an order event type."""
    __tablename__ = "webhook_subscriptions"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    url = Column(String(500), nullable=False)
    event_type = Column(String(100), nullable=False, index=True)  # order.completed, ...
    secret = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    user_id = Column(Integer, nullable=True)
    headers = Column(Text, nullable=True)  # JSON object of extra headers

    # Delivery statistics
    success_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    last_triggered_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<WebhookSubscription #{self.id} {self.event_type} -> {self.url}>"
