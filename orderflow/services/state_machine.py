"""
Order State Machine

Pure validation and application of order status transitions.

    pending ──► preparing ──► delivering ──► completed
       │            │
       └────────────┴──► cancelled

The machine never performs I/O. A successful transition returns the updated
order together with a list of Effect descriptors; the OrderService executes
them after the new state is committed.

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional, Union

from orderflow.core.errors import (
    ArchiveNotAllowed,
    InvalidTransition,
    MissingDeliveryPerson,
    ReceiptNotVerified,
)
from orderflow.domain import (
    FINAL_STATUSES,
    Order,
    OrderStatus,
    StatusHistoryEntry,
    utcnow,
)

logger = logging.getLogger(__name__)


ORDER_COMPLETED_EVENT = "order.completed"

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.DELIVERING, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERING: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


# =============================================================================
# EFFECTS
# =============================================================================

@dataclass(frozen=True)
class AppendHistory:
    """Persist one status history row."""
    order_id: int
    entry: StatusHistoryEntry


@dataclass(frozen=True)
class InvalidateCache:
    """Drop every cached payload that includes this order."""
    order_id: int


@dataclass(frozen=True)
class Notify:
    """Fan a status change out to real-time subscribers."""
    order_id: int
    status: OrderStatus
    timestamp: datetime
    delivery_person_name: Optional[str] = None
    delivery_person_id: Optional[int] = None


@dataclass(frozen=True)
class DispatchWebhook:
    """Deliver an order event to external subscribers."""
    event_type: str
    order_id: int


Effect = Union[AppendHistory, InvalidateCache, Notify, DispatchWebhook]


@dataclass
class TransitionResult:
    """Outcome of apply/archive/restore. `changed` is False for no-ops."""
    order: Order
    effects: list[Effect] = field(default_factory=list)
    changed: bool = False


# =============================================================================
# STATE MACHINE
# =============================================================================

class OrderStateMachine:
    """
    Validates and applies status transitions.

    The input order is never mutated; callers receive a copy.

    Example:
        >>> machine = OrderStateMachine()
        >>> result = machine.apply(order, "preparing", actor="admin")
        >>> result.order.status
        <OrderStatus.PREPARING: 'preparing'>
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    @staticmethod
    def can_transition(from_status: OrderStatus, to_status: OrderStatus) -> bool:
        return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())

    @staticmethod
    def parse_status(current: OrderStatus, requested: Union[str, OrderStatus]) -> OrderStatus:
        """Coerce a client-supplied status, rejecting unknown values."""
        if isinstance(requested, OrderStatus):
            return requested
        try:
            return OrderStatus(str(requested).strip().lower())
        except ValueError:
            raise InvalidTransition(current.value, str(requested))

    def apply(
        self,
        order: Order,
        requested_status: Union[str, OrderStatus],
        actor: str,
        delivery_person_id: Optional[int] = None,
        delivery_person_name: Optional[str] = None,
        note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TransitionResult:
        """
        Validate and apply a transition.

        Args:
            order: Current order state
            requested_status: Target status (enum or its string value)
            actor: Who requested the change ("admin", "delivery", a username...)
            delivery_person_id: Courier to assign together with the change
            delivery_person_name: Display name of that courier, if known
            note: Optional free text stored in the history entry
            now: Timestamp override (defaults to the machine clock)

        Returns:
            TransitionResult with the updated copy and its effects

        Raises:
            InvalidTransition: Unknown status or edge not allowed
            MissingDeliveryPerson: Entering delivering with no courier
            ReceiptNotVerified: Entering delivering with an unverified receipt
        """
        current = order.status
        target = self.parse_status(current, requested_status)

        if target == current:
            if (
                delivery_person_id is not None
                and order.delivery_person_id is not None
                and delivery_person_id != order.delivery_person_id
            ):
                # Reassigning a courier is not a status edge
                raise InvalidTransition(current.value, target.value)
            logger.debug(f"Order #{order.id} already '{current.value}', nothing to apply")
            return TransitionResult(order=order.copy(), effects=[], changed=False)

        if not self.can_transition(current, target):
            raise InvalidTransition(current.value, target.value)

        assigned_id = delivery_person_id if delivery_person_id is not None else order.delivery_person_id
        if delivery_person_id is not None and delivery_person_id == order.delivery_person_id:
            assigned_name = delivery_person_name or order.delivery_person_name
        elif delivery_person_id is not None:
            assigned_name = delivery_person_name
        else:
            assigned_name = order.delivery_person_name

        if target == OrderStatus.DELIVERING:
            if assigned_id is None:
                raise MissingDeliveryPerson(order.id)
            if order.requires_receipt and not order.receipt_verified:
                raise ReceiptNotVerified(order.id, order.payment_method)

        timestamp = now or self._clock()
        if order.status_history and timestamp < order.status_history[-1].changed_at:
            # History must stay monotonic even if clocks drift between nodes
            timestamp = order.status_history[-1].changed_at

        entry = StatusHistoryEntry(
            from_status=current,
            to_status=target,
            changed_by=actor,
            changed_at=timestamp,
            note=note,
        )

        updated = order.copy()
        updated.status = target
        updated.status_history.append(entry)
        updated.delivery_person_id = assigned_id
        updated.delivery_person_name = assigned_name
        updated.updated_at = timestamp

        effects: list[Effect] = [
            AppendHistory(order_id=order.id, entry=entry),
            InvalidateCache(order_id=order.id),
            Notify(
                order_id=order.id,
                status=target,
                timestamp=timestamp,
                delivery_person_name=assigned_name,
                delivery_person_id=assigned_id,
            ),
        ]
        if target == OrderStatus.COMPLETED:
            effects.append(DispatchWebhook(event_type=ORDER_COMPLETED_EVENT, order_id=order.id))

        logger.info(f"Order #{order.id}: {current.value} -> {target.value} by {actor}")
        return TransitionResult(order=updated, effects=effects, changed=True)

    def archive(self, order: Order, now: Optional[datetime] = None) -> TransitionResult:
        """Soft-delete a finished order. Does not touch the history."""
        if order.status not in FINAL_STATUSES:
            raise ArchiveNotAllowed(order.id, order.status.value)
        if order.is_archived:
            return TransitionResult(order=order.copy(), effects=[], changed=False)

        updated = order.copy()
        updated.is_archived = True
        updated.updated_at = now or self._clock()
        return TransitionResult(
            order=updated,
            effects=[InvalidateCache(order_id=order.id)],
            changed=True,
        )

    def restore(self, order: Order, now: Optional[datetime] = None) -> TransitionResult:
        """Undo archive."""
        if not order.is_archived:
            return TransitionResult(order=order.copy(), effects=[], changed=False)

        updated = order.copy()
        updated.is_archived = False
        updated.updated_at = now or self._clock()
        return TransitionResult(
            order=updated,
            effects=[InvalidateCache(order_id=order.id)],
            changed=True,
        )
