"""
Order Lifecycle Error Taxonomy

Every failure the core can report to a caller derives from OrderFlowError.
Each class carries a machine-readable code and the HTTP status the API
layer answers with.

Errors that are best-effort by contract (notification delivery, exhausted
webhook retries) are still modelled here so they can be logged uniformly,
but they are never raised out of a committed transition.
"""

from typing import Optional


class OrderFlowError(Exception):
    """Base class for all order lifecycle errors."""

    code: str = "order_error"
    http_status: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
        }


class OrderNotFound(OrderFlowError):
    code = "order_not_found"
    http_status = 404

    def __init__(self, order_id: int):
        super().__init__(f"Order #{order_id} not found")
        self.order_id = order_id


class InvalidTransition(OrderFlowError):
    """Requested status edge is not in the allowed table."""

    code = "invalid_transition"
    http_status = 409

    def __init__(self, from_status: Optional[str], to_status: str):
        super().__init__(
            f"Cannot change order status from '{from_status}' to '{to_status}'"
        )
        self.from_status = from_status
        self.to_status = to_status


class MissingDeliveryPerson(OrderFlowError):
    code = "missing_delivery_person"
    http_status = 400

    def __init__(self, order_id: int):
        super().__init__("Cannot start delivery without an assigned delivery person")
        self.order_id = order_id


class ReceiptNotVerified(OrderFlowError):
    code = "receipt_not_verified"
    http_status = 400

    def __init__(self, order_id: int, payment_method: Optional[str] = None):
        method = f" ({payment_method})" if payment_method else ""
        super().__init__(
            f"Cannot start delivery until the payment receipt{method} is verified"
        )
        self.order_id = order_id
        self.payment_method = payment_method


class ArchiveNotAllowed(OrderFlowError):
    code = "archive_not_allowed"
    http_status = 409

    def __init__(self, order_id: int, status: str):
        super().__init__(
            f"Order #{order_id} is '{status}'; only completed or cancelled orders can be archived"
        )
        self.order_id = order_id
        self.status = status


class ConcurrencyConflict(OrderFlowError):
    """A save lost a race with another writer of the same order."""

    code = "concurrency_conflict"
    http_status = 409

    def __init__(self, order_id: int, expected_version: int):
        super().__init__(
            f"Order #{order_id} was modified concurrently (expected version {expected_version})"
        )
        self.order_id = order_id
        self.expected_version = expected_version


class CacheMissUnrecoverable(OrderFlowError):
    """The backing fetch behind a cache miss failed."""

    code = "cache_miss_unrecoverable"
    http_status = 503

    def __init__(self, key: str, reason: str):
        super().__init__(f"Could not load '{key}': {reason}")
        self.key = key


class InvalidCoordinates(OrderFlowError):
    code = "invalid_coordinates"
    http_status = 400


class LocationUnavailable(OrderFlowError):
    """The device could not produce a position fix."""

    code = "location_unavailable"
    http_status = 503


class WebhookDeliveryExhausted(OrderFlowError):
    """All delivery attempts for one subscription failed. Logged, never raised to transition callers."""

    code = "webhook_delivery_exhausted"
    http_status = 502

    def __init__(self, url: str, event_type: str, attempts: int, reason: str):
        super().__init__(
            f"Webhook {event_type} -> {url} failed after {attempts} attempts: {reason}"
        )
        self.url = url
        self.event_type = event_type
        self.attempts = attempts


class InvalidStatusFilter(OrderFlowError):
    """Order listing asked for a status that does not exist."""

    code = "invalid_status_filter"
    http_status = 400

    def __init__(self, status_filter: str):
        super().__init__(
            f"Unknown status filter '{status_filter}' (use 'all', 'active' or a status name)"
        )
        self.status_filter = status_filter


class InvalidWebhookSubscription(OrderFlowError):
    """Subscription request with a missing event type or a non-HTTP(S) URL."""

    code = "invalid_webhook_subscription"
    http_status = 400


class WebhookSubscriptionNotFound(OrderFlowError):
    code = "webhook_subscription_not_found"
    http_status = 404

    def __init__(self, subscription_id: int):
        super().__init__(f"Webhook subscription {subscription_id} not found")
        self.subscription_id = subscription_id
