"""
Webhook Dispatcher

Delivers signed order events to registered URLs.

Retry policy:
    Up to WEBHOOK_MAX_ATTEMPTS attempts per dispatch call. The delay before
    retry n is base * factor^(n-1): 1s, 4s, 16s with the defaults. A 2xx
    answer is a success; any other status, a timeout or a transport error
    is a failed attempt.

Accounting:
    Exactly one counter update per dispatch call (success_count or
    failure_count, plus last_triggered_at). Counter writes are best-effort:
    a failed write is logged and the delivery result stands.

Subscriptions:
    subscribe() validates the URL and generates a signing secret when the
    caller brings none; unsubscribe() deactivates rather than deletes, so
    delivery statistics survive.

Author: Khalil Bannouri
Version: 1.0.0
"""

import asyncio
import logging
import secrets
from typing import Any, Awaitable, Callable, Optional

import httpx

from orderflow.core.config import Settings, get_settings
from orderflow.core.errors import (
    InvalidWebhookSubscription,
    WebhookDeliveryExhausted,
    WebhookSubscriptionNotFound,
)
from orderflow.domain import WebhookSubscription, utcnow
from orderflow.services.state_machine import ORDER_COMPLETED_EVENT
from orderflow.services.storage.base import BaseOrderStore
from orderflow.services.webhooks.base import (
    EVENT_HEADER,
    SIGNATURE_HEADER,
    DeliveryResult,
    build_body,
    sign_payload,
)

logger = logging.getLogger(__name__)

GLOBAL_SUBSCRIPTION_ID = 0
SECRET_BYTES = 32


class WebhookDispatcher:
    """
    Signed webhook delivery with bounded retries.

    Example:
        >>> dispatcher = WebhookDispatcher(store)
        >>> results = await dispatcher.dispatch_event("order.completed", {"orderId": 7})
    """

    def __init__(
        self,
        store: BaseOrderStore,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

        logger.info(
            f"WebhookDispatcher initialized "
            f"(max_attempts={self.settings.webhook_max_attempts}, "
            f"timeout={self.settings.webhook_timeout_seconds}s)"
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.webhook_timeout_seconds)
            )
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def retry_delays(self) -> list[float]:
        """Delays slept between consecutive attempts."""
        base = self.settings.webhook_backoff_base_seconds
        factor = self.settings.webhook_backoff_factor
        return [base * factor ** i for i in range(self.settings.webhook_max_attempts - 1)]

    # =========================================================================
    # SUBSCRIPTION SELECTION
    # =========================================================================

    async def subscriptions_for(self, event_type: str) -> list[WebhookSubscription]:
        """Active stored subscriptions plus the configured completion URL."""
        subscriptions = [
            s for s in await self.store.list_webhook_subscriptions(event_type) if s.is_active
        ]

        if event_type == ORDER_COMPLETED_EVENT and self.settings.order_completion_webhook_url:
            subscriptions.append(WebhookSubscription(
                id=GLOBAL_SUBSCRIPTION_ID,
                url=self.settings.order_completion_webhook_url,
                event_type=event_type,
                secret="",
            ))

        return subscriptions

    async def dispatch_event(self, event_type: str, payload: dict[str, Any]) -> list[DeliveryResult]:
        """Deliver one event to every matching subscription concurrently."""
        subscriptions = await self.subscriptions_for(event_type)
        if not subscriptions:
            logger.debug(f"No webhook subscriptions for {event_type}")
            return []

        logger.info(f"Dispatching {event_type} to {len(subscriptions)} webhook(s)")
        return list(await asyncio.gather(
            *(self.dispatch(s, event_type, payload) for s in subscriptions)
        ))

    # =========================================================================
    # SUBSCRIPTION MANAGEMENT
    # =========================================================================

    async def subscribe(
        self,
        url: str,
        event_type: str,
        secret: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> WebhookSubscription:
        """
        Register an HTTP(S) endpoint for one event type.

        A signing secret is generated when none is given; it is returned
        here and must be kept by the subscriber.

        Raises:
            InvalidWebhookSubscription: Empty event type or non-HTTP(S) URL
        """
        event_type = (event_type or "").strip()
        if not event_type:
            raise InvalidWebhookSubscription("Event type is required")

        url = (url or "").strip()
        try:
            parsed = httpx.URL(url)
        except httpx.InvalidURL as e:
            raise InvalidWebhookSubscription(f"Invalid URL: {e}") from e
        if parsed.scheme not in ("http", "https") or not parsed.host:
            raise InvalidWebhookSubscription("URL must be an absolute http or https URL")

        if not secret or not secret.strip():
            secret = secrets.token_urlsafe(SECRET_BYTES)

        subscription = await self.store.create_webhook_subscription(WebhookSubscription(
            id=0,
            url=url,
            event_type=event_type,
            secret=secret,
            headers=headers or None,
        ))
        logger.info(f"Webhook subscribed: {event_type} -> {subscription.url} (id={subscription.id})")
        return subscription

    async def unsubscribe(self, subscription_id: int) -> None:
        """
        Raises:
            WebhookSubscriptionNotFound: No such subscription
        """
        if not await self.store.deactivate_webhook_subscription(subscription_id):
            raise WebhookSubscriptionNotFound(subscription_id)
        logger.info(f"Webhook subscription {subscription_id} deactivated")

    async def get_subscription(self, subscription_id: int) -> WebhookSubscription:
        subscription = await self.store.get_webhook_subscription(subscription_id)
        if subscription is None:
            raise WebhookSubscriptionNotFound(subscription_id)
        return subscription

    async def list_subscriptions(self, include_inactive: bool = False) -> list[WebhookSubscription]:
        return await self.store.list_webhook_subscriptions(include_inactive=include_inactive)

    # =========================================================================
    # DELIVERY
    # =========================================================================

    async def dispatch(
        self,
        subscription: WebhookSubscription,
        event_type: str,
        payload: dict[str, Any],
    ) -> DeliveryResult:
        """
        Deliver one event to one subscription, retrying on failure.

        Never raises for delivery problems; the outcome is in the result.
        """
        if not subscription.is_active:
            logger.debug(f"Webhook subscription {subscription.id} is inactive, skipping")
            return DeliveryResult(subscription.id, subscription.url, event_type, success=False, skipped=True)

        if not subscription.secret and subscription.is_persisted:
            logger.warning(
                f"Webhook subscription {subscription.id} has no secret; "
                f"refusing to send an unsigned {event_type} payload"
            )
            return DeliveryResult(
                subscription.id, subscription.url, event_type,
                success=False, skipped=True, error="missing secret",
            )

        triggered_at = utcnow()
        body = build_body(event_type, payload, triggered_at)
        headers = httpx.Headers({
            "Content-Type": "application/json",
            "User-Agent": self.settings.webhook_user_agent,
            EVENT_HEADER: event_type,
            SIGNATURE_HEADER: sign_payload(subscription.secret or "", body),
        })
        if subscription.headers:
            for name, value in subscription.headers.items():
                # Protocol headers cannot be overridden by a subscription
                headers.setdefault(name, value)

        delays = self.retry_delays()
        max_attempts = self.settings.webhook_max_attempts
        last_error = None
        status_code = None

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self.client.post(
                    subscription.url,
                    content=body,
                    headers=headers,
                    timeout=self.settings.webhook_timeout_seconds,
                )
                status_code = response.status_code
                if response.is_success:
                    logger.info(
                        f"Webhook {event_type} -> {subscription.url} "
                        f"delivered (HTTP {status_code}, attempt {attempt})"
                    )
                    await self._record(subscription, True, triggered_at)
                    return DeliveryResult(
                        subscription.id, subscription.url, event_type,
                        success=True, attempts=attempt, status_code=status_code,
                    )
                last_error = f"HTTP {status_code}"
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"

            logger.warning(
                f"Webhook {event_type} -> {subscription.url} "
                f"attempt {attempt}/{max_attempts} failed: {last_error}"
            )
            if attempt < max_attempts:
                await self._sleep(delays[attempt - 1])

        exhausted = WebhookDeliveryExhausted(subscription.url, event_type, max_attempts, last_error or "unknown")
        logger.error(str(exhausted))
        await self._record(subscription, False, triggered_at)
        return DeliveryResult(
            subscription.id, subscription.url, event_type,
            success=False, attempts=max_attempts, status_code=status_code, error=last_error,
        )

    async def _record(self, subscription: WebhookSubscription, success: bool, triggered_at) -> None:
        if not subscription.is_persisted:
            return
        try:
            await self.store.record_webhook_attempt(subscription.id, success, triggered_at)
        except Exception as e:
            logger.warning(f"Could not update counters of webhook subscription {subscription.id}: {e}")
