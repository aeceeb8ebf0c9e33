"""
Tests for WebhookDispatcher: signing, retries and counters.
"""

import json
from datetime import datetime, timezone

import httpx
import pytest

from orderflow.core.config import Settings
from orderflow.core.errors import InvalidWebhookSubscription, WebhookSubscriptionNotFound
from orderflow.services.webhooks import (
    WebhookDispatcher,
    build_body,
    order_webhook_payload,
    sign_payload,
    verify_signature,
)
from orderflow.services.webhooks.base import EVENT_HEADER, SIGNATURE_HEADER

from tests.factories import build_order

EVENT = "order.completed"
PAYLOAD = {"orderId": 7, "status": "completed"}


class FailingCounterStore:
    """Wraps a store and makes counter writes fail."""

    def __init__(self, store):
        self._store = store

    def __getattr__(self, name):
        return getattr(self._store, name)

    async def record_webhook_attempt(self, subscription_id, success, triggered_at):
        raise RuntimeError("database is read-only")


class TestSigning:
    """Body layout and HMAC signatures."""

    def test_body_layout(self):
        ts = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        body = json.loads(build_body(EVENT, PAYLOAD, ts))

        assert body == {"event": EVENT, "timestamp": "2024-05-01T12:00:00+00:00", "data": PAYLOAD}

    def test_signature_roundtrip(self):
        body = b'{"event":"order.completed"}'
        signature = sign_payload("s3cret", body)

        assert verify_signature("s3cret", body, signature)
        assert not verify_signature("other", body, signature)
        assert not verify_signature("s3cret", body + b" ", signature)

    def test_order_payload(self):
        order = build_order(customer_name="Jane", payment_method="card", delivery_person_id=3)
        payload = order_webhook_payload(order)

        assert payload["orderId"] == 7
        assert payload["status"] == "pending"
        assert payload["total"] == "25.00"
        assert payload["customerName"] == "Jane"
        assert payload["deliveryPersonId"] == 3


class TestDelivery:
    """HTTP delivery and retry policy."""

    async def test_signed_request(self, store, dispatcher, receiver):
        subscription = store.add_webhook_subscription(
            "https://hooks.example.com/orders", EVENT, secret="s3cret",
            headers={"X-Tenant": "north", "X-Webhook-Signature": "forged"},
        )

        result = await dispatcher.dispatch(subscription, EVENT, PAYLOAD)

        assert result.success
        assert result.attempts == 1
        request = receiver.requests[0]
        assert request.method == "POST"
        assert request.headers[EVENT_HEADER] == EVENT
        assert request.headers["X-Tenant"] == "north"
        assert request.headers["Content-Type"] == "application/json"
        assert verify_signature("s3cret", request.content, request.headers[SIGNATURE_HEADER])
        assert json.loads(request.content)["data"] == PAYLOAD

    async def test_retries_with_backoff_then_succeeds(self, store, dispatcher, receiver, sleeps):
        receiver.statuses = [500, 0, 200]
        subscription = store.add_webhook_subscription("https://hooks.example.com", EVENT, secret="k")

        result = await dispatcher.dispatch(subscription, EVENT, PAYLOAD)

        assert result.success
        assert result.attempts == 3
        assert sleeps == [1.0, 4.0]
        assert len(receiver.requests) == 3

    async def test_every_attempt_sends_the_same_signed_body(self, store, dispatcher, receiver):
        receiver.statuses = [503, 200]
        subscription = store.add_webhook_subscription("https://hooks.example.com", EVENT, secret="k")

        await dispatcher.dispatch(subscription, EVENT, PAYLOAD)

        first, second = receiver.requests
        assert first.content == second.content
        assert first.headers[SIGNATURE_HEADER] == second.headers[SIGNATURE_HEADER]

    async def test_exhausted_attempts(self, store, dispatcher, receiver, sleeps):
        receiver.default_status = 502
        subscription = store.add_webhook_subscription("https://hooks.example.com", EVENT, secret="k")

        result = await dispatcher.dispatch(subscription, EVENT, PAYLOAD)

        assert not result.success
        assert result.attempts == 3
        assert result.status_code == 502
        assert result.error == "HTTP 502"
        assert sleeps == [1.0, 4.0]

    async def test_transport_error_is_reported(self, store, dispatcher, receiver):
        receiver.default_status = 0
        subscription = store.add_webhook_subscription("https://hooks.example.com", EVENT, secret="k")

        result = await dispatcher.dispatch(subscription, EVENT, PAYLOAD)

        assert not result.success
        assert result.error.startswith("ConnectError")

    def test_retry_delays_follow_settings(self, store):
        settings = Settings(_env_file=None, webhook_max_attempts=4, webhook_backoff_base_seconds=2, webhook_backoff_factor=3)
        dispatcher = WebhookDispatcher(store, settings=settings)
        assert dispatcher.retry_delays() == [2, 6, 18]


class TestAccounting:
    """One counter update per dispatch."""

    async def test_success_increments_once(self, store, dispatcher, receiver):
        receiver.statuses = [500, 200]
        subscription = store.add_webhook_subscription("https://hooks.example.com", EVENT, secret="k")

        await dispatcher.dispatch(subscription, EVENT, PAYLOAD)

        stored = await store.get_webhook_subscription(subscription.id)
        assert stored.success_count == 1
        assert stored.failure_count == 0
        assert stored.last_triggered_at is not None

    async def test_failure_increments_once(self, store, dispatcher, receiver):
        receiver.default_status = 500
        subscription = store.add_webhook_subscription("https://hooks.example.com", EVENT, secret="k")

        await dispatcher.dispatch(subscription, EVENT, PAYLOAD)

        stored = await store.get_webhook_subscription(subscription.id)
        assert stored.success_count == 0
        assert stored.failure_count == 1

    async def test_counter_failure_does_not_change_result(self, store, settings, receiver, sleeps):
        subscription = store.add_webhook_subscription("https://hooks.example.com", EVENT, secret="k")
        client = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
        dispatcher = WebhookDispatcher(FailingCounterStore(store), client=client, settings=settings)

        result = await dispatcher.dispatch(subscription, EVENT, PAYLOAD)

        assert result.success
        await client.aclose()


class TestSelection:
    """Which subscriptions receive an event."""

    async def test_inactive_subscription_is_skipped(self, store, dispatcher, receiver):
        subscription = store.add_webhook_subscription(
            "https://hooks.example.com", EVENT, secret="k", is_active=False,
        )

        result = await dispatcher.dispatch(subscription, EVENT, PAYLOAD)

        assert result.skipped
        assert receiver.requests == []
        assert await dispatcher.dispatch_event(EVENT, PAYLOAD) == []

    async def test_subscription_without_secret_is_skipped(self, store, dispatcher, receiver):
        subscription = store.add_webhook_subscription("https://hooks.example.com", EVENT)

        result = await dispatcher.dispatch(subscription, EVENT, PAYLOAD)

        assert result.skipped
        assert result.error == "missing secret"
        assert receiver.requests == []
        assert (await store.get_webhook_subscription(subscription.id)).failure_count == 0

    async def test_only_matching_event_type(self, store, dispatcher, receiver):
        store.add_webhook_subscription("https://a.example.com", EVENT, secret="k")
        store.add_webhook_subscription("https://b.example.com", "order.cancelled", secret="k")

        results = await dispatcher.dispatch_event(EVENT, PAYLOAD)

        assert [r.url for r in results] == ["https://a.example.com"]
        assert [r.url.host for r in receiver.requests] == ["a.example.com"]

    async def test_global_completion_url(self, store, receiver, sleeps):
        settings = Settings(_env_file=None, order_completion_webhook_url="https://erp.example.com/hook")
        client = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
        dispatcher = WebhookDispatcher(store, client=client, settings=settings)
        subscription = store.add_webhook_subscription("https://a.example.com", EVENT, secret="k")

        results = await dispatcher.dispatch_event(EVENT, PAYLOAD)

        assert sorted(r.subscription_id for r in results) == [0, subscription.id]
        assert all(r.success for r in results)
        assert (await store.get_webhook_subscription(subscription.id)).success_count == 1
        global_request = next(r for r in receiver.requests if r.url.host == "erp.example.com")
        assert verify_signature("", global_request.content, global_request.headers[SIGNATURE_HEADER])
        await client.aclose()

    async def test_global_url_only_for_completion(self, store, receiver):
        settings = Settings(_env_file=None, order_completion_webhook_url="https://erp.example.com/hook")
        dispatcher = WebhookDispatcher(store, settings=settings)

        assert await dispatcher.subscriptions_for("order.cancelled") == []


class TestSubscriptionManagement:
    """subscribe / unsubscribe through the dispatcher."""

    async def test_subscribe_generates_secret_and_receives_events(self, store, dispatcher, receiver):
        subscription = await dispatcher.subscribe("https://hooks.example.com/orders", EVENT)

        results = await dispatcher.dispatch_event(EVENT, PAYLOAD)

        assert subscription.secret
        assert [r.subscription_id for r in results] == [subscription.id]
        request = receiver.requests[0]
        assert verify_signature(subscription.secret, request.content, request.headers[SIGNATURE_HEADER])

    async def test_subscribe_keeps_given_secret_and_headers(self, dispatcher):
        subscription = await dispatcher.subscribe(
            " https://hooks.example.com ", f" {EVENT} ", secret="k", headers={"X-Tenant": "north"},
        )

        assert subscription.url == "https://hooks.example.com"
        assert subscription.event_type == EVENT
        assert subscription.secret == "k"
        assert subscription.headers == {"X-Tenant": "north"}

    @pytest.mark.parametrize("url,event_type", [
        ("mailto:ops@example.com", EVENT),
        ("/relative/path", EVENT),
        ("https://hooks.example.com", "  "),
    ])
    async def test_invalid_subscription(self, store, dispatcher, url, event_type):
        with pytest.raises(InvalidWebhookSubscription):
            await dispatcher.subscribe(url, event_type)

        assert await store.list_webhook_subscriptions(include_inactive=True) == []

    async def test_unsubscribe_stops_deliveries(self, dispatcher, receiver):
        subscription = await dispatcher.subscribe("https://hooks.example.com", EVENT)

        await dispatcher.unsubscribe(subscription.id)

        assert await dispatcher.dispatch_event(EVENT, PAYLOAD) == []
        assert receiver.requests == []
        assert (await dispatcher.get_subscription(subscription.id)).is_active is False
        assert await dispatcher.list_subscriptions() == []
        assert len(await dispatcher.list_subscriptions(include_inactive=True)) == 1

    async def test_unknown_subscription(self, dispatcher):
        with pytest.raises(WebhookSubscriptionNotFound):
            await dispatcher.unsubscribe(99)
        with pytest.raises(WebhookSubscriptionNotFound):
            await dispatcher.get_subscription(99)
