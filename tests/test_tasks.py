"""
Tests for the Celery webhook task and the Celery delivery mode.
"""

import asyncio
import threading

import httpx
import pytest

from orderflow import celery_worker, tasks
from orderflow.core.config import Settings
from orderflow.domain import Actor, OrderStatus
from orderflow.services.orders import OrderService
from orderflow.services.storage import MemoryOrderStore
from orderflow.services.webhooks import WebhookDispatcher, verify_signature
from orderflow.services.webhooks.base import SIGNATURE_HEADER

from tests.factories import WebhookReceiver, build_order


@pytest.fixture
def task_store(monkeypatch) -> MemoryOrderStore:
    store = MemoryOrderStore()
    monkeypatch.setattr(tasks, "get_order_store", lambda: store)
    return store


@pytest.fixture
def task_receiver(monkeypatch) -> WebhookReceiver:
    receiver = WebhookReceiver()

    async def no_sleep(_seconds):
        return None

    def dispatcher_factory(store):
        client = httpx.AsyncClient(transport=httpx.MockTransport(receiver))
        return WebhookDispatcher(store, client=client, settings=Settings(_env_file=None), sleep=no_sleep)

    monkeypatch.setattr(tasks, "WebhookDispatcher", dispatcher_factory)
    return receiver


class TestDeliverOrderWebhook:
    """The task runs the dispatcher to completion in the worker."""

    def test_delivers_and_reports(self, task_store, task_receiver):
        subscription = task_store.add_webhook_subscription("https://hooks.example.com", "order.completed", secret="k")

        result = tasks.deliver_order_webhook.apply(
            args=("order.completed", {"orderId": 7, "status": "completed"})
        ).get()

        assert result["order_id"] == 7
        assert result["results"][0]["success"] is True
        assert result["results"][0]["subscription_id"] == subscription.id
        request = task_receiver.requests[0]
        assert verify_signature("k", request.content, request.headers[SIGNATURE_HEADER])
        stored = asyncio.run(task_store.get_webhook_subscription(subscription.id))
        assert stored.success_count == 1

    def test_failures_are_reported_not_raised(self, task_store, task_receiver):
        task_receiver.default_status = 500
        task_store.add_webhook_subscription("https://hooks.example.com", "order.completed", secret="k")

        result = tasks.deliver_order_webhook.apply(args=("order.completed", {"orderId": 7})).get()

        assert result["results"][0]["success"] is False
        assert result["results"][0]["attempts"] == 3

    def test_no_subscribers(self, task_store, task_receiver):
        result = tasks.deliver_order_webhook.apply(args=("order.completed", {"orderId": 7})).get()

        assert result["results"] == []
        assert task_receiver.requests == []

    def test_health_check_task(self):
        assert tasks.health_check.apply().get()["status"] == "healthy"


class TestCeleryDeliveryMode:
    async def test_completion_is_queued_on_celery(self, monkeypatch, store, cache, fanout, dispatcher, receiver):
        queued = []

        class FakeTask:
            def delay(self, event_type, payload):
                queued.append((event_type, payload))

        monkeypatch.setattr(tasks, "deliver_order_webhook", FakeTask())
        settings = Settings(_env_file=None, webhook_delivery_mode="celery")
        service = OrderService(store, cache, fanout, dispatcher, settings=settings)
        await store.create_order(build_order(7, OrderStatus.DELIVERING, delivery_person_id=3))

        await service.request_transition(7, "completed", Actor.DELIVERY)
        await service.drain()

        assert [event for event, _ in queued] == ["order.completed"]
        assert queued[0][1]["orderId"] == 7
        assert queued[0][1]["status"] == "completed"
        assert receiver.requests == []

    async def test_broker_publish_runs_off_the_event_loop(self, monkeypatch, store, cache, fanout, dispatcher):
        released = threading.Event()
        calls = []

        class SlowBrokerTask:
            def delay(self, event_type, payload):
                calls.append(threading.get_ident())
                released.wait(timeout=5)

        monkeypatch.setattr(tasks, "deliver_order_webhook", SlowBrokerTask())
        settings = Settings(_env_file=None, webhook_delivery_mode="celery")
        service = OrderService(store, cache, fanout, dispatcher, settings=settings)
        await store.create_order(build_order(7, OrderStatus.DELIVERING, delivery_person_id=3))

        order = await service.request_transition(7, "completed", Actor.DELIVERY)
        # The per-order lock is free while the broker is still stuck
        archived = await service.archive_order(7)
        released.set()
        await service.drain()

        assert order.status == OrderStatus.COMPLETED
        assert archived.is_archived
        assert len(calls) == 1
        assert calls[0] != threading.get_ident()

    async def test_broker_failure_does_not_fail_transition(self, monkeypatch, store, cache, fanout, dispatcher):
        class DownBrokerTask:
            def delay(self, event_type, payload):
                raise ConnectionError("broker unreachable")

        monkeypatch.setattr(tasks, "deliver_order_webhook", DownBrokerTask())
        settings = Settings(_env_file=None, webhook_delivery_mode="celery")
        service = OrderService(store, cache, fanout, dispatcher, settings=settings)
        await store.create_order(build_order(7, OrderStatus.DELIVERING, delivery_person_id=3))

        order = await service.request_transition(7, "completed", Actor.DELIVERY)
        await service.drain()

        assert order.status == OrderStatus.COMPLETED
        assert (await store.load_order(7)).status == OrderStatus.COMPLETED


class TestWorkerConfiguration:
    """Webhook deliveries get their own queue and a bounded run time."""

    def test_delivery_task_is_routed_to_webhook_queue(self):
        routes = celery_worker.celery_app.conf.task_routes

        assert routes[tasks.deliver_order_webhook.name] == {"queue": celery_worker.WEBHOOK_QUEUE}

    def test_tasks_are_acknowledged_after_completion(self):
        assert celery_worker.celery_app.conf.task_acks_late is True
        assert tasks.deliver_order_webhook.acks_late is True

    def test_time_budget_covers_every_attempt_and_backoff(self):
        settings = Settings(
            _env_file=None,
            webhook_timeout_seconds=10.0,
            webhook_max_attempts=3,
            webhook_backoff_base_seconds=1.0,
            webhook_backoff_factor=4.0,
        )

        # three timeouts plus the 1s and 4s sleeps between them
        assert celery_worker.webhook_time_budget(settings) == 35.0

    def test_single_attempt_has_no_backoff(self):
        settings = Settings(_env_file=None, webhook_timeout_seconds=2.5, webhook_max_attempts=1)

        assert celery_worker.webhook_time_budget(settings) == 2.5

    def test_hard_limit_exceeds_soft_limit(self):
        conf = celery_worker.celery_app.conf
        budget = celery_worker.webhook_time_budget(celery_worker.settings)

        assert budget < conf.task_soft_time_limit < conf.task_time_limit
