"""
Celery Tasks
Background webhook delivery for order lifecycle events.

The dispatcher already retries each subscription with backoff, so the task
itself is not retried: a second run would deliver to subscribers that
already succeeded.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone

from orderflow.celery_worker import celery_app
from orderflow.services.webhooks import WebhookDispatcher
from orderflow.services.storage import get_order_store

logger = logging.getLogger(__name__)


async def _dispatch(event_type: str, payload: dict) -> list[dict]:
    dispatcher = WebhookDispatcher(get_order_store())
    try:
        results = await dispatcher.dispatch_event(event_type, payload)
    finally:
        await dispatcher.close()
    return [
        {
            "subscription_id": r.subscription_id,
            "url": r.url,
            "success": r.success,
            "attempts": r.attempts,
            "status_code": r.status_code,
            "error": r.error,
            "skipped": r.skipped,
        }
        for r in results
    ]


@celery_app.task(bind=True, acks_late=True)
def deliver_order_webhook(self, event_type: str, payload: dict) -> dict:
    """
    Deliver one order event to every matching webhook subscription.

    Args:
        event_type: Event name, e.g. "order.completed"
        payload: JSON-ready event data

    Returns:
        dict: Per-subscription delivery results
    """
    task_id = self.request.id
    order_id = payload.get("orderId", "unknown")

    logger.info(f"Task {task_id}: delivering {event_type} for order #{order_id}")
    start_time = time.time()

    results = asyncio.run(_dispatch(event_type, payload))

    elapsed = round(time.time() - start_time, 3)
    delivered = sum(1 for r in results if r["success"])
    logger.info(
        f"Task {task_id}: {event_type} for order #{order_id} "
        f"delivered to {delivered}/{len(results)} subscriber(s) in {elapsed}s"
    )
    return {
        "task_id": task_id,
        "event_type": event_type,
        "order_id": order_id,
        "results": results,
        "processing_time_seconds": elapsed,
    }


@celery_app.task
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now(timezone.utc).isoformat()
    }
