"""
Celery Worker Configuration
Sets up Celery with Redis as message broker and result backend.
Webhook deliveries run here when WEBHOOK_DELIVERY_MODE=celery.

Start a worker for the webhook queue with:
    celery -A orderflow.celery_worker worker -Q webhooks
"""

from celery import Celery

from orderflow.core.config import Settings, get_settings

WEBHOOK_QUEUE = 'webhooks'

# Headroom on top of the worst-case delivery before the worker is warned
SOFT_LIMIT_MARGIN_SECONDS = 5
HARD_LIMIT_MARGIN_SECONDS = 15


def webhook_time_budget(settings: Settings) -> float:
    """
    Worst-case wall time of one delivery task.

    Subscriptions are delivered concurrently, so the task takes as long as
    one subscription using every attempt: each attempt may hit the HTTP
    timeout, with a backoff sleep between attempts.
    """
    attempts = settings.webhook_max_attempts
    delays = sum(
        settings.webhook_backoff_base_seconds * settings.webhook_backoff_factor ** i
        for i in range(attempts - 1)
    )
    return attempts * settings.webhook_timeout_seconds + delays


settings = get_settings()
_budget = webhook_time_budget(settings)

# Create Celery app
celery_app = Celery(
    'orderflow_worker',
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=['orderflow.tasks']  # Module containing our tasks
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # Routing: deliveries get their own queue so slow endpoints don't
    # hold up anything else on the default queue
    task_routes={
        'orderflow.tasks.deliver_order_webhook': {'queue': WEBHOOK_QUEUE},
    },

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time

    # Result settings
    result_expires=3600,  # Results expire after 1 hour

    # Task execution settings
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies
    task_soft_time_limit=_budget + SOFT_LIMIT_MARGIN_SECONDS,
    task_time_limit=_budget + HARD_LIMIT_MARGIN_SECONDS,

    broker_connection_retry_on_startup=True,
)


if __name__ == '__main__':
    celery_app.start()
