"""
Webhook Service Factory

Usage:
    from orderflow.services.webhooks import get_webhook_dispatcher

    dispatcher = get_webhook_dispatcher()
    await dispatcher.dispatch_event("order.completed", payload)

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from orderflow.services.storage import get_order_store
from orderflow.services.webhooks.base import (
    DeliveryResult,
    build_body,
    order_webhook_payload,
    sign_payload,
    verify_signature,
)
from orderflow.services.webhooks.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


@lru_cache()
def get_webhook_dispatcher() -> WebhookDispatcher:
    """Get the process-wide dispatcher bound to the configured order store."""
    return WebhookDispatcher(get_order_store())


def reset_webhook_dispatcher() -> None:
    get_webhook_dispatcher.cache_clear()
    logger.debug("Webhook dispatcher cache cleared")


__all__ = [
    "get_webhook_dispatcher",
    "reset_webhook_dispatcher",
    "WebhookDispatcher",
    "DeliveryResult",
    "build_body",
    "sign_payload",
    "verify_signature",
    "order_webhook_payload",
]
