"""
Order Store Factory

Returns the in-memory or SQL order store based on ENV_MODE.

Usage:
    from orderflow.services.storage import get_order_store

    store = get_order_store()
    order = await store.load_order(7)

Author: Khalil Bannouri
Version: 1.0.0
"""

import logging
from functools import lru_cache

from orderflow.core.config import get_settings
from orderflow.services.storage.base import BaseOrderStore
from orderflow.services.storage.memory import MemoryOrderStore

logger = logging.getLogger(__name__)

# Couriers available in development mode so deliveries can be started
DEMO_DELIVERY_PERSONS = [(1, "Carlos Rivera"), (2, "Ana Torres"), (3, "Luis Gomez")]


@lru_cache()
def get_order_store() -> BaseOrderStore:
    """
    Get the configured order store instance.

    Returns:
        BaseOrderStore: MemoryOrderStore in development, SqlOrderStore otherwise
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Order Store: Using MemoryOrderStore (development mode)")
        store = MemoryOrderStore()
        for person_id, name in DEMO_DELIVERY_PERSONS:
            store.add_delivery_person(person_id, name)
        return store
    else:
        from orderflow.database import get_session_maker
        from orderflow.services.storage.sql import SqlOrderStore

        logger.info(f"Order Store: Using SqlOrderStore ({settings.env_mode.value} mode)")
        return SqlOrderStore(get_session_maker())


def reset_order_store() -> None:
    """Clear the cached store instance."""
    get_order_store.cache_clear()
    logger.debug("Order store cache cleared")


__all__ = [
    "get_order_store",
    "reset_order_store",
    "BaseOrderStore",
    "MemoryOrderStore",
]
