"""
Location Uploader

Pushes courier positions to the order API:

    PATCH {api}/api/orders/{order_id}/delivery-location
    {"orderId": 7, "latitude": 40.71, "longitude": -74.0}
"""

import logging
from typing import Optional

import httpx

from orderflow.core.config import get_settings

logger = logging.getLogger(__name__)


class LocationUploader:
    """Thin httpx client for the delivery-location endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
        actor: str = "delivery",
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.tracking_api_base_url).rstrip("/")
        self.timeout = timeout or settings.tracking_request_timeout_seconds
        self.actor = actor
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout))
        return self._client

    def url_for(self, order_id: int) -> str:
        return f"{self.base_url}/api/orders/{order_id}/delivery-location"

    async def push(self, order_id: int, latitude: float, longitude: float) -> None:
        """
        Send one position.

        Raises:
            httpx.HTTPError: Transport failure or non-2xx answer
        """
        response = await self.client.patch(
            self.url_for(order_id),
            json={"orderId": order_id, "latitude": latitude, "longitude": longitude},
            headers={"X-Actor": self.actor},
        )
        response.raise_for_status()
        logger.debug(f"Pushed location for order #{order_id}: ({latitude}, {longitude})")

    async def close(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
