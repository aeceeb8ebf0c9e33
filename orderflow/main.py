"""
FastAPI Application Entry Point

Order Lifecycle Service - thin HTTP/WebSocket surface over OrderService.
Uses in-process backends in development and Postgres/Redis otherwise.

Endpoints:
    - POST  /api/orders: Create an order
    - GET   /api/orders: List orders (ETag / If-None-Match)
    - GET   /api/orders/{id}: Get one order (ETag / If-None-Match)
    - GET   /api/orders/{id}/history: Status history, newest first
    - PUT   /api/orders/{id}/status: Request a status transition
    - PATCH /api/orders/{id}/delivery-location: Courier position
    - PATCH /api/orders/{id}/customer-location: Delivery destination
    - PUT   /api/orders/{id}/receipt/verify: Verify the payment receipt
    - POST  /api/orders/{id}/archive | /restore
    - POST  /api/webhooks/subscribe: Register a webhook endpoint
    - GET   /api/webhooks: List webhook subscriptions
    - GET   /api/webhooks/{id} | DELETE /api/webhooks/{id}
    - WS    /ws/orders: Real-time order events
    - GET   /health: System health check

The caller identity comes from the X-Actor header and is trusted.

Author: Khalil Bannouri
Version: 1.0.0
"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional, Union

from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response

from orderflow.core.config import get_settings, setup_logging
from orderflow.core.errors import OrderFlowError
from orderflow.schemas import (
    ErrorResponse,
    HealthResponse,
    LocationUpdateRequest,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    ReceiptVerifyRequest,
    TransitionRequest,
    WebhookSubscribedResponse,
    WebhookSubscribeRequest,
    WebhookSubscriptionResponse,
)
from orderflow.services.cache import CachedValue, NotModified
from orderflow.services.notifications.websocket import WebSocketConnection
from orderflow.services.orders import OrderService, get_order_service, order_payload

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Webhook delivery: {settings.webhook_delivery_mode.value}")
    logger.info("=" * 60)

    if settings.use_real_services:
        from orderflow.database import init_db

        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"Missing production config: {missing}")
        await init_db()
        logger.info("Database initialized")

    service = get_order_service()
    logger.info(f"Order store: {service.store.provider_name}")
    logger.info(f"Cache backend: {service.cache.backend.provider_name}")

    yield  # Application runs

    logger.info("Shutting down...")
    await service.drain()
    await service.fanout.close()
    await service.dispatcher.close()
    await service.cache.backend.close()
    if settings.use_real_services:
        from orderflow.database import dispose_engine

        await dispose_engine()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order lifecycle coordination: status transitions, cached reads with "
        "ETags, real-time fan-out and signed webhooks."
    ),
    version=settings.app_version,
    lifespan=lifespan,
)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def cached_response(result: Union[CachedValue, NotModified]) -> Response:
    """Turn a cache read into a 200 with ETag or a bare 304."""
    if isinstance(result, NotModified):
        return Response(status_code=304, headers={"ETag": result.etag})
    return JSONResponse(
        content=result.value,
        headers={"ETag": result.etag, "X-Cache": "HIT" if result.from_cache else "MISS"},
    )


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "health": "/health",
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(service: OrderService = Depends(get_order_service)) -> HealthResponse:
    """Verify store and cache are reachable."""
    checks = await service.health_check()
    healthy = all(checks.values())
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        store="healthy" if checks["store"] else "unhealthy",
        cache="healthy" if checks["cache"] else "unhealthy",
        connections=service.fanout.connection_count,
        environment=settings.env_mode.value,
        timestamp=datetime.now(timezone.utc),
    )


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.post("/api/orders", response_model=OrderResponse, status_code=201, tags=["Orders"])
async def create_order(
    request: OrderCreate,
    service: OrderService = Depends(get_order_service),
) -> dict:
    order = await service.create_order(
        total=request.total,
        customer_id=request.customer_id,
        customer_name=request.customer_name,
        payment_method=request.payment_method,
    )
    return order_payload(order)


@app.get("/api/orders", response_model=OrderListResponse, tags=["Orders"])
async def list_orders(
    status: str = Query("all", description="'all', 'active' or a status name"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    include_archived: bool = Query(False),
    if_none_match: Optional[str] = Header(None),
    service: OrderService = Depends(get_order_service),
) -> Response:
    result = await service.list_orders(
        status_filter=status,
        page=page,
        page_size=page_size,
        include_archived=include_archived,
        if_none_match=if_none_match,
    )
    return cached_response(result)


@app.get("/api/orders/{order_id}", response_model=OrderResponse, tags=["Orders"])
async def get_order(
    order_id: int,
    if_none_match: Optional[str] = Header(None),
    service: OrderService = Depends(get_order_service),
) -> Response:
    return cached_response(await service.get_order(order_id, if_none_match=if_none_match))


@app.get("/api/orders/{order_id}/history", tags=["Orders"])
async def get_history(
    order_id: int,
    if_none_match: Optional[str] = Header(None),
    service: OrderService = Depends(get_order_service),
) -> Response:
    return cached_response(await service.get_history(order_id, if_none_match=if_none_match))


@app.put("/api/orders/{order_id}/status", response_model=OrderResponse, tags=["Lifecycle"])
async def update_status(
    order_id: int,
    request: TransitionRequest,
    x_actor: str = Header("admin"),
    service: OrderService = Depends(get_order_service),
) -> dict:
    order = await service.request_transition(
        order_id,
        request.status,
        actor=x_actor,
        delivery_person_id=request.delivery_person_id,
        note=request.note,
    )
    return order_payload(order)


@app.patch("/api/orders/{order_id}/delivery-location", tags=["Lifecycle"])
async def update_delivery_location(
    order_id: int,
    request: LocationUpdateRequest,
    service: OrderService = Depends(get_order_service),
) -> dict:
    order = await service.update_delivery_location(order_id, request.latitude, request.longitude)
    return {
        "success": True,
        "order_id": order_id,
        "delivery_location": {
            "latitude": order.delivery_location.latitude,
            "longitude": order.delivery_location.longitude,
            "updated_at": order.delivery_location.updated_at.isoformat(),
        },
        "estimated_delivery_minutes": order.estimated_delivery_minutes,
    }


@app.patch("/api/orders/{order_id}/customer-location", tags=["Lifecycle"])
async def update_customer_location(
    order_id: int,
    request: LocationUpdateRequest,
    service: OrderService = Depends(get_order_service),
) -> dict:
    order = await service.update_customer_location(order_id, request.latitude, request.longitude)
    return {
        "success": True,
        "order_id": order_id,
        "customer_location": {
            "latitude": order.customer_location.latitude,
            "longitude": order.customer_location.longitude,
        },
    }


@app.put("/api/orders/{order_id}/receipt/verify", response_model=OrderResponse, tags=["Lifecycle"])
async def verify_receipt(
    order_id: int,
    request: ReceiptVerifyRequest,
    x_actor: str = Header("admin"),
    service: OrderService = Depends(get_order_service),
) -> dict:
    order = await service.verify_receipt(order_id, actor=x_actor, verified=request.verified)
    return order_payload(order)


@app.post("/api/orders/{order_id}/archive", response_model=OrderResponse, tags=["Lifecycle"])
async def archive_order(order_id: int, service: OrderService = Depends(get_order_service)) -> dict:
    return order_payload(await service.archive_order(order_id))


@app.post("/api/orders/{order_id}/restore", response_model=OrderResponse, tags=["Lifecycle"])
async def restore_order(order_id: int, service: OrderService = Depends(get_order_service)) -> dict:
    return order_payload(await service.restore_order(order_id))


# =============================================================================
# WEBHOOK SUBSCRIPTIONS
# =============================================================================

@app.post(
    "/api/webhooks/subscribe",
    response_model=WebhookSubscribedResponse,
    status_code=201,
    tags=["Webhooks"],
)
async def subscribe_webhook(
    request: WebhookSubscribeRequest,
    service: OrderService = Depends(get_order_service),
) -> WebhookSubscribedResponse:
    subscription = await service.dispatcher.subscribe(
        request.url,
        request.event_type,
        secret=request.secret,
        headers=request.headers,
    )
    return WebhookSubscribedResponse.model_validate(subscription)


@app.get("/api/webhooks", response_model=List[WebhookSubscriptionResponse], tags=["Webhooks"])
async def list_webhooks(
    include_inactive: bool = Query(False),
    service: OrderService = Depends(get_order_service),
) -> List[WebhookSubscriptionResponse]:
    subscriptions = await service.dispatcher.list_subscriptions(include_inactive=include_inactive)
    return [WebhookSubscriptionResponse.model_validate(s) for s in subscriptions]


@app.get("/api/webhooks/{subscription_id}", response_model=WebhookSubscriptionResponse, tags=["Webhooks"])
async def get_webhook(
    subscription_id: int,
    service: OrderService = Depends(get_order_service),
) -> WebhookSubscriptionResponse:
    return WebhookSubscriptionResponse.model_validate(
        await service.dispatcher.get_subscription(subscription_id)
    )


@app.delete("/api/webhooks/{subscription_id}", tags=["Webhooks"])
async def unsubscribe_webhook(
    subscription_id: int,
    service: OrderService = Depends(get_order_service),
) -> dict:
    await service.dispatcher.unsubscribe(subscription_id)
    return {"success": True, "message": f"Webhook subscription {subscription_id} deactivated"}


# =============================================================================
# REAL-TIME EVENTS
# =============================================================================

@app.websocket("/ws/orders")
async def order_events(websocket: WebSocket, service: OrderService = Depends(get_order_service)):
    """
    Real-time order events.

    Every client receives the `all` group. Send
    `{"action": "join" | "leave", "group": "admin" | "order:7" | ...}`
    to change memberships; each request is acknowledged.
    """
    await websocket.accept()
    connection = WebSocketConnection(websocket)
    fanout = service.fanout
    await fanout.connect(connection)
    await websocket.send_json({"event": "Connected", "data": {"connectionId": connection.connection_id}})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
                action, group = message.get("action"), message.get("group")
            except (ValueError, AttributeError):
                await websocket.send_json({"event": "Error", "data": {"detail": "Malformed message"}})
                continue

            if action == "join" and group:
                ok = fanout.subscribe(connection.connection_id, group)
            elif action == "leave" and group:
                ok = fanout.unsubscribe(connection.connection_id, group)
            else:
                ok = False
            await websocket.send_json({"event": "Ack", "data": {"action": action, "group": group, "ok": ok}})
    except WebSocketDisconnect:
        pass
    finally:
        await fanout.disconnect(connection.connection_id)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderFlowError)
async def order_flow_exception_handler(request: Request, exc: OrderFlowError) -> JSONResponse:
    """Domain errors carry their own status code and message."""
    logger.info(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content=ErrorResponse(error=exc.code, detail=exc.message).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "detail": str(exc) if settings.debug else "An unexpected error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("orderflow.main:app", host=settings.api_host, port=settings.api_port, reload=settings.debug)
