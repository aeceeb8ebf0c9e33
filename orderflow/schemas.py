"""
Pydantic Schemas for Request/Response Validation

Request bodies of the order lifecycle API and the shapes of the cached
payloads it returns.

Author: Khalil Bannouri
Version: 1.0.0
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from orderflow.domain import OrderStatus


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class OrderCreate(BaseModel):
    """Request schema for creating an order."""
    total: Decimal = Field(..., ge=0, examples=["24.50"])
    customer_id: Optional[int] = Field(None, examples=[12])
    customer_name: Optional[str] = Field(None, max_length=100, examples=["John Doe"])
    payment_method: Optional[str] = Field(None, max_length=50, examples=["cash", "transfer"])


class TransitionRequest(BaseModel):
    """Request schema for changing an order's status."""
    status: str = Field(..., min_length=1, max_length=20, examples=["preparing"])
    delivery_person_id: Optional[int] = Field(None, examples=[3])
    note: Optional[str] = Field(None, max_length=500)

    @field_validator("status")
    @classmethod
    def normalize_status(cls, v: str) -> str:
        return v.strip().lower()


class LocationUpdateRequest(BaseModel):
    """Latitude/longitude pair sent by the courier or the customer app."""
    latitude: float = Field(..., examples=[40.7128])
    longitude: float = Field(..., examples=[-74.006])


class ReceiptVerifyRequest(BaseModel):
    verified: bool = True


class WebhookSubscribeRequest(BaseModel):
    """Register an endpoint for one event type. A secret is generated when omitted."""
    url: str = Field(..., min_length=1, max_length=500, examples=["https://erp.example.com/hooks/orders"])
    event_type: str = Field(..., min_length=1, max_length=100, examples=["order.completed"])
    secret: Optional[str] = Field(None, max_length=255)
    headers: Optional[Dict[str, str]] = None


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class LocationResponse(BaseModel):
    latitude: float
    longitude: float
    updated_at: Optional[datetime] = None


class HistoryEntryResponse(BaseModel):
    """One status history row."""
    from_status: Optional[OrderStatus]
    to_status: OrderStatus
    changed_by: str
    changed_at: datetime
    note: Optional[str] = None


class OrderResponse(BaseModel):
    """Response schema for a single order."""
    id: int
    status: OrderStatus
    total: Decimal
    customer_id: Optional[int] = None
    customer_name: Optional[str] = None
    delivery_person_id: Optional[int] = None
    delivery_person_name: Optional[str] = None
    payment_method: Optional[str] = None
    requires_receipt: bool
    receipt_verified: bool
    receipt_verified_at: Optional[datetime] = None
    receipt_verified_by: Optional[str] = None
    delivery_location: Optional[LocationResponse] = None
    customer_location: Optional[LocationResponse] = None
    estimated_delivery_minutes: Optional[int] = None
    is_archived: bool
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    status_history: List[HistoryEntryResponse] = []


class OrderListResponse(BaseModel):
    """Response for one page of orders."""
    orders: List[OrderResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class WebhookSubscriptionResponse(BaseModel):
    """A stored webhook subscription. The secret is only shown once, on subscribe."""
    model_config = ConfigDict(from_attributes=True)

    id: int
    url: str
    event_type: str
    is_active: bool
    success_count: int
    failure_count: int
    last_triggered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    headers: Optional[Dict[str, str]] = None


class WebhookSubscribedResponse(WebhookSubscriptionResponse):
    secret: str


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    store: str
    cache: str
    connections: int
    environment: str
    timestamp: datetime
