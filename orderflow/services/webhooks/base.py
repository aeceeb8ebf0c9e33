"""
Webhook Payloads and Signing

Body layout sent to every subscriber:

    {"data": {...}, "event": "order.completed", "timestamp": "2026-01-01T12:00:00+00:00"}

The body is serialized once; the signature header is computed over those
exact bytes so receivers can verify it before parsing.

Author: Khalil Bannouri
Version: 1.0.0
"""

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from orderflow.domain import Order


EVENT_HEADER = "X-Webhook-Event"
SIGNATURE_HEADER = "X-Webhook-Signature"


@dataclass
class DeliveryResult:
    """Outcome of one dispatch call for one subscription."""
    subscription_id: int
    url: str
    event_type: str
    success: bool
    attempts: int = 0
    status_code: Optional[int] = None
    error: Optional[str] = None
    skipped: bool = False


def build_body(event_type: str, payload: dict[str, Any], timestamp: datetime) -> bytes:
    envelope = {
        "event": event_type,
        "timestamp": timestamp.isoformat(),
        "data": payload,
    }
    return json.dumps(envelope, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def sign_payload(secret: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 of the body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_signature(secret: str, body: bytes, signature: str) -> bool:
    return hmac.compare_digest(sign_payload(secret, body), signature)


def order_webhook_payload(order: Order) -> dict[str, Any]:
    """Data section for order lifecycle events."""
    return {
        "orderId": order.id,
        "status": order.status.value,
        "total": str(order.total),
        "customerId": order.customer_id,
        "customerName": order.customer_name,
        "paymentMethod": order.payment_method,
        "deliveryPersonId": order.delivery_person_id,
        "deliveryPersonName": order.delivery_person_name,
        "createdAt": order.created_at.isoformat() if order.created_at else None,
        "updatedAt": order.updated_at.isoformat() if order.updated_at else None,
    }
