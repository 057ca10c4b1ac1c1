"""Kiwify webhook normalization.

Maps a raw Kiwify webhook body onto a canonical BillingEvent. Kiwify payloads
are not fully self-describing:
- the event kind is in `webhook_event_type`, or only in `order_status`
- the customer lives under `Customer` or `customer`
- the product lives under `Product` or `product`, keyed `id` or `product_id`

Unknown kinds are returned as UNRECOGNIZED so the caller can acknowledge the
delivery without side effects. Nothing here touches the database.
"""
import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel

from models import BillingEvent, BillingEventKind
from services.billing_errors import MalformedPayload

logger = logging.getLogger(__name__)

DEFAULT_PLAN_ID = "pro"

EVENT_TYPE_KINDS = {
    "order_paid": BillingEventKind.ORDER_PAID,
    "order_approved": BillingEventKind.ORDER_PAID,
    "subscription_renewed": BillingEventKind.ORDER_PAID,
    "subscription_canceled": BillingEventKind.SUBSCRIPTION_CANCELED,
    "refund": BillingEventKind.REFUND,
    "order_refunded": BillingEventKind.REFUND,
    "chargeback": BillingEventKind.REFUND,
}

ORDER_STATUS_KINDS = {
    "paid": BillingEventKind.ORDER_PAID,
    "approved": BillingEventKind.ORDER_PAID,
    "refunded": BillingEventKind.REFUND,
    "chargedback": BillingEventKind.REFUND,
}

TIMESTAMP_FIELDS = ("updated_at", "approved_date", "created_at")


class MissingEmail(BaseModel):
    """Delivery carried no customer email; nothing can be resolved from it."""
    kind: BillingEventKind
    raw_event_type: Optional[str] = None
    order_id: Optional[str] = None


def parse_webhook_body(payload: bytes) -> Dict[str, Any]:
    """Decode a raw request body. Anything but a JSON object is malformed."""
    try:
        body = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as e:
        raise MalformedPayload(f"Invalid JSON body: {e}")
    if not isinstance(body, dict):
        raise MalformedPayload("Webhook body must be a JSON object")
    return body


def _product_plan_map() -> Dict[str, str]:
    """Optional product id -> plan id mapping from KIWIFY_PRODUCT_PLAN_MAP (JSON)."""
    raw = (os.getenv("KIWIFY_PRODUCT_PLAN_MAP") or "").strip()
    if not raw:
        return {}
    try:
        mapping = json.loads(raw)
    except ValueError:
        logger.warning("KIWIFY_PRODUCT_PLAN_MAP is not valid JSON - ignoring")
        return {}
    if not isinstance(mapping, dict):
        return {}
    return {str(k): str(v) for k, v in mapping.items()}


def _nested(body: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    for key in keys:
        value = body.get(key)
        if isinstance(value, dict):
            return value
    return {}


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Epoch seconds or milliseconds
        seconds = value / 1000 if value > 10**11 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return None


def resolve_event_kind(body: Dict[str, Any]) -> BillingEventKind:
    event_type = (_clean(body.get("webhook_event_type")) or "").lower()
    if event_type in EVENT_TYPE_KINDS:
        return EVENT_TYPE_KINDS[event_type]
    order_status = (_clean(body.get("order_status")) or "").lower()
    if order_status in ORDER_STATUS_KINDS:
        return ORDER_STATUS_KINDS[order_status]
    return BillingEventKind.UNRECOGNIZED


def extract_email(body: Dict[str, Any]) -> Optional[str]:
    for key in ("Customer", "customer"):
        email = _clean(_nested(body, key).get("email"))
        if email:
            return email
    return None


def extract_plan_id(body: Dict[str, Any]) -> tuple:
    """Return (plan_id, product_id). Missing product falls back to the default plan."""
    product = _nested(body, "Product", "product")
    product_id = _clean(product.get("id")) or _clean(product.get("product_id"))
    if not product_id:
        return DEFAULT_PLAN_ID, None
    return _product_plan_map().get(product_id, product_id), product_id


def extract_timestamp(body: Dict[str, Any]) -> Optional[datetime]:
    for field in TIMESTAMP_FIELDS:
        parsed = _parse_timestamp(body.get(field))
        if parsed is not None:
            return parsed
    return None


def normalize_webhook(body: Dict[str, Any]) -> Union[BillingEvent, MissingEmail]:
    """Map a Kiwify webhook body to a BillingEvent, or MissingEmail."""
    if not isinstance(body, dict):
        raise MalformedPayload("Webhook body must be a JSON object")

    kind = resolve_event_kind(body)
    raw_event_type = _clean(body.get("webhook_event_type")) or _clean(body.get("order_status"))
    order_id = _clean(body.get("order_id"))

    email = extract_email(body)
    if not email:
        return MissingEmail(kind=kind, raw_event_type=raw_event_type, order_id=order_id)

    plan_id, product_id = extract_plan_id(body)
    return BillingEvent(
        kind=kind,
        email=email,
        order_id=order_id,
        plan_id=plan_id,
        product_id=product_id,
        raw_event_type=raw_event_type,
        raw_timestamp=extract_timestamp(body),
    )
