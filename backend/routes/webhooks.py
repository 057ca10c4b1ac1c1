"""Webhook Routes - Kiwify billing webhooks.

POST /api/webhooks/kiwify - Main Kiwify webhook endpoint
POST /api/webhook/kiwify  - Alias (older provider configuration)

Responses:
- 200 {"received": true, "outcome": ...} processed or acknowledged no-op
- 400 {"error": ...} malformed body or bad signature
- 503 {"error": ...} store failure; Kiwify retries the delivery
"""
from fastapi import APIRouter, Request, Query, status
from fastapi.responses import JSONResponse
from typing import Optional
from services.billing_errors import InvalidSignature, MalformedPayload, StoreFailure
from services.kiwify_webhook_service import kiwify_webhook_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["webhooks"])


async def _handle_kiwify_webhook(request: Request, signature: Optional[str] = None):
    """
    Core Kiwify webhook handler.

    Security:
    - Verifies the HMAC signature when KIWIFY_WEBHOOK_TOKEN is set
    - Unresolvable or unknown deliveries are acknowledged so Kiwify stops retrying
    - Store failures are surfaced as 503 so Kiwify retries
    """
    payload = await request.body()

    try:
        result = await kiwify_webhook_service.process_webhook(payload=payload, signature=signature)
    except (MalformedPayload, InvalidSignature) as e:
        logger.warning(f"Kiwify webhook rejected: {e.message}")
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": e.message})
    except StoreFailure as e:
        logger.error(f"Kiwify webhook store failure: {e.message}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "Temporary failure, retry later"},
        )

    return {"received": True, "outcome": result.outcome.value}


@router.post("/api/webhooks/kiwify")
async def kiwify_webhook(request: Request, signature: Optional[str] = Query(None)):
    """Handle Kiwify webhooks at /api/webhooks/kiwify"""
    return await _handle_kiwify_webhook(request, signature)


# Alias endpoint (Kiwify may be configured with this URL)
@router.post("/api/webhook/kiwify")
async def kiwify_webhook_alias(request: Request, signature: Optional[str] = Query(None)):
    """Handle Kiwify webhooks at /api/webhook/kiwify (alias)"""
    return await _handle_kiwify_webhook(request, signature)
