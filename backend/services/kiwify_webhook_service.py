"""Kiwify Webhook Service - inbound billing events for the subscription store.

Pipeline per delivery:
    signature check -> parse -> normalize -> resolve tenant -> reconcile

Outcomes:
- PROCESSED            state written
- MISSING_EMAIL        acknowledged, nothing resolvable
- TENANT_NOT_FOUND     acknowledged (reason NO_PROFILE / NO_MEMBERSHIP / ...)
- UNRECOGNIZED_EVENT   acknowledged, no-op
- STALE_EVENT          acknowledged, rejected by the ordering guard
- NO_SUBSCRIPTION      acknowledged, cancel for a tenant with no row
- FAILED               store failure, re-raised so the route answers 503

Every delivery is recorded in `billing_webhook_events`; recording problems are
logged and never change the result.
"""
import hashlib
import hmac
import logging
import os
from typing import Optional

from database import database
from models import (
    AuditAction,
    BillingEventKind,
    WebhookDelivery,
    WebhookOutcome,
    WebhookResult,
)
from services.billing_errors import InvalidSignature, StoreFailure
from services.event_normalizer import MissingEmail, normalize_webhook, parse_webhook_body
from services.subscription_reconciler import apply_event, subscription_state_for_audit
from services.tenant_resolver import TenantNotFound, resolve_tenant
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def _get_webhook_token() -> str:
    return (os.getenv("KIWIFY_WEBHOOK_TOKEN") or "").strip()


def compute_signature(payload: bytes, token: str) -> str:
    """Kiwify signs the raw body with HMAC-SHA1 keyed by the webhook token."""
    return hmac.new(token.encode("utf-8"), payload, hashlib.sha1).hexdigest()


class KiwifyWebhookService:
    """Kiwify webhook handler feeding the subscription reconciler."""

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> None:
        token = _get_webhook_token()
        if not token:
            logger.warning("KIWIFY_WEBHOOK_TOKEN not set - skipping signature verification")
            return
        expected = compute_signature(payload, token)
        if not signature or not hmac.compare_digest(expected, signature.strip().lower()):
            logger.error("Kiwify webhook signature verification failed")
            raise InvalidSignature("Invalid signature")

    async def process_webhook(self, payload: bytes, signature: Optional[str] = None) -> WebhookResult:
        """
        Main webhook entry point.

        Raises:
            InvalidSignature, MalformedPayload: request is rejected (400)
            StoreFailure: processing failed, provider should retry (503)
        """
        self.verify_signature(payload, signature)
        body = parse_webhook_body(payload)
        normalized = normalize_webhook(body)

        logger.info(
            "WEBHOOK_RECEIVED kind=%s raw_event_type=%s order_id=%s has_email=%s",
            normalized.kind.value,
            normalized.raw_event_type,
            normalized.order_id,
            not isinstance(normalized, MissingEmail),
        )

        if isinstance(normalized, MissingEmail):
            logger.error("No customer email found in webhook order_id=%s", normalized.order_id)
            result = WebhookResult(outcome=WebhookOutcome.MISSING_EMAIL, reason="missing_email")
            await self._record_delivery(
                result,
                event_kind=normalized.kind,
                raw_event_type=normalized.raw_event_type,
                order_id=normalized.order_id,
            )
            return result

        event = normalized
        try:
            resolution = await resolve_tenant(event.email)
        except StoreFailure as e:
            await self._record_failure(event, None, e)
            raise

        if isinstance(resolution, TenantNotFound):
            logger.warning(
                "WEBHOOK_TENANT_UNRESOLVED reason=%s email=%s order_id=%s",
                resolution.reason.value, event.email, event.order_id,
            )
            result = WebhookResult(
                outcome=WebhookOutcome.TENANT_NOT_FOUND,
                reason=resolution.reason.value,
                event=event,
            )
            await self._record_delivery(result)
            return result

        tenant_id = resolution.tenant_id
        try:
            outcome, before, fields = await apply_event(tenant_id, event)
        except StoreFailure as e:
            await self._record_failure(event, tenant_id, e)
            raise

        result = WebhookResult(outcome=outcome, tenant_id=tenant_id, event=event)
        await self._record_delivery(result)
        await self._audit(result, before, fields)

        logger.info(
            "WEBHOOK_PROCESSED tenant_id=%s kind=%s outcome=%s",
            tenant_id, event.kind.value, outcome.value,
        )
        return result

    async def _audit(self, result: WebhookResult, before, fields) -> None:
        event = result.event
        metadata = {
            "provider": "kiwify",
            "event_kind": event.kind.value,
            "raw_event_type": event.raw_event_type,
            "order_id": event.order_id,
            "customer_email": event.email,
        }
        if result.outcome == WebhookOutcome.PROCESSED:
            action = (
                AuditAction.SUBSCRIPTION_ACTIVATED
                if event.kind == BillingEventKind.ORDER_PAID
                else AuditAction.SUBSCRIPTION_CANCELED
            )
            after = {"tenant_id": result.tenant_id, **(before or {}), **(fields or {})}
            await create_audit_log(
                action=action,
                actor_role="SYSTEM",
                tenant_id=result.tenant_id,
                resource_type="subscription",
                resource_id=result.tenant_id,
                before_state=subscription_state_for_audit(before),
                after_state=subscription_state_for_audit(after),
                metadata=metadata,
            )
        elif result.outcome == WebhookOutcome.STALE_EVENT:
            await create_audit_log(
                action=AuditAction.WEBHOOK_EVENT_REJECTED,
                actor_role="SYSTEM",
                tenant_id=result.tenant_id,
                resource_type="subscription",
                resource_id=result.tenant_id,
                metadata=metadata,
                reason_code="STALE_EVENT",
            )

    async def _record_failure(self, event, tenant_id: Optional[str], error: Exception) -> None:
        logger.error(
            "WEBHOOK_PROCESSING_FAILED tenant_id=%s kind=%s order_id=%s error=%s",
            tenant_id, event.kind.value, event.order_id, str(error),
        )
        result = WebhookResult(outcome=WebhookOutcome.FAILED, tenant_id=tenant_id, event=event)
        await self._record_delivery(result, error=str(error))
        await create_audit_log(
            action=AuditAction.WEBHOOK_PROCESSING_FAILED,
            actor_role="SYSTEM",
            tenant_id=tenant_id,
            metadata={
                "provider": "kiwify",
                "event_kind": event.kind.value,
                "order_id": event.order_id,
                "error": str(error),
            },
        )

    async def _record_delivery(
        self,
        result: WebhookResult,
        event_kind: Optional[BillingEventKind] = None,
        raw_event_type: Optional[str] = None,
        order_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        event = result.event
        delivery = WebhookDelivery(
            event_kind=event.kind if event else event_kind,
            raw_event_type=event.raw_event_type if event else raw_event_type,
            email=event.email if event else None,
            order_id=event.order_id if event else order_id,
            plan_id=event.plan_id if event else None,
            tenant_id=result.tenant_id,
            outcome=result.outcome,
            reason=result.reason,
            error=error,
        )
        try:
            db = database.get_db()
            await db.billing_webhook_events.insert_one(delivery.model_dump(mode="json"))
        except Exception as e:
            logger.warning(f"Failed to record webhook delivery {delivery.delivery_id}: {e}")


kiwify_webhook_service = KiwifyWebhookService()
