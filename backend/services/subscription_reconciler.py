"""Subscription reconciliation - applies canonical billing events to the store.

State machine (derived from status + cancel_at_period_end):

    NONE --ORDER_PAID--> ACTIVE --cancel intent--> ACTIVE_PENDING_CANCEL
      any --ORDER_PAID--> ACTIVE (full overwrite)
      any existing --SUBSCRIPTION_CANCELED/REFUND--> CANCELED
    ACTIVE_PENDING_CANCEL --(period-end sweep, not run here)--> CANCELED

Key principles:
1. One document per tenant: `subscriptions.tenant_id` has a unique index.
2. Every write is a single atomic update; no read-modify-write, no locks.
3. Ordering guard: the write filter only matches while the stored
   `last_provider_event_at` is not newer than the event's provider
   timestamp. Receipt time never enters the comparison; an event without a
   provider timestamp skips it and never sets `last_provider_event_at`.
4. Replay guard: an ORDER_PAID for the order already stored as canceled
   does not match either. Rejected ORDER_PAIDs collide with the unique index
   instead of inserting, rejected cancels match nothing; the stored state is
   left untouched.
5. Re-applying the same event rewrites the same target state.
"""
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import database
from models import (
    BillingEvent,
    BillingEventKind,
    Subscription,
    SubscriptionStatus,
    WebhookOutcome,
)
from services.billing_errors import StoreFailure, StoreWriteFailure
from services.event_normalizer import DEFAULT_PLAN_ID

logger = logging.getLogger(__name__)


def _period_days() -> int:
    raw = (os.getenv("SUBSCRIPTION_PERIOD_DAYS") or "").strip()
    try:
        days = int(raw) if raw else 30
    except ValueError:
        logger.warning(f"Invalid SUBSCRIPTION_PERIOD_DAYS={raw!r} - using 30")
        days = 30
    return days if days > 0 else 30


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def ordering_guard(
    tenant_id: str,
    provider_at: Optional[datetime],
    replayed_order_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Filter matching the tenant's row only if the event may still apply.

    provider_at: provider timestamp of the event; None skips the time check.
    replayed_order_id: order of an ORDER_PAID; a row already canceled for
    that same order does not match.
    """
    guard: Dict[str, Any] = {"tenant_id": tenant_id}
    if provider_at is not None:
        guard["$or"] = [
            {"last_provider_event_at": None},
            {"last_provider_event_at": {"$lte": provider_at}},
        ]
    if replayed_order_id:
        guard["$nor"] = [
            {
                "status": SubscriptionStatus.CANCELED.value,
                "external_order_id": replayed_order_id,
            }
        ]
    return guard


def subscription_state_for_audit(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    return Subscription.model_validate(doc).model_dump(mode="json", exclude={"state", "entitled"})


async def get_subscription(tenant_id: str) -> Optional[Subscription]:
    """Fresh read of the tenant's subscription row."""
    db = database.get_db()
    doc = await db.subscriptions.find_one({"tenant_id": tenant_id}, {"_id": 0})
    return Subscription.model_validate(doc) if doc else None


async def _guarded_write(
    tenant_id: str,
    guard: Dict[str, Any],
    update: Dict[str, Any],
    upsert: bool,
) -> Tuple[bool, Optional[Dict[str, Any]]]:
    """Run one guarded update. Returns (applied, document_before)."""
    db = database.get_db()
    try:
        try:
            before = await db.subscriptions.find_one_and_update(
                guard,
                update,
                upsert=upsert,
                projection={"_id": 0},
                return_document=ReturnDocument.BEFORE,
            )
        except DuplicateKeyError:
            # Row exists but the guard rejected it, or a concurrent insert won.
            # Retry once as a plain update to tell the two apart.
            before = await db.subscriptions.find_one_and_update(
                guard,
                update,
                upsert=False,
                projection={"_id": 0},
                return_document=ReturnDocument.BEFORE,
            )
            return before is not None, before

        if before is not None:
            return True, before
        if upsert:
            # Nothing matched and nothing collided: a new row was inserted
            return True, None
        return False, None
    except PyMongoError as e:
        logger.error(f"Subscription write failed for tenant {tenant_id}: {e}")
        raise StoreWriteFailure(f"Subscription write failed: {e}", tenant_id=tenant_id)


async def _subscription_exists(tenant_id: str) -> bool:
    db = database.get_db()
    try:
        doc = await db.subscriptions.find_one({"tenant_id": tenant_id}, {"_id": 0, "tenant_id": 1})
    except PyMongoError as e:
        logger.error(f"Subscription read failed for tenant {tenant_id}: {e}")
        raise StoreFailure(f"Subscription read failed: {e}", tenant_id=tenant_id)
    return doc is not None


def _event_times(event: BillingEvent, now: datetime) -> Tuple[datetime, Optional[datetime]]:
    """(event_at, provider_at): provider timestamp when present, else receipt time."""
    provider_at = _as_utc(event.raw_timestamp) if event.raw_timestamp else None
    return provider_at or now, provider_at


def _stamp(fields: Dict[str, Any], event_at: datetime, provider_at: Optional[datetime]) -> Dict[str, Any]:
    fields["last_event_at"] = event_at
    if provider_at is not None:
        fields["last_provider_event_at"] = provider_at
    return fields


async def activate_subscription(
    tenant_id: str,
    event: BillingEvent,
    now: datetime,
) -> Tuple[WebhookOutcome, Optional[Dict[str, Any]], Dict[str, Any]]:
    """ORDER_PAID: full overwrite to ACTIVE, last write wins within the guard."""
    event_at, provider_at = _event_times(event, now)
    fields = {
        "tenant_id": tenant_id,
        "status": SubscriptionStatus.ACTIVE.value,
        "plan_id": event.plan_id or DEFAULT_PLAN_ID,
        "cancel_at_period_end": False,
        "current_period_end": event_at + timedelta(days=_period_days()),
        "external_order_id": event.order_id,
        "external_customer_email": event.email,
        "updated_at": now,
    }
    _stamp(fields, event_at, provider_at)
    applied, before = await _guarded_write(
        tenant_id,
        ordering_guard(tenant_id, provider_at, replayed_order_id=event.order_id),
        {"$set": fields, "$setOnInsert": {"created_at": now}},
        upsert=True,
    )
    if not applied:
        return WebhookOutcome.STALE_EVENT, before, fields
    logger.info(
        "SUBSCRIPTION_ACTIVATED tenant_id=%s plan_id=%s order_id=%s period_end=%s",
        tenant_id, fields["plan_id"], event.order_id, fields["current_period_end"].isoformat(),
    )
    return WebhookOutcome.PROCESSED, before, fields


async def cancel_subscription(
    tenant_id: str,
    event: BillingEvent,
    now: datetime,
) -> Tuple[WebhookOutcome, Optional[Dict[str, Any]], Dict[str, Any]]:
    """SUBSCRIPTION_CANCELED / REFUND: mark canceled, keep plan_id. No row is created."""
    event_at, provider_at = _event_times(event, now)
    fields = {
        "status": SubscriptionStatus.CANCELED.value,
        "cancel_at_period_end": True,
        "external_customer_email": event.email,
        "updated_at": now,
    }
    _stamp(fields, event_at, provider_at)
    if event.order_id:
        fields["external_order_id"] = event.order_id

    applied, before = await _guarded_write(
        tenant_id, ordering_guard(tenant_id, provider_at), {"$set": fields}, upsert=False
    )
    if not applied:
        if await _subscription_exists(tenant_id):
            return WebhookOutcome.STALE_EVENT, None, fields
        logger.info("SUBSCRIPTION_CANCEL_SKIPPED tenant_id=%s reason=no_subscription", tenant_id)
        return WebhookOutcome.NO_SUBSCRIPTION, None, fields
    logger.info(
        "SUBSCRIPTION_CANCELED tenant_id=%s kind=%s order_id=%s",
        tenant_id, event.kind.value, event.order_id,
    )
    return WebhookOutcome.PROCESSED, before, fields


async def apply_event(
    tenant_id: str,
    event: BillingEvent,
    now: Optional[datetime] = None,
) -> Tuple[WebhookOutcome, Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
    """Apply one canonical event to the tenant's subscription.

    The event time is the provider timestamp when present, else receipt time.
    Only provider timestamps are compared against each other.

    Returns:
        (outcome, document_before, fields_written)
    """
    now = _as_utc(now or datetime.now(timezone.utc))
    if event.kind == BillingEventKind.UNRECOGNIZED:
        logger.info(
            "WEBHOOK_IGNORED tenant_id=%s raw_event_type=%s", tenant_id, event.raw_event_type
        )
        return WebhookOutcome.UNRECOGNIZED_EVENT, None, None

    if event.kind == BillingEventKind.ORDER_PAID:
        outcome, before, fields = await activate_subscription(tenant_id, event, now)
    else:
        outcome, before, fields = await cancel_subscription(tenant_id, event, now)

    if outcome == WebhookOutcome.STALE_EVENT:
        logger.warning(
            "WEBHOOK_STALE_EVENT tenant_id=%s kind=%s order_id=%s event_at=%s",
            tenant_id, event.kind.value, event.order_id, fields["last_event_at"].isoformat(),
        )
    return outcome, before, fields
