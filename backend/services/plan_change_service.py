"""Plan-change intents issued by tenant operators.

Both intents write the same `subscriptions` document the webhook reconciler
writes, through single atomic updates keyed by tenant_id. Neither touches
`last_event_at` or `last_provider_event_at`: the next provider event for the
tenant still wins.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from database import database
from models import AuditAction, PlanChangeResult, Subscription, SubscriptionStatus
from services.billing_errors import (
    ProviderCancellationFailure,
    StoreWriteFailure,
)
from services.kiwify_client import kiwify_client
from services.plan_catalog import get_checkout_url, validate_plan_id
from services.subscription_reconciler import subscription_state_for_audit
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


async def update_plan(
    tenant_id: str,
    plan_id: str,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
) -> PlanChangeResult:
    """Start a plan change.

    With a checkout link configured the caller is redirected to the provider
    and nothing is written; the paid-order webhook does the update. Without
    one the plan is written directly.
    """
    plan_id = validate_plan_id(plan_id)
    checkout_url = get_checkout_url(plan_id)

    if checkout_url:
        logger.info(f"Plan change redirect for tenant {tenant_id}: {plan_id}")
        await create_audit_log(
            action=AuditAction.PLAN_CHECKOUT_REDIRECT,
            actor_role=actor_role,
            actor_id=actor_id,
            tenant_id=tenant_id,
            resource_type="subscription",
            resource_id=tenant_id,
            metadata={"plan_id": plan_id, "checkout_url": checkout_url},
        )
        return PlanChangeResult(action="redirect", plan_id=plan_id, checkout_url=checkout_url)

    logger.warning(
        f"No checkout link configured for plan {plan_id} - updating tenant {tenant_id} directly"
    )
    db = database.get_db()
    now = datetime.now(timezone.utc)
    try:
        before = await db.subscriptions.find_one({"tenant_id": tenant_id}, {"_id": 0})
        after = await db.subscriptions.find_one_and_update(
            {"tenant_id": tenant_id},
            {
                "$set": {
                    "plan_id": plan_id,
                    "status": SubscriptionStatus.ACTIVE.value,
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now, "cancel_at_period_end": False},
            },
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError as e:
        logger.error(f"Direct plan change failed for tenant {tenant_id}: {e}")
        raise StoreWriteFailure(f"Plan change failed: {e}", tenant_id=tenant_id)

    await create_audit_log(
        action=AuditAction.PLAN_CHANGED_DIRECT,
        actor_role=actor_role,
        actor_id=actor_id,
        tenant_id=tenant_id,
        resource_type="subscription",
        resource_id=tenant_id,
        before_state=subscription_state_for_audit(before),
        after_state=subscription_state_for_audit(after),
        metadata={"plan_id": plan_id},
    )
    return PlanChangeResult(
        action="updated",
        plan_id=plan_id,
        subscription=Subscription.model_validate(after),
    )


async def cancel_subscription(
    tenant_id: str,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
) -> Subscription:
    """Cancel at period end.

    The provider is asked to stop charging first when API credentials are
    configured; if it refuses, local state is left unchanged.

    A tenant without a row gets one recording the cancel intent.

    Raises:
        ProviderCancellationFailure: provider API call failed
        StoreWriteFailure: store error
    """
    db = database.get_db()
    now = datetime.now(timezone.utc)
    try:
        current = await db.subscriptions.find_one({"tenant_id": tenant_id}, {"_id": 0})
    except PyMongoError as e:
        raise StoreWriteFailure(f"Subscription read failed: {e}", tenant_id=tenant_id)
    order_id = (current or {}).get("external_order_id")
    provider_canceled = False
    if kiwify_client.is_configured() and order_id:
        success, error = await kiwify_client.cancel_subscription(order_id)
        if not success:
            logger.error(
                f"Provider cancellation failed for tenant {tenant_id} order {order_id}: {error}"
            )
            raise ProviderCancellationFailure(error or "Provider cancellation failed")
        provider_canceled = True
    elif kiwify_client.is_configured():
        logger.warning(
            f"Tenant {tenant_id} has no external order id - canceling locally only"
        )
    else:
        logger.warning(
            f"KIWIFY_API_KEY not set - tenant {tenant_id} canceled locally, provider keeps charging"
        )

    try:
        after = await db.subscriptions.find_one_and_update(
            {"tenant_id": tenant_id},
            {
                "$set": {"cancel_at_period_end": True, "updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
    except PyMongoError as e:
        logger.error(f"Cancel intent write failed for tenant {tenant_id}: {e}")
        raise StoreWriteFailure(f"Cancel failed: {e}", tenant_id=tenant_id)

    logger.info(
        "SUBSCRIPTION_CANCEL_REQUESTED tenant_id=%s order_id=%s provider_canceled=%s",
        tenant_id, order_id, provider_canceled,
    )
    await create_audit_log(
        action=AuditAction.SUBSCRIPTION_CANCEL_REQUESTED,
        actor_role=actor_role,
        actor_id=actor_id,
        tenant_id=tenant_id,
        resource_type="subscription",
        resource_id=tenant_id,
        before_state=subscription_state_for_audit(current),
        after_state=subscription_state_for_audit(after),
        metadata={"order_id": order_id, "provider_canceled": provider_canceled},
    )
    return Subscription.model_validate(after)
