"""Billing Routes - Subscription read and plan-change intents.

Endpoints:
- GET /api/billing/subscription - Current tenant subscription + derived state
- POST /api/billing/plan - Change plan (Kiwify checkout redirect, or direct update)
- POST /api/billing/cancel - Cancel at period end
"""
from fastapi import APIRouter, HTTPException, Request, status
from models import PlanChangeRequest, SubscriptionResponse, SubscriptionState
from services.billing_errors import (
    InvalidPlan,
    ProviderCancellationFailure,
    StoreFailure,
)
from services import plan_change_service
from services.subscription_reconciler import get_subscription
from middleware import tenant_route_guard, billing_manager_guard
from pymongo.errors import PyMongoError
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


async def subscription_response(tenant_id: str) -> dict:
    """Fresh subscription read for a tenant, shaped for the UI."""
    try:
        subscription = await get_subscription(tenant_id)
    except PyMongoError as e:
        logger.error(f"Subscription read failed for tenant {tenant_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription store unavailable"
        )

    response = SubscriptionResponse(
        tenant_id=tenant_id,
        state=subscription.state if subscription else SubscriptionState.NONE,
        subscription=subscription,
    )
    return response.model_dump(mode="json", by_alias=True)


@router.get("/subscription")
async def get_billing_subscription(request: Request):
    """Get the current tenant's subscription."""
    user = await tenant_route_guard(request)
    return await subscription_response(user["tenant_id"])


@router.post("/plan")
async def change_plan(request: Request, body: PlanChangeRequest):
    """
    Change the tenant's plan.

    Returns {"action": "redirect", "checkoutUrl": ...} when the plan has a
    Kiwify checkout link (the paid-order webhook applies the change), or
    {"action": "updated", "subscription": ...} when it was written directly.
    """
    user = await billing_manager_guard(request)
    tenant_id = user["tenant_id"]

    try:
        result = await plan_change_service.update_plan(
            tenant_id=tenant_id,
            plan_id=body.plan_id,
            actor_id=user.get("user_id"),
            actor_role=user.get("role"),
        )
    except InvalidPlan as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message)
    except StoreFailure as e:
        logger.error(f"Plan change failed for tenant {tenant_id}: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to update plan, please try again"
        )

    return result.model_dump(mode="json", by_alias=True, exclude_none=True)


@router.post("/cancel")
async def cancel_billing_subscription(request: Request):
    """Cancel the tenant's subscription at the end of the current period."""
    user = await billing_manager_guard(request)
    tenant_id = user["tenant_id"]

    try:
        subscription = await plan_change_service.cancel_subscription(
            tenant_id=tenant_id,
            actor_id=user.get("user_id"),
            actor_role=user.get("role"),
        )
    except ProviderCancellationFailure as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Payment provider could not cancel the subscription: {e.message}"
        )
    except StoreFailure as e:
        logger.error(f"Cancel failed for tenant {tenant_id}: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to cancel subscription, please try again"
        )

    return {"subscription": subscription.model_dump(mode="json", by_alias=True)}
