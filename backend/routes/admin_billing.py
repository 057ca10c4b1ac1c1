"""Admin Billing Routes - operator read access by tenant id.

Endpoints:
- GET /api/admin/billing/tenants/{tenant_id}/subscription - Subscription + derived state
- GET /api/admin/billing/tenants/{tenant_id}/metrics - Sales metrics + breakdown
- GET /api/admin/billing/tenants/{tenant_id}/goal - Financial goal + projection
- GET /api/admin/billing/tenants/{tenant_id}/audit - Billing audit timeline
- GET /api/admin/billing/webhook-deliveries - Kiwify webhook delivery log

Read-only: operators change billing through Kiwify, never by editing rows here.
"""
import logging
from typing import Optional
from fastapi import APIRouter, HTTPException, Request, status, Depends, Query
from pymongo.errors import PyMongoError
from database import database
from middleware import admin_route_guard
from models import WebhookOutcome
from services.billing_errors import StoreFailure
from services.goal_tracker import get_sales_summary
from utils.audit import get_audit_logs_for_tenant
from routes.billing import subscription_response

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/billing", tags=["admin-billing"], dependencies=[Depends(admin_route_guard)])


@router.get("/tenants/{tenant_id}/subscription")
async def admin_tenant_subscription(request: Request, tenant_id: str):
    return await subscription_response(tenant_id)


async def _tenant_summary(tenant_id: str):
    try:
        return await get_sales_summary(tenant_id)
    except StoreFailure as e:
        logger.error(f"Admin sales read failed for tenant {tenant_id}: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sales data temporarily unavailable"
        )


@router.get("/tenants/{tenant_id}/metrics")
async def admin_tenant_metrics(request: Request, tenant_id: str):
    summary = await _tenant_summary(tenant_id)
    return {
        "tenantId": tenant_id,
        "metrics": summary.metrics.model_dump(mode="json", by_alias=True),
        "breakdown": summary.breakdown.model_dump(mode="json", by_alias=True),
    }


@router.get("/tenants/{tenant_id}/goal")
async def admin_tenant_goal(request: Request, tenant_id: str):
    summary = await _tenant_summary(tenant_id)
    return {
        "tenantId": tenant_id,
        "goal": summary.goal.model_dump(mode="json", by_alias=True),
        "progress": summary.progress.model_dump(mode="json", by_alias=True),
    }


@router.get("/tenants/{tenant_id}/audit")
async def admin_tenant_audit(request: Request, tenant_id: str, limit: int = Query(50, ge=1, le=500)):
    logs = await get_audit_logs_for_tenant(tenant_id, limit=limit)
    return {"tenantId": tenant_id, "auditLogs": logs}


@router.get("/webhook-deliveries")
async def list_webhook_deliveries(
    request: Request,
    tenant_id: Optional[str] = None,
    outcome: Optional[WebhookOutcome] = None,
    email: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    skip: int = Query(0, ge=0),
):
    """
    Kiwify delivery log, newest first.

    Filter by outcome=TENANT_NOT_FOUND to find paying customers whose email has
    no profile or membership (the reason field tells which).
    """
    db = database.get_db()
    query = {}
    if tenant_id:
        query["tenant_id"] = tenant_id
    if outcome:
        query["outcome"] = outcome.value
    if email:
        query["email"] = email

    try:
        total = await db.billing_webhook_events.count_documents(query)
        deliveries = await db.billing_webhook_events.find(
            query, {"_id": 0}
        ).sort("received_at", -1).skip(skip).limit(limit).to_list(limit)
    except PyMongoError as e:
        logger.error(f"Webhook delivery log read failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Delivery log temporarily unavailable"
        )

    return {"deliveries": deliveries, "total": total, "limit": limit, "skip": skip}
