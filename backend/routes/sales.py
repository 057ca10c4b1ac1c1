"""Sales Routes - financial metrics for the current tenant.

Endpoints:
- GET /api/sales/metrics - Gross total, splits, manual overrides, custom taxes
- GET /api/sales/goal - Financial goal (current / target / start date)
- GET /api/sales/summary - Metrics + breakdown + goal + projection

Everything is recomputed from the ledger on each request.
"""
from fastapi import APIRouter, HTTPException, Request, status
from services.billing_errors import StoreFailure
from services.goal_tracker import get_financial_goal, get_sales_summary
from services.metrics_aggregator import get_sales_metrics
from middleware import tenant_route_guard
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/sales", tags=["sales"])


def _ledger_unavailable(tenant_id: str, error: StoreFailure) -> HTTPException:
    logger.error(f"Sales read failed for tenant {tenant_id}: {error.message}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Sales data temporarily unavailable"
    )


@router.get("/metrics")
async def sales_metrics(request: Request):
    user = await tenant_route_guard(request)
    tenant_id = user["tenant_id"]
    try:
        metrics = await get_sales_metrics(tenant_id)
    except StoreFailure as e:
        raise _ledger_unavailable(tenant_id, e)
    return metrics.model_dump(mode="json", by_alias=True)


@router.get("/goal")
async def sales_goal(request: Request):
    user = await tenant_route_guard(request)
    tenant_id = user["tenant_id"]
    try:
        goal = await get_financial_goal(tenant_id)
    except StoreFailure as e:
        raise _ledger_unavailable(tenant_id, e)
    return goal.model_dump(mode="json", by_alias=True)


@router.get("/summary")
async def sales_summary(request: Request):
    """Dashboard payload: metrics, fee/tax/split breakdown, goal and projection."""
    user = await tenant_route_guard(request)
    tenant_id = user["tenant_id"]
    try:
        summary = await get_sales_summary(tenant_id)
    except StoreFailure as e:
        raise _ledger_unavailable(tenant_id, e)
    return summary.model_dump(mode="json", by_alias=True)
