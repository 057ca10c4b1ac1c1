"""Goal Tracker - financial goal progress derived from SalesMetrics.

Nothing is stored; every read recomputes from the ledger and sales settings.
"""
import logging
import math
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from models import FinancialGoal, GoalProgress, SalesConfig, SalesMetrics, SalesSummary
from services.metrics_aggregator import compute_breakdown, compute_metrics, load_sales_inputs

logger = logging.getLogger(__name__)

UNREACHABLE_DAYS = 999


def build_goal(metrics: SalesMetrics, config: Optional[SalesConfig] = None) -> FinancialGoal:
    config = config or SalesConfig()
    return FinancialGoal(
        current=metrics.gross_total,
        target=config.financial_goal_target,
        start_date=config.financial_goal_start_date,
    )


def compute_progress(
    goal: FinancialGoal,
    metrics: SalesMetrics,
    today: Optional[date] = None,
) -> GoalProgress:
    """
    Projection toward the goal.

    - percent: current / target, rounded half-up, capped at 100
    - daily_average: manual override, else current / days since start (min 1 day)
    - days_to_goal: manual override, else ceil(remaining / daily_average);
      999 when the average is not positive, 0 once the goal is reached
    """
    today = today or datetime.now(timezone.utc).date()

    if goal.target > 0:
        ratio = (goal.current / goal.target * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        percent = max(0, min(100, int(ratio)))
    else:
        percent = 100

    days_since_start = max(1, (today - goal.start_date).days)

    if metrics.manual_daily_average is not None:
        daily_average = metrics.manual_daily_average
    else:
        daily_average = goal.current / days_since_start

    if metrics.manual_projection_days is not None:
        days_to_goal = metrics.manual_projection_days
    elif daily_average > 0:
        days_to_goal = math.ceil((goal.target - goal.current) / daily_average)
    else:
        days_to_goal = UNREACHABLE_DAYS
    days_to_goal = max(0, days_to_goal)

    return GoalProgress(
        percent=percent,
        days_since_start=days_since_start,
        daily_average=daily_average,
        days_to_goal=days_to_goal,
        projected_date=today + timedelta(days=days_to_goal),
    )


async def get_financial_goal(tenant_id: str) -> FinancialGoal:
    transactions, config = await load_sales_inputs(tenant_id)
    return build_goal(compute_metrics(transactions, config), config)


async def get_sales_summary(tenant_id: str, today: Optional[date] = None) -> SalesSummary:
    """Metrics, breakdown, goal and projection from a single read of the inputs."""
    transactions, config = await load_sales_inputs(tenant_id)
    metrics = compute_metrics(transactions, config)
    goal = build_goal(metrics, config)
    return SalesSummary(
        metrics=metrics,
        breakdown=compute_breakdown(metrics),
        goal=goal,
        progress=compute_progress(goal, metrics, today=today),
    )
