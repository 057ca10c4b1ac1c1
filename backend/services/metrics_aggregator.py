"""
Metrics Aggregator - ledger + sales configuration -> SalesMetrics.

Rules:
1. transaction_sum = sum of APPROVED transaction amounts
2. gross_total = manual_gross_revenue when set (0 included), else transaction_sum
3. split percentages default to 0.05 / 0.60 / 0.40 when absent or non-numeric
4. custom_taxes pass through in order, [] when absent

A missing sales_config row means defaults. A failed config read is logged
and also means defaults; it never aborts the metrics read.
"""
import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from pydantic import ValidationError
from pymongo.errors import PyMongoError

from database import database
from models import (
    SalesBreakdown,
    SalesConfig,
    SalesMetrics,
    Transaction,
    TransactionStatus,
    to_decimal,
)
from services.billing_errors import ConfigReadFailure, StoreFailure

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


async def _read_sales_config(tenant_id: str) -> Optional[SalesConfig]:
    db = database.get_db()
    try:
        doc = await db.sales_config.find_one({"tenant_id": tenant_id}, {"_id": 0})
    except PyMongoError as e:
        raise ConfigReadFailure(f"sales_config read failed: {e}")
    if doc is None:
        return None
    try:
        return SalesConfig.model_validate(doc)
    except ValidationError as e:
        raise ConfigReadFailure(f"sales_config row unreadable: {e}")


async def load_sales_config(tenant_id: str) -> SalesConfig:
    """Tenant sales settings, or defaults when absent or unreadable."""
    try:
        config = await _read_sales_config(tenant_id)
    except ConfigReadFailure as e:
        logger.error(f"CONFIG_READ_FAILED tenant_id={tenant_id} error={e.message} - using defaults")
        return SalesConfig(tenant_id=tenant_id)
    return config or SalesConfig(tenant_id=tenant_id)


async def load_transactions(tenant_id: str) -> List[Transaction]:
    db = database.get_db()
    try:
        rows = await db.transactions.find({"tenant_id": tenant_id}, {"_id": 0}).to_list(length=None)
    except PyMongoError as e:
        logger.error(f"Transaction read failed for tenant {tenant_id}: {e}")
        raise StoreFailure(f"Transaction read failed: {e}", tenant_id=tenant_id)

    transactions = []
    for row in rows:
        try:
            transactions.append(Transaction.model_validate(row))
        except ValidationError as e:
            logger.warning(f"Skipping unreadable transaction for tenant {tenant_id}: {e}")
    return transactions


async def load_sales_inputs(tenant_id: str) -> Tuple[List[Transaction], SalesConfig]:
    transactions = await load_transactions(tenant_id)
    config = await load_sales_config(tenant_id)
    return transactions, config


def transaction_sum(transactions: Iterable[Transaction]) -> Decimal:
    return sum(
        (t.amount for t in transactions if t.status == TransactionStatus.APPROVED),
        ZERO,
    )


def compute_metrics(transactions: Iterable[Transaction], config: Optional[SalesConfig] = None) -> SalesMetrics:
    """Pure aggregation of one tenant's ledger under its sales settings."""
    config = config or SalesConfig()
    total = transaction_sum(transactions)
    gross = config.manual_gross_revenue if config.manual_gross_revenue is not None else total

    return SalesMetrics(
        gross_total=gross,
        platform_fee_percentage=config.platform_fee_percentage,
        expert_split_percentage=config.expert_split_percentage,
        team_split_percentage=config.team_split_percentage,
        manual_gross_revenue=config.manual_gross_revenue,
        manual_daily_average=config.manual_daily_average,
        manual_projection_days=config.manual_projection_days,
        custom_taxes=list(config.custom_taxes),
    )


def compute_breakdown(metrics: SalesMetrics) -> SalesBreakdown:
    """Fee, tax and split amounts for the dashboard.

    Custom tax percentages are in percent units (5 means 5%); the split
    percentages are fractions.
    """
    gross = metrics.gross_total
    platform_fee = gross * metrics.platform_fee_percentage

    taxes_total = ZERO
    for tax in metrics.custom_taxes:
        pct = to_decimal(tax.get("percentage"))
        if pct is None:
            logger.warning(f"Ignoring custom tax with non-numeric percentage: {tax!r}")
            continue
        taxes_total += gross * pct / HUNDRED

    deductions = platform_fee + taxes_total
    net = gross - deductions
    return SalesBreakdown(
        platform_fee_amount=platform_fee,
        custom_taxes_total=taxes_total,
        total_deductions=deductions,
        net_revenue=net,
        expert_amount=net * metrics.expert_split_percentage,
        team_amount=net * metrics.team_split_percentage,
    )


async def get_sales_metrics(tenant_id: str) -> SalesMetrics:
    transactions, config = await load_sales_inputs(tenant_id)
    return compute_metrics(transactions, config)
