"""
Metrics aggregation: manual override precedence, defaults, breakdown.
"""
from decimal import Decimal

import pytest

from models import SalesConfig, Transaction
from services.metrics_aggregator import (
    compute_breakdown,
    compute_metrics,
    get_sales_metrics,
    load_sales_config,
)

TENANT_ID = "tenant-1"

LEDGER = [
    {"tenant_id": TENANT_ID, "id": 1, "amount": 100, "status": "COMPLETED", "date": "2024-05-01"},
    {"tenant_id": TENANT_ID, "id": 2, "amount": 50, "status": "PENDING", "date": "2024-05-02"},
    {"tenant_id": TENANT_ID, "id": 3, "amount": 30, "status": "REFUNDED", "date": "2024-05-03"},
]


@pytest.fixture
def ledger(memory_db):
    memory_db.transactions.docs.extend(dict(row) for row in LEDGER)
    # Another tenant's sale must not leak in
    memory_db.transactions.docs.append({"tenant_id": "other", "amount": 999, "status": "APPROVED"})
    return memory_db


@pytest.mark.asyncio
async def test_gross_from_approved_only_without_config(ledger):
    metrics = await get_sales_metrics(TENANT_ID)

    assert metrics.gross_total == Decimal("100")
    assert metrics.platform_fee_percentage == Decimal("0.05")
    assert metrics.expert_split_percentage == Decimal("0.60")
    assert metrics.team_split_percentage == Decimal("0.40")
    assert metrics.custom_taxes == []
    assert metrics.manual_gross_revenue is None


@pytest.mark.asyncio
async def test_manual_gross_overrides_ledger(ledger):
    ledger.sales_config.docs.append({"tenant_id": TENANT_ID, "manual_gross_revenue": 500})

    metrics = await get_sales_metrics(TENANT_ID)

    assert metrics.gross_total == Decimal("500")
    assert metrics.manual_gross_revenue == Decimal("500")


@pytest.mark.asyncio
async def test_manual_gross_zero_still_wins(ledger):
    ledger.sales_config.docs.append({"tenant_id": TENANT_ID, "manual_gross_revenue": 0})

    metrics = await get_sales_metrics(TENANT_ID)

    assert metrics.gross_total == Decimal("0")
    assert metrics.model_dump(mode="json", by_alias=True)["manualGrossRevenue"] == 0


@pytest.mark.asyncio
async def test_null_manual_gross_falls_back_to_ledger(ledger):
    ledger.sales_config.docs.append({"tenant_id": TENANT_ID, "manual_gross_revenue": None})

    metrics = await get_sales_metrics(TENANT_ID)

    assert metrics.gross_total == Decimal("100")


@pytest.mark.asyncio
async def test_non_numeric_percentages_fall_back_to_defaults(ledger):
    ledger.sales_config.docs.append({
        "tenant_id": TENANT_ID,
        "platform_fee_percentage": "abc",
        "expert_split_percentage": None,
        "team_split_percentage": "0.5",
        "custom_taxes": "not a list",
    })

    metrics = await get_sales_metrics(TENANT_ID)

    assert metrics.platform_fee_percentage == Decimal("0.05")
    assert metrics.expert_split_percentage == Decimal("0.60")
    assert metrics.team_split_percentage == Decimal("0.5")
    assert metrics.custom_taxes == []


@pytest.mark.asyncio
async def test_custom_taxes_pass_through_in_order(ledger):
    taxes = [{"label": "ISS", "percentage": 5}, {"label": "IR", "percentage": 1.5}]
    ledger.sales_config.docs.append({"tenant_id": TENANT_ID, "custom_taxes": taxes})

    metrics = await get_sales_metrics(TENANT_ID)

    assert metrics.custom_taxes == taxes


@pytest.mark.asyncio
async def test_config_read_failure_degrades_to_defaults(ledger):
    ledger.sales_config.docs.append({"tenant_id": TENANT_ID, "manual_gross_revenue": 500})
    ledger.sales_config.fail = True

    metrics = await get_sales_metrics(TENANT_ID)

    assert metrics.gross_total == Decimal("100")
    assert metrics.platform_fee_percentage == Decimal("0.05")


@pytest.mark.asyncio
async def test_absent_config_uses_defaults(memory_db):
    config = await load_sales_config(TENANT_ID)

    assert config == SalesConfig(tenant_id=TENANT_ID)


def test_non_numeric_amount_counts_as_zero():
    rows = [
        Transaction.model_validate({"amount": "12.50", "status": "APPROVED"}),
        Transaction.model_validate({"amount": "n/a", "status": "APPROVED"}),
    ]

    assert compute_metrics(rows).gross_total == Decimal("12.50")


@pytest.mark.asyncio
async def test_numeric_date_keeps_approved_amount(memory_db):
    memory_db.transactions.docs.append(
        {"tenant_id": TENANT_ID, "amount": 100, "status": "COMPLETED", "date": 1714564800000}
    )

    metrics = await get_sales_metrics(TENANT_ID)

    assert metrics.gross_total == Decimal("100")
    assert Transaction.model_validate({"status": "APPROVED", "date": 1714564800000}).date == "1714564800000"


def test_breakdown():
    config = SalesConfig(
        manual_gross_revenue=1000,
        platform_fee_percentage="0.10",
        custom_taxes=[{"label": "ISS", "percentage": 5}, {"label": "bad", "percentage": "x"}],
    )
    breakdown = compute_breakdown(compute_metrics([], config))

    assert breakdown.platform_fee_amount == Decimal("100")
    assert breakdown.custom_taxes_total == Decimal("50")
    assert breakdown.total_deductions == Decimal("150")
    assert breakdown.net_revenue == Decimal("850")
    assert breakdown.expert_amount == Decimal("510")
    assert breakdown.team_amount == Decimal("340")
