from pydantic import BaseModel, Field, ConfigDict, PlainSerializer, computed_field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any, List, Literal, Annotated
from datetime import datetime, date, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
import logging
import uuid

logger = logging.getLogger(__name__)

# Decimals are kept exact internally and rendered as JSON numbers for the UI.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

DEFAULT_PLATFORM_FEE_PERCENTAGE = Decimal("0.05")
DEFAULT_EXPERT_SPLIT_PERCENTAGE = Decimal("0.60")
DEFAULT_TEAM_SPLIT_PERCENTAGE = Decimal("0.40")
DEFAULT_FINANCIAL_GOAL_TARGET = Decimal("100000")
DEFAULT_FINANCIAL_GOAL_START_DATE = date(2023, 11, 1)


def to_decimal(value: Any) -> Optional[Decimal]:
    """Coerce a stored number/string to Decimal. Returns None when not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return result if result.is_finite() else None


def to_date(value: Any) -> Optional[date]:
    """Coerce an ISO date/datetime string or datetime to a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        try:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
        except ValueError:
            try:
                return date.fromisoformat(raw[:10])
            except ValueError:
                return None
    return None


# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELED = "canceled"

class SubscriptionState(str, Enum):
    """Lifecycle state derived from (status, cancel_at_period_end)."""
    NONE = "NONE"
    ACTIVE = "ACTIVE"
    ACTIVE_PENDING_CANCEL = "ACTIVE_PENDING_CANCEL"
    CANCELED = "CANCELED"

class BillingEventKind(str, Enum):
    ORDER_PAID = "ORDER_PAID"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    REFUND = "REFUND"
    UNRECOGNIZED = "UNRECOGNIZED"

class TransactionStatus(str, Enum):
    APPROVED = "APPROVED"
    PENDING = "PENDING"
    REFUNDED = "REFUNDED"

class UserRole(str, Enum):
    OWNER = "OWNER"
    EDITOR = "EDITOR"
    VIEWER = "VIEWER"
    ADMIN = "ADMIN"

class WebhookOutcome(str, Enum):
    PROCESSED = "PROCESSED"
    MISSING_EMAIL = "MISSING_EMAIL"
    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
    UNRECOGNIZED_EVENT = "UNRECOGNIZED_EVENT"
    STALE_EVENT = "STALE_EVENT"
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    FAILED = "FAILED"

class AuditAction(str, Enum):
    # Webhook-driven
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    WEBHOOK_EVENT_REJECTED = "WEBHOOK_EVENT_REJECTED"
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_PROCESSING_FAILED"

    # Operator intents
    PLAN_CHECKOUT_REDIRECT = "PLAN_CHECKOUT_REDIRECT"
    PLAN_CHANGED_DIRECT = "PLAN_CHANGED_DIRECT"
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"


# ============================================================================
# BASE
# ============================================================================

class ApiModel(BaseModel):
    """Models exposed to the UI: snake_case in Python/Mongo, camelCase on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


# ============================================================================
# SUBSCRIPTION
# ============================================================================

class Subscription(ApiModel):
    tenant_id: str
    plan_id: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    external_order_id: Optional[str] = None
    external_customer_email: Optional[str] = None
    updated_at: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    last_provider_event_at: Optional[datetime] = None

    @field_validator("status", mode="before")
    @classmethod
    def _known_status(cls, v):
        # Rows written by older billing flows may carry other statuses
        if v is None or isinstance(v, SubscriptionStatus):
            return v
        raw = str(v).strip().lower()
        if raw in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELED.value):
            return raw
        logger.warning(f"Unknown subscription status treated as unset: {v!r}")
        return None

    @computed_field
    @property
    def state(self) -> SubscriptionState:
        if self.status == SubscriptionStatus.CANCELED:
            return SubscriptionState.CANCELED
        if self.status is None:
            return SubscriptionState.NONE
        if self.cancel_at_period_end:
            return SubscriptionState.ACTIVE_PENDING_CANCEL
        return SubscriptionState.ACTIVE

    @computed_field
    @property
    def entitled(self) -> bool:
        return self.has_entitlement()

    def has_entitlement(self, now: Optional[datetime] = None) -> bool:
        """Canceled-at-period-end subscriptions keep access until current_period_end."""
        if self.status != SubscriptionStatus.ACTIVE:
            return False
        if not self.cancel_at_period_end:
            return True
        if self.current_period_end is None:
            return False
        now = now or datetime.now(timezone.utc)
        period_end = self.current_period_end
        if period_end.tzinfo is None:
            period_end = period_end.replace(tzinfo=timezone.utc)
        return now < period_end


class SubscriptionResponse(ApiModel):
    tenant_id: str
    state: SubscriptionState
    subscription: Optional[Subscription] = None


# ============================================================================
# CANONICAL WEBHOOK EVENT
# ============================================================================

class BillingEvent(BaseModel):
    """Provider-agnostic representation of one webhook delivery."""
    model_config = ConfigDict(extra="ignore")

    kind: BillingEventKind
    email: Optional[str] = None
    order_id: Optional[str] = None
    plan_id: Optional[str] = None
    product_id: Optional[str] = None
    raw_event_type: Optional[str] = None
    raw_timestamp: Optional[datetime] = None


class WebhookDelivery(BaseModel):
    model_config = ConfigDict(extra="ignore")

    delivery_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    provider: str = "kiwify"
    event_kind: Optional[BillingEventKind] = None
    raw_event_type: Optional[str] = None
    email: Optional[str] = None
    order_id: Optional[str] = None
    plan_id: Optional[str] = None
    tenant_id: Optional[str] = None
    outcome: WebhookOutcome
    reason: Optional[str] = None
    error: Optional[str] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# LEDGER + SALES CONFIG (read-only inputs)
# ============================================================================

class Transaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    amount: Decimal = Decimal("0")
    status: TransactionStatus
    date: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        return str(v) if v is not None else None

    @field_validator("amount", mode="before")
    @classmethod
    def _coerce_amount(cls, v):
        amount = to_decimal(v)
        if amount is None:
            logger.warning(f"Non-numeric transaction amount treated as 0: {v!r}")
            return Decimal("0")
        return amount

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, v):
        # Ledger rows use COMPLETED for settled sales
        raw = str(v or "").strip().upper()
        if raw in ("COMPLETED", "APPROVED", "PAID"):
            return TransactionStatus.APPROVED
        if raw == "PENDING":
            return TransactionStatus.PENDING
        return TransactionStatus.REFUNDED

    @field_validator("date", mode="before")
    @classmethod
    def _stringify_date(cls, v):
        if v is None:
            return None
        if isinstance(v, (datetime, date)):
            return v.isoformat()
        return str(v)


class SalesConfig(BaseModel):
    """Operator-managed per-tenant sales settings. Every field tolerates bad data."""
    model_config = ConfigDict(extra="ignore")

    tenant_id: Optional[str] = None
    manual_gross_revenue: Optional[Decimal] = None
    manual_daily_average: Optional[Decimal] = None
    manual_projection_days: Optional[int] = None
    platform_fee_percentage: Decimal = DEFAULT_PLATFORM_FEE_PERCENTAGE
    expert_split_percentage: Decimal = DEFAULT_EXPERT_SPLIT_PERCENTAGE
    team_split_percentage: Decimal = DEFAULT_TEAM_SPLIT_PERCENTAGE
    custom_taxes: List[Dict[str, Any]] = Field(default_factory=list)
    financial_goal_target: Decimal = DEFAULT_FINANCIAL_GOAL_TARGET
    financial_goal_start_date: date = DEFAULT_FINANCIAL_GOAL_START_DATE

    @field_validator("manual_gross_revenue", "manual_daily_average", mode="before")
    @classmethod
    def _optional_decimal(cls, v):
        return to_decimal(v)

    @field_validator("manual_projection_days", mode="before")
    @classmethod
    def _optional_days(cls, v):
        days = to_decimal(v)
        return int(days) if days is not None else None

    @field_validator("platform_fee_percentage", mode="before")
    @classmethod
    def _platform_fee(cls, v):
        value = to_decimal(v)
        return DEFAULT_PLATFORM_FEE_PERCENTAGE if value is None else value

    @field_validator("expert_split_percentage", mode="before")
    @classmethod
    def _expert_split(cls, v):
        value = to_decimal(v)
        return DEFAULT_EXPERT_SPLIT_PERCENTAGE if value is None else value

    @field_validator("team_split_percentage", mode="before")
    @classmethod
    def _team_split(cls, v):
        value = to_decimal(v)
        return DEFAULT_TEAM_SPLIT_PERCENTAGE if value is None else value

    @field_validator("custom_taxes", mode="before")
    @classmethod
    def _taxes(cls, v):
        if not isinstance(v, list):
            return []
        return [t for t in v if isinstance(t, dict)]

    @field_validator("financial_goal_target", mode="before")
    @classmethod
    def _goal_target(cls, v):
        # A zero target means "not set"
        value = to_decimal(v)
        return DEFAULT_FINANCIAL_GOAL_TARGET if not value else value

    @field_validator("financial_goal_start_date", mode="before")
    @classmethod
    def _goal_start(cls, v):
        return to_date(v) or DEFAULT_FINANCIAL_GOAL_START_DATE


# ============================================================================
# DERIVED METRICS
# ============================================================================

class SalesMetrics(ApiModel):
    gross_total: Money
    platform_fee_percentage: Money
    expert_split_percentage: Money
    team_split_percentage: Money
    manual_gross_revenue: Optional[Money] = None
    manual_daily_average: Optional[Money] = None
    manual_projection_days: Optional[int] = None
    custom_taxes: List[Dict[str, Any]] = Field(default_factory=list)


class SalesBreakdown(ApiModel):
    platform_fee_amount: Money
    custom_taxes_total: Money
    total_deductions: Money
    net_revenue: Money
    expert_amount: Money
    team_amount: Money


class FinancialGoal(ApiModel):
    current: Money
    target: Money
    start_date: date


class GoalProgress(ApiModel):
    percent: int
    days_since_start: int
    daily_average: Money
    days_to_goal: int
    projected_date: date


class SalesSummary(ApiModel):
    metrics: SalesMetrics
    breakdown: SalesBreakdown
    goal: FinancialGoal
    progress: GoalProgress


# ============================================================================
# REQUEST / RESPONSE MODELS
# ============================================================================

class PlanChangeRequest(ApiModel):
    plan_id: str


class PlanChangeResult(ApiModel):
    action: Literal["redirect", "updated"]
    plan_id: str
    checkout_url: Optional[str] = None
    subscription: Optional[Subscription] = None


class WebhookResult(BaseModel):
    """Internal result of one webhook delivery through the pipeline."""
    outcome: WebhookOutcome
    tenant_id: Optional[str] = None
    reason: Optional[str] = None
    event: Optional[BillingEvent] = None


# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    tenant_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    ip_address: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
