"""Tenant resolution for webhook deliveries.

Two-hop, read-only lookup:
1. profiles: exactly one account profile with this email (exact match)
2. tenant_members: exactly one membership row for that profile's account id

A missing profile and a profile without membership are reported with
different reasons so they can be told apart in logs and the delivery log,
even though the webhook reaction (acknowledge, no-op) is the same.
"""
import logging
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel
from pymongo.errors import PyMongoError

from database import database
from services.billing_errors import StoreFailure

logger = logging.getLogger(__name__)


class TenantNotFoundReason(str, Enum):
    NO_PROFILE = "NO_PROFILE"
    NO_MEMBERSHIP = "NO_MEMBERSHIP"
    AMBIGUOUS_PROFILE = "AMBIGUOUS_PROFILE"
    AMBIGUOUS_MEMBERSHIP = "AMBIGUOUS_MEMBERSHIP"


class TenantResolution(BaseModel):
    tenant_id: str
    account_id: str


class TenantNotFound(BaseModel):
    reason: TenantNotFoundReason
    email: str
    account_id: Optional[str] = None


async def resolve_tenant(email: str) -> Union[TenantResolution, TenantNotFound]:
    """Resolve a customer email to a tenant id."""
    db = database.get_db()

    try:
        profiles = await db.profiles.find(
            {"email": email},
            {"_id": 0, "id": 1}
        ).to_list(length=2)
    except PyMongoError as e:
        logger.error(f"Profile lookup failed for {email}: {e}")
        raise StoreFailure(f"Profile lookup failed: {e}")

    if not profiles:
        logger.warning("TENANT_UNRESOLVED reason=NO_PROFILE email=%s", email)
        return TenantNotFound(reason=TenantNotFoundReason.NO_PROFILE, email=email)
    if len(profiles) > 1:
        logger.warning("TENANT_UNRESOLVED reason=AMBIGUOUS_PROFILE email=%s", email)
        return TenantNotFound(reason=TenantNotFoundReason.AMBIGUOUS_PROFILE, email=email)

    account_id = profiles[0].get("id")
    if not account_id:
        logger.warning("TENANT_UNRESOLVED reason=NO_PROFILE email=%s (profile without id)", email)
        return TenantNotFound(reason=TenantNotFoundReason.NO_PROFILE, email=email)
    account_id = str(account_id)

    try:
        memberships = await db.tenant_members.find(
            {"user_id": account_id},
            {"_id": 0, "tenant_id": 1}
        ).to_list(length=2)
    except PyMongoError as e:
        logger.error(f"Tenant membership lookup failed for account {account_id}: {e}")
        raise StoreFailure(f"Tenant membership lookup failed: {e}")

    if not memberships or not memberships[0].get("tenant_id"):
        logger.warning(
            "TENANT_UNRESOLVED reason=NO_MEMBERSHIP email=%s account_id=%s", email, account_id
        )
        return TenantNotFound(
            reason=TenantNotFoundReason.NO_MEMBERSHIP, email=email, account_id=account_id
        )
    if len(memberships) > 1:
        logger.warning(
            "TENANT_UNRESOLVED reason=AMBIGUOUS_MEMBERSHIP email=%s account_id=%s", email, account_id
        )
        return TenantNotFound(
            reason=TenantNotFoundReason.AMBIGUOUS_MEMBERSHIP, email=email, account_id=account_id
        )

    return TenantResolution(tenant_id=str(memberships[0]["tenant_id"]), account_id=account_id)
