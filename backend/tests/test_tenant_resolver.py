"""
Tenant resolution: email -> profile -> membership.
"""
import pytest

from services.billing_errors import StoreFailure
from services.tenant_resolver import (
    TenantNotFound,
    TenantNotFoundReason,
    TenantResolution,
    resolve_tenant,
)


@pytest.mark.asyncio
async def test_resolves_single_membership(memory_db):
    memory_db.add_member("a@x.com", "user-1", "tenant-1")

    result = await resolve_tenant("a@x.com")

    assert isinstance(result, TenantResolution)
    assert result.tenant_id == "tenant-1"
    assert result.account_id == "user-1"


@pytest.mark.asyncio
async def test_no_profile(memory_db):
    result = await resolve_tenant("nobody@x.com")

    assert isinstance(result, TenantNotFound)
    assert result.reason == TenantNotFoundReason.NO_PROFILE


@pytest.mark.asyncio
async def test_profile_without_membership_is_distinct(memory_db):
    memory_db.profiles.docs.append({"id": "user-2", "email": "b@x.com"})

    result = await resolve_tenant("b@x.com")

    assert isinstance(result, TenantNotFound)
    assert result.reason == TenantNotFoundReason.NO_MEMBERSHIP
    assert result.account_id == "user-2"


@pytest.mark.asyncio
async def test_email_match_is_exact(memory_db):
    memory_db.add_member("a@x.com", "user-1", "tenant-1")

    result = await resolve_tenant("A@X.COM")

    assert isinstance(result, TenantNotFound)


@pytest.mark.asyncio
async def test_ambiguous_membership_is_not_resolved(memory_db):
    memory_db.add_member("a@x.com", "user-1", "tenant-1")
    memory_db.tenant_members.docs.append({"user_id": "user-1", "tenant_id": "tenant-2"})

    result = await resolve_tenant("a@x.com")

    assert isinstance(result, TenantNotFound)
    assert result.reason == TenantNotFoundReason.AMBIGUOUS_MEMBERSHIP


@pytest.mark.asyncio
async def test_store_error_raises(memory_db):
    memory_db.profiles.fail = True

    with pytest.raises(StoreFailure):
        await resolve_tenant("a@x.com")


@pytest.mark.asyncio
async def test_read_only(memory_db):
    memory_db.add_member("a@x.com", "user-1", "tenant-1")

    await resolve_tenant("a@x.com")

    assert set(memory_db.profiles.calls) == {"find"}
    assert set(memory_db.tenant_members.calls) == {"find"}
    assert memory_db.subscriptions.calls == []
