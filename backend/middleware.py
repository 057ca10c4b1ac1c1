from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, check_rbac
from models import UserRole

logger = logging.getLogger(__name__)

# Roles allowed to change or cancel the tenant's plan
BILLING_MANAGER_ROLES = (UserRole.OWNER, UserRole.ADMIN)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_role(request: Request, allowed_roles) -> dict:
    """Require one of the given roles."""
    user = await require_auth(request)

    if not check_rbac(user.get("role"), allowed_roles):
        logger.warning(
            f"Role check failed user_id={user.get('user_id')} role={user.get('role')} path={request.url.path}"
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )

    return user

async def tenant_route_guard(request: Request) -> dict:
    """Guard for tenant routes - any authenticated member of a tenant."""
    user = await require_auth(request)

    if not user.get("tenant_id"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="No tenant associated with user"
        )

    return user

async def billing_manager_guard(request: Request) -> dict:
    """Guard for plan-change intents - tenant OWNER (or platform ADMIN acting in a tenant)."""
    user = await tenant_route_guard(request)

    if not check_rbac(user.get("role"), BILLING_MANAGER_ROLES):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the tenant owner can change billing"
        )

    return user

async def admin_route_guard(request: Request) -> dict:
    """Guard for admin routes."""
    return await require_role(request, (UserRole.ADMIN,))
