from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token
from database import database
from models import AuditAction, ModuleKey, PlanId, ResourceKind
from utils.audit import create_audit_log
from utils.errors import (
    InsufficientPlan,
    ModuleNotAvailable,
    SubscriptionExpired,
    SubscriptionInactive,
    SubscriptionNotFound,
)

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    
    token = auth_header.split(" ", 1)[1]
    return decode_access_token(token)

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def tenant_route_guard(request: Request) -> dict:
    """Guard for tenant routes - checks auth and that the tenant still exists."""
    user = await require_auth(request)
    tenant_id = user.get("tenant_id")
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has no tenant"
        )
    
    db = database.get_db()
    tenant = await db.tenants.find_one({"tenant_id": tenant_id}, {"_id": 0, "tenant_id": 1})
    if not tenant:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Tenant not found"
        )
    
    request.state.user = user
    return user

def get_entitlement_service(request: Request):
    """EntitlementService built at startup (see server.py)."""
    return request.app.state.entitlements

def get_provider_adapters(request: Request):
    return request.app.state.billing_providers

# ============================================================================
# ENTITLEMENT GUARDS (use with Depends)
# ============================================================================

def require_module(module: ModuleKey, advanced: bool = False):
    """
    Dependency enforcing plan-based module access.

    Usage:
        @router.post("/inventory/items")
        async def create_item(user: dict = Depends(require_module(ModuleKey.INVENTORY))):
            ...
    """
    async def dependency(request: Request) -> dict:
        user = await tenant_route_guard(request)
        entitlements = get_entitlement_service(request)
        try:
            await entitlements.enforce_module(user["tenant_id"], module, advanced=advanced)
        except ModuleNotAvailable as e:
            await create_audit_log(
                action=AuditAction.PLAN_GATE_DENIED,
                actor_role=user.get("role"),
                actor_id=user.get("user_id"),
                tenant_id=user["tenant_id"],
                metadata={
                    "module": module.value,
                    "advanced": advanced,
                    "plan": e.details.get("plan"),
                    "endpoint": str(request.url.path),
                    "method": request.method,
                },
            )
            logger.warning(
                "Module access denied: tenant_id=%s plan=%s module=%s endpoint=%s",
                user["tenant_id"], e.details.get("plan"), module.value, request.url.path,
            )
            raise
        return user
    return dependency

def require_quota(kind: ResourceKind):
    """Dependency that blocks creation once the tenant's quota for ``kind`` is reached."""
    async def dependency(request: Request) -> dict:
        user = await tenant_route_guard(request)
        entitlements = get_entitlement_service(request)
        await entitlements.enforce_quota(user["tenant_id"], kind, actor_id=user.get("user_id"))
        return user
    return dependency

def require_plan(minimum: PlanId):
    """Dependency requiring the tenant's effective plan to be ``minimum`` or higher."""
    async def dependency(request: Request) -> dict:
        user = await tenant_route_guard(request)
        entitlements = get_entitlement_service(request)
        try:
            await entitlements.enforce_minimum_plan(user["tenant_id"], minimum)
        except InsufficientPlan:
            logger.warning(
                "Plan requirement not met: tenant_id=%s required=%s endpoint=%s",
                user["tenant_id"], minimum.value, request.url.path,
            )
            raise
        return user
    return dependency

async def require_active_subscription(request: Request) -> dict:
    """Dependency requiring an active or trialing subscription that has not expired.

    The subscription document is exposed as ``request.state.subscription``.
    """
    user = await tenant_route_guard(request)
    entitlements = get_entitlement_service(request)
    try:
        request.state.subscription = await entitlements.enforce_active_subscription(user["tenant_id"])
    except (SubscriptionNotFound, SubscriptionInactive, SubscriptionExpired) as e:
        logger.warning(
            "Subscription check failed: tenant_id=%s code=%s endpoint=%s",
            user["tenant_id"], e.error_code, request.url.path,
        )
        raise
    return user
