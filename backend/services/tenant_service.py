"""Tenant lifecycle: signup (with trial subscription), lookup and cascade purge."""
from typing import Any, Dict, Optional
import logging

from auth import hash_password, verify_password
from database import database, TENANT_OWNED_COLLECTIONS
from models import AuditAction, SignupRequest, Tenant, User, UserRole, UserStatus
from services.billing_providers.base import BillingCustomer
from services.subscription_service import serialize_subscription, subscription_service
from utils.audit import create_audit_log
from utils.errors import NotFound, ValidationError

logger = logging.getLogger(__name__)


class TenantService:

    async def register_tenant(self, body: SignupRequest) -> Dict[str, Any]:
        """Create tenant, owner user and the 14-day free trial subscription."""
        db = database.get_db()
        email = body.email.lower()

        if await db.users.find_one({"email": email}, {"_id": 1}):
            raise ValidationError("Email already registered")

        tenant = Tenant(name=body.clinic_name, owner_email=email)
        owner = User(
            tenant_id=tenant.tenant_id,
            email=email,
            name=body.name,
            password_hash=hash_password(body.password),
            role=UserRole.ROLE_OWNER,
        )

        await db.tenants.insert_one(tenant.model_dump())
        await db.users.insert_one(owner.model_dump())
        subscription = await subscription_service.create_trial(tenant.tenant_id)

        await create_audit_log(
            action=AuditAction.TENANT_SIGNUP,
            actor_role=UserRole.ROLE_OWNER,
            actor_id=owner.user_id,
            tenant_id=tenant.tenant_id,
            resource_type="tenant",
            resource_id=tenant.tenant_id,
        )
        logger.info("Tenant registered tenant_id=%s", tenant.tenant_id)
        return {
            "tenant": tenant.model_dump(mode="json"),
            "user": owner.model_dump(mode="json", exclude={"password_hash"}),
            "subscription": serialize_subscription(subscription),
        }

    async def authenticate(self, email: str, password: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        user = await db.users.find_one({"email": email.lower()}, {"_id": 0})
        if not user or user.get("status") != UserStatus.ACTIVE.value:
            return None
        if not verify_password(password, user["password_hash"]):
            return None
        return user

    async def get_tenant(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.tenants.find_one({"tenant_id": tenant_id}, {"_id": 0})

    async def get_billing_customer(self, tenant_id: str) -> BillingCustomer:
        tenant = await self.get_tenant(tenant_id)
        if not tenant:
            raise NotFound("Tenant not found")
        return BillingCustomer(
            tenant_id=tenant_id,
            email=tenant["owner_email"],
            name=tenant["name"],
        )

    async def delete_tenant_cascade(self, tenant_id: str) -> Dict[str, int]:
        """Delete every tenant-owned document, its users, then the tenant row.

        Raises NotFound if the tenant row was already gone.
        """
        db = database.get_db()
        removed = {}
        for collection in TENANT_OWNED_COLLECTIONS:
            result = await db[collection].delete_many({"tenant_id": tenant_id})
            removed[collection] = result.deleted_count

        result = await db.users.delete_many({"tenant_id": tenant_id})
        removed["users"] = result.deleted_count

        result = await db.tenants.delete_one({"tenant_id": tenant_id})
        if result.deleted_count == 0:
            raise NotFound(f"Tenant {tenant_id} not found")
        removed["tenants"] = 1

        logger.info("Tenant purged tenant_id=%s removed=%s", tenant_id, removed)
        return removed


tenant_service = TenantService()
