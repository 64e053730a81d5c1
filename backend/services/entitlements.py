"""Entitlement Evaluator - effective plan, quotas and module access per tenant.

Resolution rules:
- A tenant's plan counts only while the subscription is ``active`` or ``trialing``.
- No subscription, any other status, or a failed read -> ``free``.
- A failed read is reported through ``PlanResolution.degraded`` and logged;
  callers are never handed the exception.

Quotas use a strict ``current < limit`` comparison; ``-1`` means unlimited.
Quota check and the subsequent insert are not atomic, so concurrent creations
can overshoot a limit by a few records.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union
import logging

from models import AuditAction, ModuleKey, PlanId, ResourceKind, SubscriptionStatus
from services.plan_catalog import (
    UNLIMITED,
    PlanCatalog,
    PlanLimits,
    PlanModules,
    plan_meets_minimum,
)
from services.subscription_service import SubscriptionService, subscription_service
from services.usage_counters import UsageCounters, usage_counters
from utils.audit import create_audit_log
from utils.errors import (
    InsufficientPlan,
    ModuleNotAvailable,
    ResourceQuotaExceeded,
    SubscriptionExpired,
    SubscriptionInactive,
    SubscriptionNotFound,
)

logger = logging.getLogger(__name__)

ENTITLED_STATUSES = frozenset({SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value})


def subscription_grants_plan(status: Optional[str]) -> bool:
    """True if a subscription in ``status`` entitles the tenant to its plan."""
    return status in ENTITLED_STATUSES


@dataclass(frozen=True)
class PlanResolution:
    plan: PlanId
    status: Optional[str] = None
    degraded: bool = False


@dataclass(frozen=True)
class QuotaCheck:
    allowed: bool
    current: int
    limit: int
    resource: ResourceKind
    plan: PlanId
    degraded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "current": self.current, "limit": self.limit}


def _as_module(module: Union[ModuleKey, str]) -> Optional[ModuleKey]:
    if isinstance(module, ModuleKey):
        return module
    try:
        return ModuleKey(module)
    except ValueError:
        return None


class EntitlementService:
    """Answers plan, quota and module questions for a tenant."""

    def __init__(
        self,
        catalog: PlanCatalog,
        subscriptions: SubscriptionService = subscription_service,
        usage: UsageCounters = usage_counters,
    ):
        self.catalog = catalog
        self.subscriptions = subscriptions
        self.usage = usage

    # =========================================================================
    # Plan resolution
    # =========================================================================

    async def resolve_plan_result(self, tenant_id: str) -> PlanResolution:
        try:
            subscription = await self.subscriptions.get(tenant_id)
        except Exception as e:
            logger.error(
                "Subscription read failed, degrading to free: tenant_id=%s error=%s",
                tenant_id, e,
            )
            return PlanResolution(plan=PlanId.FREE, degraded=True)

        if not subscription:
            return PlanResolution(plan=PlanId.FREE)

        status = subscription.get("status")
        if not subscription_grants_plan(status):
            return PlanResolution(plan=PlanId.FREE, status=status)

        return PlanResolution(
            plan=self.catalog.resolve_plan_id(subscription.get("plan")),
            status=status,
        )

    async def resolve_plan(self, tenant_id: str) -> PlanId:
        return (await self.resolve_plan_result(tenant_id)).plan

    async def get_limits(self, tenant_id: str) -> PlanLimits:
        return self.catalog.get_limits(await self.resolve_plan(tenant_id))

    async def get_modules(self, tenant_id: str) -> PlanModules:
        return self.catalog.get_modules(await self.resolve_plan(tenant_id))

    # =========================================================================
    # Quotas
    # =========================================================================

    async def can_create(
        self,
        tenant_id: str,
        kind: ResourceKind,
        now: Optional[datetime] = None,
    ) -> QuotaCheck:
        plan = await self.resolve_plan(tenant_id)
        limit = self.catalog.get_limits(plan).limit_for(kind)

        if limit == UNLIMITED:
            return QuotaCheck(allowed=True, current=0, limit=UNLIMITED, resource=kind, plan=plan)

        try:
            current = await self.usage.count(tenant_id, kind, now=now)
        except Exception as e:
            logger.error(
                "Usage count failed, denying creation: tenant_id=%s resource=%s error=%s",
                tenant_id, kind.value, e,
            )
            return QuotaCheck(
                allowed=False, current=0, limit=limit, resource=kind, plan=plan, degraded=True
            )

        return QuotaCheck(
            allowed=current < limit, current=current, limit=limit, resource=kind, plan=plan
        )

    async def enforce_quota(
        self,
        tenant_id: str,
        kind: ResourceKind,
        actor_id: Optional[str] = None,
    ) -> QuotaCheck:
        """Raise ResourceQuotaExceeded when the tenant cannot create another ``kind``."""
        check = await self.can_create(tenant_id, kind)
        if not check.allowed:
            await create_audit_log(
                action=AuditAction.QUOTA_EXCEEDED,
                actor_id=actor_id,
                tenant_id=tenant_id,
                metadata={
                    "resource": kind.value,
                    "plan": check.plan.value,
                    "current": check.current,
                    "limit": check.limit,
                    "degraded": check.degraded,
                },
            )
            raise ResourceQuotaExceeded(kind.value, check.current, check.limit, check.plan.value)
        return check

    # =========================================================================
    # Modules
    # =========================================================================

    async def has_module_access(self, tenant_id: str, module: Union[ModuleKey, str]) -> bool:
        key = _as_module(module)
        if key is None:
            return False
        modules = await self.get_modules(tenant_id)
        return modules.flag(key) is not False

    async def has_advanced_access(self, tenant_id: str, module: Union[ModuleKey, str]) -> bool:
        key = _as_module(module)
        if key is None:
            return False
        flag = (await self.get_modules(tenant_id)).flag(key)
        return flag is True or flag == "advanced"

    async def enforce_module(
        self,
        tenant_id: str,
        module: Union[ModuleKey, str],
        advanced: bool = False,
    ) -> None:
        check = self.has_advanced_access if advanced else self.has_module_access
        if await check(tenant_id, module):
            return
        plan = await self.resolve_plan(tenant_id)
        key = _as_module(module)
        required = self.catalog.minimum_plan_for(key) if key else None
        raise ModuleNotAvailable(
            str(getattr(module, "value", module)),
            plan.value,
            required.value if required else None,
        )

    async def meets_minimum_plan(self, tenant_id: str, minimum: PlanId) -> bool:
        return plan_meets_minimum(await self.resolve_plan(tenant_id), minimum)

    async def enforce_minimum_plan(self, tenant_id: str, minimum: PlanId) -> None:
        plan = await self.resolve_plan(tenant_id)
        if not plan_meets_minimum(plan, minimum):
            raise InsufficientPlan(plan.value, minimum.value)

    async def enforce_active_subscription(
        self,
        tenant_id: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Return the subscription if it is active or trialing and not past its end date.

        Unlike plan resolution this reads strictly: a failed read propagates.
        """
        subscription = await self.subscriptions.get(tenant_id)
        if not subscription:
            raise SubscriptionNotFound()

        status = subscription.get("status")
        if not subscription_grants_plan(status):
            raise SubscriptionInactive(status)

        end_date = subscription.get("end_date")
        now = now or datetime.now(timezone.utc)
        if end_date and end_date < now:
            raise SubscriptionExpired(end_date.isoformat())
        return subscription

    # =========================================================================
    # Summary
    # =========================================================================

    async def get_entitlements(self, tenant_id: str) -> Dict[str, Any]:
        """Plan, limits, modules and live usage for client-side rendering."""
        resolution = await self.resolve_plan_result(tenant_id)
        definition = self.catalog.get(resolution.plan)
        try:
            usage = await self.usage.snapshot(tenant_id)
        except Exception as e:
            logger.error("Usage snapshot failed: tenant_id=%s error=%s", tenant_id, e)
            usage = None
        return {
            "plan": resolution.plan.value,
            "plan_name": definition.name,
            "subscription_status": resolution.status,
            "degraded": resolution.degraded,
            "limits": definition.limits.to_dict(),
            "modules": definition.modules.to_dict(),
            "usage": usage,
        }
