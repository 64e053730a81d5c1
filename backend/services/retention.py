"""Expired-data retention sweep.

Tenants whose paid subscription lapsed (canceled or past_due) more than
GRACE_PERIOD_DAYS ago are purged: the subscription row first, then the
tenant with all of its data. Runs once a day; overlapping runs are not
guarded, and a second delete of the same row fails and is counted.
"""
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional
import logging

from database import database
from models import AuditAction, SubscriptionStatus, UserRole
from services.plan_catalog import PAID_PLANS
from services.subscription_service import SubscriptionService, subscription_service
from services.tenant_service import TenantService, tenant_service
from utils.audit import create_audit_log
from utils.errors import NotFound

logger = logging.getLogger(__name__)

GRACE_PERIOD_DAYS = 30

LAPSED_STATUSES = (SubscriptionStatus.CANCELED.value, SubscriptionStatus.PAST_DUE.value)


class ExpiredDataRetentionJob:

    def __init__(
        self,
        subscriptions: SubscriptionService = subscription_service,
        tenants: TenantService = tenant_service,
        grace_period_days: int = GRACE_PERIOD_DAYS,
    ):
        self.subscriptions = subscriptions
        self.tenants = tenants
        self.grace_period = timedelta(days=grace_period_days)

    def candidate_query(self, now: datetime) -> Dict:
        cutoff = now - self.grace_period
        return {
            "plan": {"$in": sorted(plan.value for plan in PAID_PLANS)},
            "status": {"$in": list(LAPSED_STATUSES)},
            "end_date": {"$lte": cutoff},
        }

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Purge lapsed tenants. Returns {"deleted_count", "error_count"}."""
        now = now or datetime.now(timezone.utc)
        db = database.get_db()
        candidates = await db.subscriptions.find(
            self.candidate_query(now),
            {"_id": 0, "tenant_id": 1, "plan": 1, "status": 1, "end_date": 1},
        ).to_list(length=None)

        logger.info("Retention sweep found %d lapsed subscription(s)", len(candidates))

        deleted_count = 0
        error_count = 0
        for candidate in candidates:
            tenant_id = candidate["tenant_id"]
            try:
                if await self.subscriptions.delete(tenant_id) == 0:
                    raise NotFound(f"Subscription for tenant {tenant_id} already deleted")
                removed = await self.tenants.delete_tenant_cascade(tenant_id)
                deleted_count += 1
                await create_audit_log(
                    action=AuditAction.TENANT_PURGED,
                    actor_role=UserRole.ROLE_SYSTEM,
                    tenant_id=tenant_id,
                    resource_type="tenant",
                    resource_id=tenant_id,
                    metadata={
                        "plan": candidate.get("plan"),
                        "status": candidate.get("status"),
                        "removed": removed,
                    },
                )
            except Exception as e:
                error_count += 1
                logger.error("Retention purge failed tenant_id=%s: %s", tenant_id, e)

        logger.info(
            "Retention sweep finished: deleted=%d errors=%d", deleted_count, error_count
        )
        return {"deleted_count": deleted_count, "error_count": error_count}
