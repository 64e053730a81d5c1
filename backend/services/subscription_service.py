"""Subscription Record - persistence and status transitions for the per-tenant subscription.

One document per tenant in ``subscriptions`` (unique on tenant_id). Every
write is an ``update_one`` keyed by tenant_id; concurrent webhook deliveries
are last-writer-wins.

Status state machine:
    incomplete -> trialing | active | canceled
    trialing   -> active | past_due | canceled
    active    <-> past_due
    active | past_due -> canceled
    canceled   -> (terminal) unless driven by a fresh provider object,
                  then incomplete | trialing | active

The stored provider object only changes when the record is canceled or the
new object comes from an open checkout of the tenant; events for any other
object are ignored.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
import logging

from database import database
from models import (
    AuditAction,
    BillingProvider,
    PlanId,
    Subscription,
    SubscriptionStatus,
    UserRole,
)
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

TRIAL_PERIOD_DAYS = 14

ALLOWED_TRANSITIONS = {
    SubscriptionStatus.INCOMPLETE: {
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.TRIALING: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.ACTIVE: {
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.PAST_DUE: {
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.CANCELED,
    },
    SubscriptionStatus.CANCELED: set(),
}

# Only reachable from canceled through a brand-new provider subscription
RESTART_STATUSES = {
    SubscriptionStatus.INCOMPLETE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
}

PROVIDER_CUSTOMER_FIELD = {
    BillingProvider.STRIPE: "stripe_customer_id",
    BillingProvider.MERCADOPAGO: "mercadopago_customer_id",
}

PROVIDER_OBJECT_FIELD = {
    BillingProvider.STRIPE: "stripe_subscription_id",
    BillingProvider.MERCADOPAGO: "mercadopago_preapproval_id",
}


def is_transition_allowed(
    current: SubscriptionStatus,
    target: SubscriptionStatus,
    fresh_object: bool = False,
) -> bool:
    """Return True if ``current -> target`` is a legal status change."""
    if current == target:
        return True
    if current == SubscriptionStatus.CANCELED:
        return fresh_object and target in RESTART_STATUSES
    return target in ALLOWED_TRANSITIONS[current]


def is_stale_provider_object(
    current: Optional[Dict[str, Any]],
    provider: BillingProvider,
    object_id: Optional[str],
    new_checkout: bool = False,
) -> bool:
    """True when an event concerns a provider object other than the one the record tracks.

    The record only moves onto a different object when it is canceled or when
    the object comes from an open checkout of the same tenant. Events for any
    other object are stale, whatever status they carry.
    """
    if not current or not object_id or new_checkout:
        return False
    if current.get("status") == SubscriptionStatus.CANCELED.value:
        return False
    if current.get("provider") and current["provider"] != provider.value:
        return True
    stored = current.get(PROVIDER_OBJECT_FIELD[provider])
    return bool(stored) and stored != object_id


def serialize_subscription(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """API-safe representation of a stored subscription."""
    if not doc:
        return None
    return Subscription(**doc).model_dump(mode="json")


class SubscriptionService:
    """Reads and writes the subscription row of a single tenant."""

    async def get(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        db = database.get_db()
        return await db.subscriptions.find_one({"tenant_id": tenant_id}, {"_id": 0})

    async def find_by_provider_reference(
        self,
        provider: BillingProvider,
        customer_id: Optional[str] = None,
        object_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Locate a subscription by provider object id, falling back to customer id."""
        db = database.get_db()
        if object_id:
            doc = await db.subscriptions.find_one(
                {PROVIDER_OBJECT_FIELD[provider]: object_id}, {"_id": 0}
            )
            if doc:
                return doc
        if customer_id:
            return await db.subscriptions.find_one(
                {PROVIDER_CUSTOMER_FIELD[provider]: customer_id}, {"_id": 0}
            )
        return None

    async def create_trial(self, tenant_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Create the signup subscription: free plan, trialing for 14 days.

        A tenant that already has a subscription keeps it unchanged.
        """
        now = now or datetime.now(timezone.utc)
        record = Subscription(
            tenant_id=tenant_id,
            plan=PlanId.FREE,
            status=SubscriptionStatus.TRIALING,
            start_date=now,
            end_date=now + timedelta(days=TRIAL_PERIOD_DAYS),
            cancel_at_period_end=False,
            created_at=now,
            updated_at=now,
        )
        doc = record.model_dump()
        db = database.get_db()
        await db.subscriptions.update_one(
            {"tenant_id": tenant_id},
            {"$setOnInsert": doc},
            upsert=True,
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CREATED,
            actor_role=UserRole.ROLE_SYSTEM,
            tenant_id=tenant_id,
            resource_type="subscription",
            resource_id=tenant_id,
            metadata={"plan": PlanId.FREE.value, "status": SubscriptionStatus.TRIALING.value},
        )
        return doc

    async def set_customer_id(
        self,
        tenant_id: str,
        provider: BillingProvider,
        customer_id: str,
    ) -> None:
        """Persist a provider customer id, creating a free/incomplete row if none exists."""
        now = datetime.now(timezone.utc)
        field = PROVIDER_CUSTOMER_FIELD[provider]
        on_insert = Subscription(tenant_id=tenant_id, created_at=now).model_dump(
            exclude={field, "updated_at"}
        )
        db = database.get_db()
        await db.subscriptions.update_one(
            {"tenant_id": tenant_id},
            {
                "$set": {field: customer_id, "updated_at": now},
                "$setOnInsert": on_insert,
            },
            upsert=True,
        )

    async def apply_provider_update(
        self,
        tenant_id: str,
        provider: BillingProvider,
        status: SubscriptionStatus,
        plan: Optional[PlanId] = None,
        provider_object_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        cancel_at_period_end: Optional[bool] = None,
        canceled_at: Optional[datetime] = None,
        new_checkout: bool = False,
        source: str = "webhook",
    ) -> Tuple[bool, str]:
        """Apply a provider-driven change to the tenant's subscription.

        Returns (applied, reason). Changes for a superseded provider object or
        that break the status state machine are logged and skipped.
        ``new_checkout`` marks an object coming from an open checkout of this
        tenant, which may replace the stored one.
        """
        db = database.get_db()
        current = await self.get(tenant_id)
        now = datetime.now(timezone.utc)

        if is_stale_provider_object(current, provider, provider_object_id, new_checkout=new_checkout):
            logger.info(
                "Ignoring update for superseded object tenant_id=%s provider=%s object_id=%s",
                tenant_id, provider.value, provider_object_id,
            )
            return False, "Superseded provider object"

        if current:
            current_status = SubscriptionStatus(current["status"])
            stored_object_id = current.get(PROVIDER_OBJECT_FIELD[provider])
            fresh_object = bool(provider_object_id) and provider_object_id != stored_object_id
            if not is_transition_allowed(current_status, status, fresh_object=fresh_object):
                logger.warning(
                    "Ignoring illegal subscription transition tenant_id=%s provider=%s %s -> %s object_id=%s",
                    tenant_id, provider.value, current_status.value, status.value, provider_object_id,
                )
                return False, f"Transition {current_status.value} -> {status.value} not allowed"
        else:
            current_status = None

        updates: Dict[str, Any] = {
            "status": status.value,
            "provider": provider.value,
            "updated_at": now,
        }
        if plan is not None:
            updates["plan"] = plan.value
        if provider_object_id:
            updates[PROVIDER_OBJECT_FIELD[provider]] = provider_object_id
        if customer_id:
            updates[PROVIDER_CUSTOMER_FIELD[provider]] = customer_id
        if start_date is not None:
            updates["start_date"] = start_date
        if end_date is not None:
            updates["end_date"] = end_date
        if cancel_at_period_end is not None:
            updates["cancel_at_period_end"] = cancel_at_period_end
        if status == SubscriptionStatus.CANCELED:
            updates["canceled_at"] = canceled_at or now
            updates["cancel_at_period_end"] = False
        elif current_status == SubscriptionStatus.CANCELED:
            # Restarted via a new provider subscription
            updates["canceled_at"] = None

        await db.subscriptions.update_one(
            {"tenant_id": tenant_id},
            {"$set": updates, "$setOnInsert": {"tenant_id": tenant_id, "created_at": now}},
            upsert=True,
        )

        if current_status != status or (plan is not None and current and current.get("plan") != plan.value):
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_STATUS_CHANGED,
                actor_role=UserRole.ROLE_SYSTEM,
                tenant_id=tenant_id,
                resource_type="subscription",
                resource_id=tenant_id,
                before_state={
                    "status": current_status.value if current_status else None,
                    "plan": current.get("plan") if current else None,
                },
                after_state={
                    "status": status.value,
                    "plan": plan.value if plan else (current.get("plan") if current else None),
                },
                metadata={"provider": provider.value, "source": source},
            )
        logger.info(
            "Subscription updated tenant_id=%s provider=%s status=%s plan=%s",
            tenant_id, provider.value, status.value, plan.value if plan else "(unchanged)",
        )
        return True, "Applied"

    async def mark_cancel_scheduled(self, tenant_id: str, scheduled: bool = True) -> None:
        db = database.get_db()
        await db.subscriptions.update_one(
            {"tenant_id": tenant_id},
            {"$set": {
                "cancel_at_period_end": scheduled,
                "updated_at": datetime.now(timezone.utc),
            }},
        )

    async def mark_canceled(self, tenant_id: str, now: Optional[datetime] = None) -> None:
        now = now or datetime.now(timezone.utc)
        db = database.get_db()
        await db.subscriptions.update_one(
            {"tenant_id": tenant_id},
            {"$set": {
                "status": SubscriptionStatus.CANCELED.value,
                "canceled_at": now,
                "cancel_at_period_end": False,
                "updated_at": now,
            }},
        )

    async def delete(self, tenant_id: str) -> int:
        db = database.get_db()
        result = await db.subscriptions.delete_one({"tenant_id": tenant_id})
        return result.deleted_count


subscription_service = SubscriptionService()
