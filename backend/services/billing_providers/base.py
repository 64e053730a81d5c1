"""Provider adapter interface.

Each billing provider (Stripe, MercadoPago) is wrapped behind
``BillingProviderAdapter``. Provider SDK objects never leave the adapter
modules; callers only see the internal vocabulary (PlanId,
SubscriptionStatus, CheckoutHandle, CancellationResult).
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from database import database
from models import AuditAction, BillingProvider, PlanId, SubscriptionStatus
from services.subscription_service import SubscriptionService, subscription_service
from utils.audit import create_audit_log
from utils.errors import ProviderNotConfigured

logger = logging.getLogger(__name__)

# Seconds before a provider call is abandoned; failures are not retried
PROVIDER_TIMEOUT_SECONDS = 5


@dataclass(frozen=True)
class BillingCustomer:
    """The tenant fields a provider needs to open a customer record."""
    tenant_id: str
    email: str
    name: str


@dataclass(frozen=True)
class CheckoutHandle:
    provider: BillingProvider
    checkout_id: str
    session_url: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionUrl": self.session_url,
            "checkoutId": self.checkout_id,
            "provider": self.provider.value,
        }


@dataclass(frozen=True)
class CancellationResult:
    provider: BillingProvider
    status: SubscriptionStatus
    cancel_at_period_end: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "provider": self.provider.value,
            "status": self.status.value,
            "cancel_at_period_end": self.cancel_at_period_end,
        }


class BillingProviderAdapter(ABC):
    """Narrow interface over a billing provider SDK."""

    provider: BillingProvider

    def __init__(self, subscriptions: SubscriptionService = subscription_service):
        self.subscriptions = subscriptions

    @abstractmethod
    def is_configured(self) -> bool:
        ...

    @abstractmethod
    def is_plan_available(self, plan: PlanId) -> bool:
        ...

    @abstractmethod
    async def ensure_customer(self, customer: BillingCustomer) -> str:
        """Create-or-fetch the provider customer and persist its id."""

    @abstractmethod
    async def start_checkout(
        self,
        customer: BillingCustomer,
        plan: PlanId,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutHandle:
        """Open a provider checkout. Does not change the subscription status."""

    @abstractmethod
    async def cancel(self, tenant_id: str, at_period_end: bool) -> CancellationResult:
        ...

    @abstractmethod
    async def resume(self, tenant_id: str) -> None:
        """Undo a scheduled (at period end) cancellation."""

    @staticmethod
    @abstractmethod
    def map_status(provider_status: Any) -> SubscriptionStatus:
        """Total, pure mapping to the internal status vocabulary."""

    # =========================================================================
    # Shared helpers
    # =========================================================================

    def _require_configured(self) -> None:
        if not self.is_configured():
            raise ProviderNotConfigured(self.provider.value)

    async def _current_subscription(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        return await self.subscriptions.get(tenant_id)

    async def _record_checkout(
        self,
        customer: BillingCustomer,
        plan: PlanId,
        checkout_id: str,
    ) -> None:
        """Keep a pending checkout row; the webhook is what confirms it."""
        db = database.get_db()
        await db.checkout_sessions.insert_one({
            "checkout_id": checkout_id,
            "tenant_id": customer.tenant_id,
            "provider": self.provider.value,
            "plan": plan.value,
            "status": "OPEN",
            "created_at": datetime.now(timezone.utc),
        })
        await create_audit_log(
            action=AuditAction.CHECKOUT_STARTED,
            tenant_id=customer.tenant_id,
            resource_type="checkout_session",
            resource_id=checkout_id,
            metadata={"provider": self.provider.value, "plan": plan.value},
        )
        logger.info(
            "Checkout started tenant_id=%s provider=%s plan=%s checkout_id=%s",
            customer.tenant_id, self.provider.value, plan.value, checkout_id,
        )

    async def _record_cancel_request(self, tenant_id: str, at_period_end: bool) -> None:
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCEL_REQUESTED,
            tenant_id=tenant_id,
            resource_type="subscription",
            resource_id=tenant_id,
            metadata={"provider": self.provider.value, "at_period_end": at_period_end},
        )
