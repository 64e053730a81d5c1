"""MercadoPago adapter - customers and recurring preapprovals (BRL).

Checkout is a ``preapproval`` created in ``pending`` state; the payer
authorizes it on MercadoPago's page (``init_point``). MercadoPago has no
scheduled cancellation, so cancel-at-period-end is tracked locally and
finalized by ``finalize_due_cancellations``.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
import logging
import os

import mercadopago
from mercadopago.config import RequestOptions

from database import database
from models import BillingProvider, PlanId, SubscriptionStatus
from services.billing_providers.base import (
    PROVIDER_TIMEOUT_SECONDS,
    BillingCustomer,
    BillingProviderAdapter,
    CancellationResult,
    CheckoutHandle,
)
from services.plan_catalog import PAID_PLANS, PLAN_DISPLAY
from services.subscription_service import SubscriptionService, subscription_service
from utils.errors import NoActiveSubscription, PlanNotAvailable, UpstreamProviderError

logger = logging.getLogger(__name__)

MERCADOPAGO_STATUS_MAP = {
    "authorized": SubscriptionStatus.ACTIVE,
    "paused": SubscriptionStatus.CANCELED,
    "cancelled": SubscriptionStatus.CANCELED,
    "canceled": SubscriptionStatus.CANCELED,
    "pending": SubscriptionStatus.INCOMPLETE,
}

CURRENCY = "BRL"

# The finalizer runs once a day; renewals due before the next run are canceled now
FINALIZE_LOOKAHEAD = timedelta(days=1)


@dataclass(frozen=True)
class MercadoPagoSettings:
    access_token: Optional[str] = None
    webhook_secret: Optional[str] = None


def load_mercadopago_settings() -> MercadoPagoSettings:
    return MercadoPagoSettings(
        access_token=(os.getenv("MERCADOPAGO_ACCESS_TOKEN") or "").strip() or None,
        webhook_secret=(os.getenv("MERCADOPAGO_WEBHOOK_SECRET") or "").strip() or None,
    )


def split_name(full_name: str):
    parts = (full_name or "").strip().split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


class MercadoPagoAdapter(BillingProviderAdapter):
    provider = BillingProvider.MERCADOPAGO

    def __init__(
        self,
        settings: MercadoPagoSettings,
        subscriptions: SubscriptionService = subscription_service,
        sdk: Optional[mercadopago.SDK] = None,
    ):
        super().__init__(subscriptions)
        self.settings = settings
        self._sdk = sdk

    def is_configured(self) -> bool:
        return bool(self.settings.access_token)

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.settings.webhook_secret

    def is_plan_available(self, plan: PlanId) -> bool:
        return plan in PAID_PLANS

    @staticmethod
    def map_status(provider_status: Any) -> SubscriptionStatus:
        if not isinstance(provider_status, str):
            return SubscriptionStatus.INCOMPLETE
        return MERCADOPAGO_STATUS_MAP.get(provider_status.strip().lower(), SubscriptionStatus.INCOMPLETE)

    # =========================================================================
    # SDK plumbing
    # =========================================================================

    def _client(self) -> mercadopago.SDK:
        self._require_configured()
        if self._sdk is None:
            self._sdk = mercadopago.SDK(
                self.settings.access_token,
                request_options=RequestOptions(
                    connection_timeout=PROVIDER_TIMEOUT_SECONDS,
                    max_retries=0,
                ),
            )
        return self._sdk

    def _unwrap(self, operation: str, result: Dict[str, Any]) -> Dict[str, Any]:
        """Return the response body of an SDK call, raising on non-2xx."""
        status = result.get("status")
        body = result.get("response") or {}
        if not isinstance(status, int) or not 200 <= status < 300:
            logger.error("MercadoPago %s failed status=%s response=%s", operation, status, body)
            raise UpstreamProviderError(self.provider.value)
        return body

    def _call(self, operation: str, fn, *args, **kwargs) -> Dict[str, Any]:
        try:
            result = fn(*args, **kwargs)
        except UpstreamProviderError:
            raise
        except Exception as e:
            logger.error("MercadoPago %s raised: %s", operation, e)
            raise UpstreamProviderError(self.provider.value) from e
        return self._unwrap(operation, result)

    def fetch_preapproval(self, preapproval_id: str) -> Dict[str, Any]:
        sdk = self._client()
        return self._call("preapproval.get", sdk.preapproval().get, preapproval_id)

    def _search_preapprovals(self, tenant_id: str) -> List[Dict[str, Any]]:
        sdk = self._client()
        body = self._call(
            "preapproval.search",
            sdk.preapproval().search,
            filters={"external_reference": tenant_id},
        )
        return body.get("results") or []

    # =========================================================================
    # Customers
    # =========================================================================

    async def ensure_customer(self, customer: BillingCustomer) -> str:
        sdk = self._client()
        subscription = await self._current_subscription(customer.tenant_id)
        existing_id = (subscription or {}).get("mercadopago_customer_id")

        if existing_id:
            try:
                result = sdk.customer().get(existing_id)
            except Exception as e:
                logger.error("MercadoPago customer lookup raised: %s", e)
                raise UpstreamProviderError(self.provider.value) from e
            if result.get("status") == 200:
                return existing_id
            logger.warning("MercadoPago customer %s not retrievable (status=%s); re-resolving", existing_id, result.get("status"))

        # MercadoPago rejects duplicate emails, so reuse a customer with the same email
        found = self._call("customer.search", sdk.customer().search, filters={"email": customer.email})
        results = found.get("results") or []
        if results:
            customer_id = str(results[0]["id"])
        else:
            first_name, last_name = split_name(customer.name)
            created = self._call("customer.create", sdk.customer().create, {
                "email": customer.email,
                "first_name": first_name,
                "last_name": last_name,
                "description": f"Clinify tenant {customer.tenant_id}",
            })
            customer_id = str(created["id"])
            logger.info("MercadoPago customer created tenant_id=%s customer_id=%s", customer.tenant_id, customer_id)

        await self.subscriptions.set_customer_id(customer.tenant_id, self.provider, customer_id)
        return customer_id

    # =========================================================================
    # Checkout
    # =========================================================================

    async def start_checkout(
        self,
        customer: BillingCustomer,
        plan: PlanId,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutHandle:
        sdk = self._client()
        if not self.is_plan_available(plan):
            raise PlanNotAvailable(plan.value, self.provider.value)

        await self.ensure_customer(customer)
        display = PLAN_DISPLAY[plan]
        start = datetime.now(timezone.utc) + timedelta(days=1)
        preapproval = self._call("preapproval.create", sdk.preapproval().create, {
            "reason": f"Assinatura Clinify - Plano {display['name']}",
            "external_reference": customer.tenant_id,
            "payer_email": customer.email,
            "back_url": success_url,
            "auto_recurring": {
                "frequency": 1,
                "frequency_type": "months",
                "transaction_amount": float(display["monthly_price"]),
                "currency_id": CURRENCY,
                "start_date": start.isoformat(),
            },
            "status": "pending",
        })

        checkout_id = str(preapproval["id"])
        await self._record_checkout(customer, plan, checkout_id)
        return CheckoutHandle(
            provider=self.provider,
            checkout_id=checkout_id,
            session_url=preapproval.get("init_point") or preapproval.get("sandbox_init_point") or "",
        )

    # =========================================================================
    # Cancellation
    # =========================================================================

    def _active_preapproval_id(self, tenant_id: str, subscription: Optional[Dict[str, Any]]) -> Optional[str]:
        stored = (subscription or {}).get("mercadopago_preapproval_id")
        if stored:
            remote = self.fetch_preapproval(stored)
            if self.map_status(remote.get("status")) == SubscriptionStatus.ACTIVE:
                return stored
        for candidate in self._search_preapprovals(tenant_id):
            if self.map_status(candidate.get("status")) == SubscriptionStatus.ACTIVE:
                return str(candidate["id"])
        return None

    async def cancel(self, tenant_id: str, at_period_end: bool) -> CancellationResult:
        sdk = self._client()
        subscription = await self._current_subscription(tenant_id)
        preapproval_id = self._active_preapproval_id(tenant_id, subscription)
        if not preapproval_id:
            raise NoActiveSubscription()

        await self._record_cancel_request(tenant_id, at_period_end)
        if at_period_end:
            await self.subscriptions.mark_cancel_scheduled(tenant_id)
            status = SubscriptionStatus((subscription or {}).get("status", SubscriptionStatus.ACTIVE.value))
            return CancellationResult(self.provider, status, cancel_at_period_end=True)

        self._call("preapproval.update", sdk.preapproval().update, preapproval_id, {"status": "cancelled"})
        await self.subscriptions.mark_canceled(tenant_id)
        return CancellationResult(self.provider, SubscriptionStatus.CANCELED, cancel_at_period_end=False)

    async def resume(self, tenant_id: str) -> None:
        self._require_configured()
        subscription = await self._current_subscription(tenant_id) or {}
        if (
            not subscription.get("cancel_at_period_end")
            or subscription.get("status") == SubscriptionStatus.CANCELED.value
        ):
            raise NoActiveSubscription("No scheduled cancellation to undo")
        await self.subscriptions.mark_cancel_scheduled(tenant_id, scheduled=False)

    async def finalize_due_cancellations(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Cancel scheduled preapprovals whose next renewal falls before the next daily run.

        ``end_date`` is the preapproval's next payment date, so waiting for it to
        pass would let MercadoPago charge one more period.
        """
        if not self.is_configured():
            return {"canceled_count": 0, "error_count": 0}
        now = now or datetime.now(timezone.utc)
        db = database.get_db()
        due = await db.subscriptions.find(
            {
                "provider": self.provider.value,
                "cancel_at_period_end": True,
                "status": {"$ne": SubscriptionStatus.CANCELED.value},
                "end_date": {"$lte": now + FINALIZE_LOOKAHEAD},
            },
            {"_id": 0, "tenant_id": 1},
        ).to_list(length=None)

        canceled_count = 0
        error_count = 0
        for record in due:
            tenant_id = record["tenant_id"]
            try:
                await self.cancel(tenant_id, at_period_end=False)
                canceled_count += 1
            except Exception as e:
                error_count += 1
                logger.error("Scheduled MercadoPago cancellation failed tenant_id=%s: %s", tenant_id, e)
        return {"canceled_count": canceled_count, "error_count": error_count}
