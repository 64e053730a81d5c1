"""Stripe adapter - customers, subscription checkout and cancellation.

Price ids come from STRIPE_PRICE_ID_{BASIC,PROFESSIONAL,ENTERPRISE}. A plan
without a price id is not offered through Stripe. Without STRIPE_SECRET_KEY
the adapter is disabled but ``map_status`` keeps working.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple
import json
import logging
import os

import stripe

from models import BillingProvider, PlanId, SubscriptionStatus
from services.billing_providers.base import (
    PROVIDER_TIMEOUT_SECONDS,
    BillingCustomer,
    BillingProviderAdapter,
    CancellationResult,
    CheckoutHandle,
)
from services.plan_catalog import PAID_PLANS
from services.subscription_service import SubscriptionService, subscription_service
from utils.errors import NoActiveSubscription, PlanNotAvailable, UpstreamProviderError

logger = logging.getLogger(__name__)

stripe.default_http_client = stripe.RequestsClient(timeout=PROVIDER_TIMEOUT_SECONDS)
stripe.max_network_retries = 0

STRIPE_PRICE_ENV = {
    PlanId.BASIC: "STRIPE_PRICE_ID_BASIC",
    PlanId.PROFESSIONAL: "STRIPE_PRICE_ID_PROFESSIONAL",
    PlanId.ENTERPRISE: "STRIPE_PRICE_ID_ENTERPRISE",
}

STRIPE_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.PAST_DUE,
}

# Stripe subscriptions that can still be canceled
CANCELABLE_STATUSES = ("active", "trialing", "past_due")


def _env(name: str) -> Optional[str]:
    value = (os.getenv(name) or "").strip()
    return value or None


@dataclass(frozen=True)
class StripeSettings:
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None
    price_ids: Mapping[PlanId, str] = field(default_factory=dict)


def load_stripe_settings() -> StripeSettings:
    price_ids = {}
    for plan, env_name in STRIPE_PRICE_ENV.items():
        price_id = _env(env_name)
        if price_id:
            price_ids[plan] = price_id
    return StripeSettings(
        secret_key=_env("STRIPE_SECRET_KEY"),
        webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
        price_ids=MappingProxyType(price_ids),
    )


def _timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def extract_period(subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Current period (start, end) of a Stripe subscription payload.

    Newer API versions moved the period onto the subscription items.
    """
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return _timestamp(start), _timestamp(end)


def extract_price_id(subscription: Dict[str, Any]) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


class StripeAdapter(BillingProviderAdapter):
    provider = BillingProvider.STRIPE

    def __init__(
        self,
        settings: StripeSettings,
        subscriptions: SubscriptionService = subscription_service,
    ):
        super().__init__(subscriptions)
        self.settings = settings

    def is_configured(self) -> bool:
        return bool(self.settings.secret_key)

    @property
    def webhook_secret(self) -> Optional[str]:
        return self.settings.webhook_secret

    def price_id_for(self, plan: PlanId) -> Optional[str]:
        return self.settings.price_ids.get(plan)

    def plan_for_price(self, price_id: Optional[str]) -> Optional[PlanId]:
        for plan, configured in self.settings.price_ids.items():
            if configured == price_id:
                return plan
        return None

    def is_plan_available(self, plan: PlanId) -> bool:
        return plan in PAID_PLANS and bool(self.price_id_for(plan))

    @staticmethod
    def map_status(provider_status: Any) -> SubscriptionStatus:
        if not isinstance(provider_status, str):
            return SubscriptionStatus.INCOMPLETE
        return STRIPE_STATUS_MAP.get(provider_status, SubscriptionStatus.INCOMPLETE)

    # =========================================================================
    # Customers
    # =========================================================================

    async def ensure_customer(self, customer: BillingCustomer) -> str:
        self._require_configured()
        subscription = await self._current_subscription(customer.tenant_id)
        existing_id = (subscription or {}).get("stripe_customer_id")

        if existing_id:
            try:
                existing = stripe.Customer.retrieve(existing_id, api_key=self.settings.secret_key)
                if not getattr(existing, "deleted", False):
                    return existing_id
                logger.warning("Stripe customer %s was deleted; creating a new one", existing_id)
            except stripe.InvalidRequestError as e:
                if e.code != "resource_missing":
                    raise UpstreamProviderError(self.provider.value) from e
                logger.warning("Stripe customer %s not found; creating a new one", existing_id)
            except stripe.StripeError as e:
                logger.error("Stripe customer lookup failed tenant_id=%s: %s", customer.tenant_id, e)
                raise UpstreamProviderError(self.provider.value) from e

        try:
            created = stripe.Customer.create(
                api_key=self.settings.secret_key,
                email=customer.email,
                name=customer.name,
                metadata={"tenant_id": customer.tenant_id},
            )
        except stripe.StripeError as e:
            logger.error("Stripe customer creation failed tenant_id=%s: %s", customer.tenant_id, e)
            raise UpstreamProviderError(self.provider.value) from e

        await self.subscriptions.set_customer_id(customer.tenant_id, self.provider, created.id)
        logger.info("Stripe customer created tenant_id=%s customer_id=%s", customer.tenant_id, created.id)
        return created.id

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
        self._require_configured()
        if not self.is_plan_available(plan):
            raise PlanNotAvailable(plan.value, self.provider.value)

        customer_id = await self.ensure_customer(customer)
        metadata = {"tenant_id": customer.tenant_id, "plan_id": plan.value}

        try:
            session = stripe.checkout.Session.create(
                api_key=self.settings.secret_key,
                customer=customer_id,
                mode="subscription",
                payment_method_types=["card"],
                line_items=[{"price": self.price_id_for(plan), "quantity": 1}],
                success_url=success_url,
                cancel_url=cancel_url,
                allow_promotion_codes=True,
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe.InvalidRequestError as e:
            logger.error("Stripe checkout rejected tenant_id=%s plan=%s: %s", customer.tenant_id, plan.value, e)
            if e.code == "resource_missing":
                raise UpstreamProviderError(
                    self.provider.value, f"Price not found for plan {plan.value}"
                ) from e
            raise UpstreamProviderError(self.provider.value) from e
        except stripe.StripeError as e:
            logger.error("Stripe checkout failed tenant_id=%s plan=%s: %s", customer.tenant_id, plan.value, e)
            raise UpstreamProviderError(self.provider.value) from e

        await self._record_checkout(customer, plan, session.id)
        return CheckoutHandle(provider=self.provider, checkout_id=session.id, session_url=session.url)

    # =========================================================================
    # Cancellation
    # =========================================================================

    def _find_cancelable_subscription(self, customer_id: str, preferred_id: Optional[str] = None):
        """The tracked subscription if it is still cancelable, else the first cancelable one."""
        try:
            listing = stripe.Subscription.list(
                api_key=self.settings.secret_key,
                customer=customer_id,
                status="all",
                limit=10,
            )
        except stripe.StripeError as e:
            logger.error("Stripe subscription lookup failed customer_id=%s: %s", customer_id, e)
            raise UpstreamProviderError(self.provider.value) from e
        cancelable = [candidate for candidate in listing.data if candidate.status in CANCELABLE_STATUSES]
        for candidate in cancelable:
            if candidate.id == preferred_id:
                return candidate
        return cancelable[0] if cancelable else None

    async def cancel(self, tenant_id: str, at_period_end: bool) -> CancellationResult:
        self._require_configured()
        subscription = await self._current_subscription(tenant_id)
        customer_id = (subscription or {}).get("stripe_customer_id")
        if not customer_id:
            raise NoActiveSubscription("No Stripe customer found for this account")

        stripe_subscription = self._find_cancelable_subscription(
            customer_id, preferred_id=subscription.get("stripe_subscription_id")
        )
        if stripe_subscription is None:
            raise NoActiveSubscription()

        try:
            if at_period_end:
                stripe.Subscription.modify(
                    stripe_subscription.id,
                    api_key=self.settings.secret_key,
                    cancel_at_period_end=True,
                )
            else:
                stripe.Subscription.cancel(stripe_subscription.id, api_key=self.settings.secret_key)
        except stripe.StripeError as e:
            logger.error("Stripe cancel failed tenant_id=%s subscription_id=%s: %s", tenant_id, stripe_subscription.id, e)
            raise UpstreamProviderError(self.provider.value) from e

        await self._record_cancel_request(tenant_id, at_period_end)
        if at_period_end:
            await self.subscriptions.mark_cancel_scheduled(tenant_id)
            status = SubscriptionStatus((subscription or {}).get("status", SubscriptionStatus.ACTIVE.value))
            return CancellationResult(self.provider, status, cancel_at_period_end=True)

        await self.subscriptions.mark_canceled(tenant_id)
        return CancellationResult(self.provider, SubscriptionStatus.CANCELED, cancel_at_period_end=False)

    async def resume(self, tenant_id: str) -> None:
        self._require_configured()
        subscription = await self._current_subscription(tenant_id) or {}
        stripe_subscription_id = subscription.get("stripe_subscription_id")
        if (
            not subscription.get("cancel_at_period_end")
            or subscription.get("status") == SubscriptionStatus.CANCELED.value
            or not stripe_subscription_id
        ):
            raise NoActiveSubscription("No scheduled cancellation to undo")

        try:
            stripe.Subscription.modify(
                stripe_subscription_id,
                api_key=self.settings.secret_key,
                cancel_at_period_end=False,
            )
        except stripe.StripeError as e:
            logger.error("Stripe resume failed tenant_id=%s: %s", tenant_id, e)
            raise UpstreamProviderError(self.provider.value) from e
        await self.subscriptions.mark_cancel_scheduled(tenant_id, scheduled=False)

    # =========================================================================
    # Webhook support
    # =========================================================================

    def verify_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Verify a webhook signature and return the event as plain JSON data.

        Raises ``stripe.SignatureVerificationError`` on a bad signature and
        ``ValueError`` on an unparseable payload.
        """
        stripe.Webhook.construct_event(payload, signature, self.settings.webhook_secret)
        return json.loads(payload)

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self._require_configured()
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.settings.secret_key)
        except stripe.StripeError as e:
            logger.error("Stripe subscription retrieve failed subscription_id=%s: %s", subscription_id, e)
            raise UpstreamProviderError(self.provider.value) from e
        return json.loads(str(subscription))
