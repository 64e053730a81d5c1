"""Billing Routes - Checkout, cancellation and entitlement reads.

Endpoints:
- POST /api/billing/checkout - Start a provider checkout for a paid plan
- POST /api/billing/cancel - Cancel now or at the end of the period
- POST /api/billing/reactivate - Undo a scheduled cancellation
- GET /api/billing/subscription - Current subscription record
- GET /api/billing/entitlements - Effective plan, limits, modules and usage
- GET /api/billing/plans - Plan catalog with per-provider availability
- GET /api/billing/providers - Which billing providers are configured

Subscription status itself only changes through provider webhooks
(see routes/webhooks.py); checkout never activates a plan.
"""
from fastapi import APIRouter, Depends, Request
from typing import Optional
import logging
import os

from middleware import get_entitlement_service, get_provider_adapters, tenant_route_guard
from models import (
    AuditAction,
    BillingProvider,
    CancelRequest,
    CheckoutRequest,
    ProviderStatusResponse,
    SubscriptionStatus,
)
from services.subscription_service import PROVIDER_CUSTOMER_FIELD, serialize_subscription, subscription_service
from services.tenant_service import tenant_service
from utils.audit import create_audit_log
from utils.errors import NoActiveSubscription, ProviderNotConfigured

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


def _frontend_url() -> str:
    return os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")


def _adapter_for(request: Request, provider: BillingProvider):
    adapter = get_provider_adapters(request).get(provider)
    if adapter is None:
        raise ProviderNotConfigured(provider.value)
    return adapter


def _subscription_provider(subscription: Optional[dict]) -> Optional[BillingProvider]:
    if not subscription:
        return None
    if subscription.get("provider"):
        return BillingProvider(subscription["provider"])
    for provider, field in PROVIDER_CUSTOMER_FIELD.items():
        if subscription.get(field):
            return provider
    return None


@router.post("/checkout")
async def create_checkout(request: Request, body: CheckoutRequest, user: dict = Depends(tenant_route_guard)):
    """
    Start a checkout session with the chosen provider.

    The subscription stays as it is until the provider confirms payment
    through its webhook.
    """
    tenant_id = user["tenant_id"]
    adapter = _adapter_for(request, body.provider)
    customer = await tenant_service.get_billing_customer(tenant_id)

    base_url = _frontend_url()
    handle = await adapter.start_checkout(
        customer,
        body.plan,
        success_url=body.success_url or f"{base_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=body.cancel_url or f"{base_url}/billing/cancel",
    )
    return handle.to_dict()


@router.post("/cancel")
async def cancel_subscription(
    request: Request,
    body: Optional[CancelRequest] = None,
    user: dict = Depends(tenant_route_guard),
):
    """Cancel the tenant's subscription (at period end unless told otherwise)."""
    body = body or CancelRequest()
    tenant_id = user["tenant_id"]

    provider = body.provider
    if provider is None:
        subscription = await subscription_service.get(tenant_id)
        provider = _subscription_provider(subscription) or BillingProvider.STRIPE

    adapter = _adapter_for(request, provider)
    result = await adapter.cancel(tenant_id, at_period_end=body.at_period_end)
    logger.info(
        "Subscription cancel requested tenant_id=%s provider=%s at_period_end=%s",
        tenant_id, provider.value, body.at_period_end,
    )
    return result.to_dict()


@router.post("/reactivate")
async def reactivate_subscription(request: Request, user: dict = Depends(tenant_route_guard)):
    """Undo a cancellation scheduled for the end of the period."""
    tenant_id = user["tenant_id"]
    subscription = await subscription_service.get(tenant_id)
    provider = _subscription_provider(subscription)
    if provider is None:
        raise NoActiveSubscription("No scheduled cancellation to undo")

    adapter = _adapter_for(request, provider)
    await adapter.resume(tenant_id)

    await create_audit_log(
        action=AuditAction.SUBSCRIPTION_REACTIVATED,
        actor_role=user.get("role"),
        actor_id=user.get("user_id"),
        tenant_id=tenant_id,
        resource_type="subscription",
        resource_id=tenant_id,
        metadata={"provider": provider.value},
    )
    return {"success": True}


@router.get("/subscription")
async def get_subscription(request: Request, user: dict = Depends(tenant_route_guard)):
    """Current subscription (or null) plus provider integration flags."""
    subscription = await subscription_service.get(user["tenant_id"])
    adapters = get_provider_adapters(request)
    serialized = serialize_subscription(subscription)

    return {
        "subscription": serialized,
        "entitled": bool(serialized) and serialized["status"] in (
            SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value
        ),
        "integrations": {
            provider.value: {
                "configured": adapter.is_configured(),
                "linked": bool((subscription or {}).get(PROVIDER_CUSTOMER_FIELD[provider])),
            }
            for provider, adapter in adapters.items()
        },
    }


@router.get("/entitlements")
async def get_entitlements(request: Request, user: dict = Depends(tenant_route_guard)):
    entitlements = get_entitlement_service(request)
    return await entitlements.get_entitlements(user["tenant_id"])


@router.get("/plans")
async def list_plans(request: Request):
    """Plan catalog with prices. Public; used by the pricing page."""
    catalog = request.app.state.plan_catalog
    adapters = get_provider_adapters(request)

    plans = []
    for definition in catalog.all_plans():
        entry = definition.to_dict()
        entry["providers"] = {
            provider.value: adapter.is_configured() and adapter.is_plan_available(definition.plan)
            for provider, adapter in adapters.items()
        }
        plans.append(entry)
    return {"plans": plans}


@router.get("/providers")
async def list_providers(request: Request):
    catalog = request.app.state.plan_catalog
    providers = []
    for provider, adapter in get_provider_adapters(request).items():
        configured = adapter.is_configured()
        providers.append(ProviderStatusResponse(
            provider=provider.value,
            configured=configured,
            plans_available={
                definition.plan.value: configured and adapter.is_plan_available(definition.plan)
                for definition in catalog.all_plans()
            },
        ).model_dump())
    return {"providers": providers}
