"""Builds the provider adapters once at startup from environment settings."""
from types import MappingProxyType
from typing import Mapping, Optional
import logging

from models import BillingProvider, PlanId
from services.billing_providers.base import BillingProviderAdapter
from services.billing_providers.mercadopago_adapter import (
    MercadoPagoAdapter,
    MercadoPagoSettings,
    load_mercadopago_settings,
)
from services.billing_providers.stripe_adapter import (
    StripeAdapter,
    StripeSettings,
    load_stripe_settings,
)

logger = logging.getLogger(__name__)


def build_provider_adapters(
    stripe_settings: Optional[StripeSettings] = None,
    mercadopago_settings: Optional[MercadoPagoSettings] = None,
) -> Mapping[BillingProvider, BillingProviderAdapter]:
    """One adapter per provider. Unconfigured providers are present but disabled."""
    adapters = {
        BillingProvider.STRIPE: StripeAdapter(stripe_settings or load_stripe_settings()),
        BillingProvider.MERCADOPAGO: MercadoPagoAdapter(mercadopago_settings or load_mercadopago_settings()),
    }
    return MappingProxyType(adapters)


def log_provider_configuration(adapters: Mapping[BillingProvider, BillingProviderAdapter]) -> None:
    """Log which providers and plans are usable. Never logs credentials."""
    for provider, adapter in adapters.items():
        if not adapter.is_configured():
            logger.warning("Billing provider %s is not configured; checkout and cancel are disabled", provider.value)
            continue
        missing = [
            plan.value for plan in PlanId
            if plan != PlanId.FREE and not adapter.is_plan_available(plan)
        ]
        logger.info(
            "Billing provider %s configured; plans without provider mapping: %s",
            provider.value, ", ".join(missing) or "(none)",
        )
