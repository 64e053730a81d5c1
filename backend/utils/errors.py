"""Billing and entitlement error taxonomy.

Every error carries an HTTP status and a stable error code. The server
renders them as ``{"error": message, "code": error_code, **details}``.
"""
from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    error_code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.message, "code": self.error_code}
        body.update(self.details)
        return body


class ProviderNotConfigured(BillingError):
    """Provider credentials are absent; the adapter is disabled."""

    status_code = 503
    error_code = "PROVIDER_NOT_CONFIGURED"

    def __init__(self, provider: str):
        super().__init__(
            f"Billing provider '{provider}' is not configured",
            {"provider": provider},
        )


class PlanNotAvailable(BillingError):
    """Plan has no provider-side price/plan mapping."""

    status_code = 400
    error_code = "PLAN_NOT_AVAILABLE"

    def __init__(self, plan: str, provider: str):
        super().__init__(
            f"Plan '{plan}' is not available for {provider} checkout",
            {"plan": plan, "provider": provider},
        )


class NoActiveSubscription(BillingError):
    status_code = 400
    error_code = "NO_ACTIVE_SUBSCRIPTION"

    def __init__(self, message: str = "No active subscription found"):
        super().__init__(message)


class SubscriptionNotFound(BillingError):
    status_code = 403
    error_code = "SUBSCRIPTION_NOT_FOUND"

    def __init__(self, message: str = "Subscription not found"):
        super().__init__(message)


class SubscriptionInactive(BillingError):
    """Subscription exists but is neither active nor trialing."""

    status_code = 403
    error_code = "SUBSCRIPTION_INACTIVE"

    def __init__(self, status: str):
        super().__init__("Subscription is inactive or canceled", {"status": status})


class SubscriptionExpired(BillingError):
    status_code = 403
    error_code = "SUBSCRIPTION_EXPIRED"

    def __init__(self, end_date: str):
        super().__init__("Subscription has expired", {"end_date": end_date})


class ResourceQuotaExceeded(BillingError):
    """Creation blocked by the tenant's plan quota."""

    status_code = 403
    error_code = "RESOURCE_QUOTA_EXCEEDED"

    def __init__(self, resource: str, current: int, limit: int, plan: str):
        super().__init__(
            f"Plan limit reached for {resource}: {current}/{limit}. Upgrade your plan to add more.",
            {"resource": resource, "current": current, "limit": limit, "plan": plan},
        )


class ModuleNotAvailable(BillingError):
    status_code = 403
    error_code = "FEATURE_NOT_AVAILABLE"

    def __init__(self, module: str, plan: str, required_plan: Optional[str] = None):
        super().__init__(
            f"The '{module}' module is not included in the {plan} plan",
            {"module": module, "plan": plan, "required_plan": required_plan},
        )


class InsufficientPlan(BillingError):
    status_code = 403
    error_code = "INSUFFICIENT_PLAN"

    def __init__(self, plan: str, required_plan: str):
        super().__init__(
            f"This feature requires the {required_plan} plan or higher",
            {"plan": plan, "required_plan": required_plan},
        )


class ValidationError(BillingError):
    status_code = 400
    error_code = "VALIDATION_ERROR"


class NotFound(BillingError):
    status_code = 404
    error_code = "NOT_FOUND"


class UpstreamProviderError(BillingError):
    """Wraps a provider SDK failure. ``message`` must be safe to show a user."""

    status_code = 502
    error_code = "UPSTREAM_PROVIDER_ERROR"

    def __init__(self, provider: str, message: str = "Billing provider request failed"):
        super().__init__(message, {"provider": provider})
        self.provider = provider
