"""
Entitlement evaluator: plan resolution, quotas and module access.

Subscriptions and usage counts are stubbed; no database is touched except
the audit log (patched).
"""
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from models import ModuleKey, PlanId, ResourceKind
from services.entitlements import EntitlementService, subscription_grants_plan
from services.plan_catalog import UNLIMITED, build_plan_catalog
from utils.errors import InsufficientPlan, ModuleNotAvailable, ResourceQuotaExceeded

TENANT_ID = "tenant-entitlements"


def _service(subscription=None, count=0, read_error=None, count_error=None):
    subscriptions = MagicMock()
    if read_error:
        subscriptions.get = AsyncMock(side_effect=read_error)
    else:
        subscriptions.get = AsyncMock(return_value=subscription)

    usage = MagicMock()
    if count_error:
        usage.count = AsyncMock(side_effect=count_error)
    else:
        usage.count = AsyncMock(return_value=count)
    usage.snapshot = AsyncMock(return_value={"patient": count})

    return EntitlementService(build_plan_catalog(), subscriptions=subscriptions, usage=usage)


def _subscription(plan, status):
    return {"tenant_id": TENANT_ID, "plan": plan, "status": status}


class TestPlanResolution:

    @pytest.mark.asyncio
    async def test_no_subscription_is_free(self):
        """Tenant without subscription row gets free plan, limits and modules."""
        service = _service(subscription=None)
        catalog = build_plan_catalog()

        assert await service.resolve_plan(TENANT_ID) == PlanId.FREE
        assert await service.get_limits(TENANT_ID) == catalog.get_limits(PlanId.FREE)
        assert await service.get_modules(TENANT_ID) == catalog.get_modules(PlanId.FREE)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["active", "trialing"])
    async def test_entitled_status_grants_plan(self, status):
        service = _service(subscription=_subscription("professional", status))
        assert await service.resolve_plan(TENANT_ID) == PlanId.PROFESSIONAL

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["canceled", "past_due", "incomplete"])
    async def test_lapsed_status_falls_back_to_free(self, status):
        service = _service(subscription=_subscription("enterprise", status))
        result = await service.resolve_plan_result(TENANT_ID)
        assert result.plan == PlanId.FREE
        assert result.status == status
        assert result.degraded is False

    @pytest.mark.asyncio
    async def test_unknown_plan_string_is_free(self):
        service = _service(subscription=_subscription("platinum", "active"))
        assert await service.resolve_plan(TENANT_ID) == PlanId.FREE

    @pytest.mark.asyncio
    async def test_read_failure_degrades_to_free(self, caplog):
        """A failed subscription read resolves to free and is flagged, not raised."""
        service = _service(read_error=RuntimeError("mongo down"))
        result = await service.resolve_plan_result(TENANT_ID)
        assert result.plan == PlanId.FREE
        assert result.degraded is True
        assert "degrading to free" in caplog.text

    def test_subscription_grants_plan(self):
        assert subscription_grants_plan("active")
        assert subscription_grants_plan("trialing")
        assert not subscription_grants_plan("past_due")
        assert not subscription_grants_plan(None)


class TestQuotas:

    @pytest.mark.asyncio
    async def test_basic_plan_at_patient_limit_is_denied(self):
        """Basic tenant with 200 patients cannot create another."""
        service = _service(subscription=_subscription("basic", "active"), count=200)
        check = await service.can_create(TENANT_ID, ResourceKind.PATIENT)
        assert check.to_dict() == {"allowed": False, "current": 200, "limit": 200}

    @pytest.mark.asyncio
    async def test_one_below_limit_is_allowed(self):
        service = _service(subscription=_subscription("basic", "active"), count=199)
        check = await service.can_create(TENANT_ID, ResourceKind.PATIENT)
        assert check.allowed is True
        assert check.current == 199

    @pytest.mark.asyncio
    async def test_unlimited_always_allowed_without_counting(self):
        service = _service(subscription=_subscription("professional", "active"), count=10_000)
        check = await service.can_create(TENANT_ID, ResourceKind.PATIENT)
        assert check.allowed is True
        assert check.limit == UNLIMITED
        service.usage.count.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_free_single_user_seat(self):
        service = _service(subscription=None, count=1)
        check = await service.can_create(TENANT_ID, ResourceKind.USER)
        assert check.allowed is False
        assert check.limit == 1

    @pytest.mark.asyncio
    async def test_count_failure_denies(self):
        service = _service(subscription=_subscription("basic", "active"), count_error=RuntimeError("timeout"))
        check = await service.can_create(TENANT_ID, ResourceKind.TRANSACTION)
        assert check.allowed is False
        assert check.degraded is True

    @pytest.mark.asyncio
    async def test_enforce_quota_raises_and_audits(self):
        service = _service(subscription=_subscription("basic", "active"), count=200)
        with patch("services.entitlements.create_audit_log", new_callable=AsyncMock) as audit:
            with pytest.raises(ResourceQuotaExceeded) as exc_info:
                await service.enforce_quota(TENANT_ID, ResourceKind.PATIENT, actor_id="user-1")

        body = exc_info.value.to_dict()
        assert exc_info.value.status_code == 403
        assert body["code"] == "RESOURCE_QUOTA_EXCEEDED"
        assert body["current"] == 200
        assert body["limit"] == 200
        assert body["resource"] == "patient"
        audit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_enforce_quota_returns_check_when_allowed(self):
        service = _service(subscription=_subscription("basic", "active"), count=3)
        check = await service.enforce_quota(TENANT_ID, ResourceKind.PATIENT)
        assert check.allowed is True


class TestModules:

    @pytest.mark.asyncio
    async def test_basic_crm_is_accessible_but_not_advanced(self):
        service = _service(subscription=_subscription("basic", "active"))
        assert await service.has_module_access(TENANT_ID, ModuleKey.CRM) is True
        assert await service.has_advanced_access(TENANT_ID, ModuleKey.CRM) is False

    @pytest.mark.asyncio
    async def test_boolean_true_counts_as_advanced(self):
        service = _service(subscription=_subscription("professional", "active"))
        assert await service.has_advanced_access(TENANT_ID, ModuleKey.INVENTORY) is True

    @pytest.mark.asyncio
    async def test_unknown_module_is_denied(self):
        service = _service(subscription=_subscription("enterprise", "active"))
        assert await service.has_module_access(TENANT_ID, "teleportation") is False

    @pytest.mark.asyncio
    async def test_enforce_module_names_required_plan(self):
        service = _service(subscription=None)
        with pytest.raises(ModuleNotAvailable) as exc_info:
            await service.enforce_module(TENANT_ID, ModuleKey.INVENTORY)

        body = exc_info.value.to_dict()
        assert body["code"] == "FEATURE_NOT_AVAILABLE"
        assert body["plan"] == "free"
        assert body["required_plan"] == "professional"

    @pytest.mark.asyncio
    async def test_enforce_minimum_plan(self):
        service = _service(subscription=_subscription("basic", "active"))
        await service.enforce_minimum_plan(TENANT_ID, PlanId.BASIC)
        with pytest.raises(InsufficientPlan):
            await service.enforce_minimum_plan(TENANT_ID, PlanId.PROFESSIONAL)

    @pytest.mark.asyncio
    async def test_meets_minimum_plan_follows_hierarchy(self):
        service = _service(subscription=_subscription("professional", "active"))
        assert await service.meets_minimum_plan(TENANT_ID, PlanId.FREE)
        assert await service.meets_minimum_plan(TENANT_ID, PlanId.BASIC)
        assert await service.meets_minimum_plan(TENANT_ID, PlanId.PROFESSIONAL)
        assert not await service.meets_minimum_plan(TENANT_ID, PlanId.ENTERPRISE)

    @pytest.mark.asyncio
    async def test_lapsed_subscription_only_meets_free(self):
        service = _service(subscription=_subscription("enterprise", "past_due"))
        assert await service.meets_minimum_plan(TENANT_ID, PlanId.FREE)
        assert not await service.meets_minimum_plan(TENANT_ID, PlanId.BASIC)


class TestEntitlementSummary:

    @pytest.mark.asyncio
    async def test_summary_includes_usage_and_degraded_flag(self):
        service = _service(subscription=_subscription("basic", "trialing"), count=12)
        summary = await service.get_entitlements(TENANT_ID)
        assert summary["plan"] == "basic"
        assert summary["subscription_status"] == "trialing"
        assert summary["degraded"] is False
        assert summary["limits"]["patients"] == 200
        assert summary["modules"]["crm"] == "basic"
        assert summary["usage"] == {"patient": 12}

    @pytest.mark.asyncio
    async def test_summary_survives_usage_failure(self):
        service = _service(subscription=None)
        service.usage.snapshot = AsyncMock(side_effect=RuntimeError("boom"))
        summary = await service.get_entitlements(TENANT_ID)
        assert summary["plan"] == "free"
        assert summary["usage"] is None
