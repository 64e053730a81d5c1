"""
Route guards: tenant auth, module gating, quota gating, minimum plan and
active subscription.

A small FastAPI app mounts routes behind the guards from middleware.py with
the real EntitlementService over stubbed subscriptions and usage.
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock, patch

from auth import create_access_token
from middleware import require_active_subscription, require_module, require_plan, require_quota
from models import ModuleKey, PlanId, ResourceKind
from server import billing_exception_handler
from services.entitlements import EntitlementService
from services.plan_catalog import build_plan_catalog
from utils.errors import BillingError

TENANT_ID = "tenant-gating"


def _token(tenant_id=TENANT_ID):
    return create_access_token({
        "user_id": "user-1",
        "tenant_id": tenant_id,
        "email": "owner@clinic.com.br",
        "role": "ROLE_OWNER",
    })


def _build_app(plan="free", status="active", count=0, end_date=None, missing=False):
    record = {"tenant_id": TENANT_ID, "plan": plan, "status": status, "end_date": end_date}
    subscriptions = MagicMock()
    subscriptions.get = AsyncMock(return_value=None if missing else record)
    usage = MagicMock()
    usage.count = AsyncMock(return_value=count)

    app = FastAPI()
    app.state.entitlements = EntitlementService(build_plan_catalog(), subscriptions=subscriptions, usage=usage)
    app.add_exception_handler(BillingError, billing_exception_handler)

    @app.get("/inventory")
    async def inventory(user: dict = Depends(require_module(ModuleKey.INVENTORY))):
        return {"ok": True}

    @app.get("/crm/campaigns")
    async def crm_campaigns(user: dict = Depends(require_module(ModuleKey.CRM, advanced=True))):
        return {"ok": True}

    @app.post("/patients")
    async def create_patient(user: dict = Depends(require_quota(ResourceKind.PATIENT))):
        return {"ok": True}

    @app.get("/branches")
    async def branches(user: dict = Depends(require_plan(PlanId.ENTERPRISE))):
        return {"ok": True}

    @app.get("/reports")
    async def reports(request: Request, user: dict = Depends(require_active_subscription)):
        return {"plan": request.state.subscription["plan"]}

    return app


@pytest.fixture
def tenant_exists(mock_db):
    mock_db.tenants.find_one = AsyncMock(return_value={"tenant_id": TENANT_ID})
    return mock_db


def _get(app, path, method="get", token=None):
    headers = {"Authorization": f"Bearer {token or _token()}"}
    return getattr(TestClient(app), method)(path, headers=headers)


class TestTenantGuard:

    def test_missing_token(self, tenant_exists):
        response = TestClient(_build_app()).get("/inventory")
        assert response.status_code == 401

    def test_deleted_tenant(self, mock_db):
        response = _get(_build_app(plan="professional"), "/inventory")
        assert response.status_code == 404


class TestModuleGating:

    def test_free_plan_blocked_from_inventory(self, tenant_exists):
        response = _get(_build_app(plan="free"), "/inventory")

        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "FEATURE_NOT_AVAILABLE"
        assert body["required_plan"] == "professional"
        actions = [c.args[0]["action"] for c in tenant_exists.audit_logs.insert_one.call_args_list]
        assert "PLAN_GATE_DENIED" in actions

    def test_professional_can_use_inventory(self, tenant_exists):
        assert _get(_build_app(plan="professional"), "/inventory").status_code == 200

    def test_canceled_professional_is_treated_as_free(self, tenant_exists):
        assert _get(_build_app(plan="professional", status="canceled"), "/inventory").status_code == 403

    def test_basic_crm_cannot_use_advanced_campaigns(self, tenant_exists):
        assert _get(_build_app(plan="basic"), "/crm/campaigns").status_code == 403
        assert _get(_build_app(plan="professional"), "/crm/campaigns").status_code == 200


class TestQuotaGating:

    def test_quota_reached(self, tenant_exists):
        response = _get(_build_app(plan="free", count=50), "/patients", method="post")

        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "RESOURCE_QUOTA_EXCEEDED"
        assert body["current"] == 50
        assert body["limit"] == 50
        assert body["resource"] == "patient"

    def test_under_quota(self, tenant_exists):
        assert _get(_build_app(plan="free", count=49), "/patients", method="post").status_code == 200


class TestMinimumPlan:

    def test_professional_below_enterprise(self, tenant_exists):
        response = _get(_build_app(plan="professional"), "/branches")
        assert response.status_code == 403
        assert response.json()["code"] == "INSUFFICIENT_PLAN"

    def test_enterprise_allowed(self, tenant_exists):
        assert _get(_build_app(plan="enterprise"), "/branches").status_code == 200


class TestActiveSubscription:

    def test_active_subscription_passes(self, tenant_exists):
        future = datetime.now(timezone.utc) + timedelta(days=10)
        response = _get(_build_app(plan="basic", end_date=future), "/reports")
        assert response.status_code == 200
        assert response.json() == {"plan": "basic"}

    def test_missing_subscription(self, tenant_exists):
        response = _get(_build_app(missing=True), "/reports")
        assert response.status_code == 403
        assert response.json()["code"] == "SUBSCRIPTION_NOT_FOUND"

    def test_canceled_subscription_is_inactive(self, tenant_exists):
        response = _get(_build_app(plan="professional", status="canceled"), "/reports")
        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "SUBSCRIPTION_INACTIVE"
        assert body["status"] == "canceled"

    def test_lapsed_trial_is_expired(self, tenant_exists):
        past = datetime.now(timezone.utc) - timedelta(days=1)
        response = _get(_build_app(status="trialing", end_date=past), "/reports")
        assert response.status_code == 403
        assert response.json()["code"] == "SUBSCRIPTION_EXPIRED"
