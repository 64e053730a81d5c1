"""
Signup: tenant + owner + 14-day free trial subscription, and live usage counts.
"""
from datetime import datetime, timedelta, timezone

import pytest
from unittest.mock import AsyncMock, patch

from models import PlanId, ResourceKind, SignupRequest
from services.entitlements import EntitlementService
from services.plan_catalog import build_plan_catalog
from services.tenant_service import TenantService
from services.usage_counters import UsageCounters, month_bounds
from utils.errors import ValidationError

SIGNUP = SignupRequest(
    clinic_name="Clinica Sorriso",
    name="Ana Souza",
    email="Ana@Sorriso.com.br",
    password="Sup3rSecret!",
)


@pytest.fixture(autouse=True)
def fast_hash():
    with patch("services.tenant_service.hash_password", return_value="hashed"):
        yield


class TestSignup:

    @pytest.mark.asyncio
    async def test_signup_creates_free_trial(self, mock_db):
        """New tenant gets {free, trialing, start + 14 days} and resolves to free."""
        result = await TenantService().register_tenant(SIGNUP)

        subscription = result["subscription"]
        assert subscription["plan"] == "free"
        assert subscription["status"] == "trialing"
        start = datetime.fromisoformat(subscription["start_date"].replace("Z", "+00:00"))
        end = datetime.fromisoformat(subscription["end_date"].replace("Z", "+00:00"))
        assert end - start == timedelta(days=14)

        tenant_id = result["tenant"]["tenant_id"]
        assert result["user"]["tenant_id"] == tenant_id
        assert result["user"]["role"] == "ROLE_OWNER"
        assert "password_hash" not in result["user"]
        assert mock_db.users.insert_one.call_args.args[0]["email"] == "ana@sorriso.com.br"

        mock_db.subscriptions.find_one = AsyncMock(return_value={
            "tenant_id": tenant_id, "plan": "free", "status": "trialing",
        })
        entitlements = EntitlementService(build_plan_catalog())
        assert await entitlements.resolve_plan(tenant_id) == PlanId.FREE

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(self, mock_db):
        mock_db.users.find_one = AsyncMock(return_value={"_id": "existing"})
        with pytest.raises(ValidationError):
            await TenantService().register_tenant(SIGNUP)
        mock_db.tenants.insert_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_signup_writes_audit_entries(self, mock_db):
        await TenantService().register_tenant(SIGNUP)
        actions = [call.args[0]["action"] for call in mock_db.audit_logs.insert_one.call_args_list]
        assert "SUBSCRIPTION_CREATED" in actions
        assert "TENANT_SIGNUP" in actions


class TestUsageCounters:

    def test_month_bounds(self):
        start, end = month_bounds(datetime(2026, 12, 15, 18, 30, tzinfo=timezone.utc))
        assert start == datetime(2026, 12, 1, tzinfo=timezone.utc)
        assert end == datetime(2027, 1, 1, tzinfo=timezone.utc)

    def test_month_bounds_naive_is_utc(self):
        start, _ = month_bounds(datetime(2026, 2, 28, 23, 59))
        assert start == datetime(2026, 2, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_patients_counted_all_time(self, mock_db):
        mock_db.patients.count_documents = AsyncMock(return_value=42)
        assert await UsageCounters().count("t-1", ResourceKind.PATIENT) == 42
        mock_db.patients.count_documents.assert_awaited_once_with({"tenant_id": "t-1"})

    @pytest.mark.asyncio
    async def test_appointments_counted_for_current_month(self, mock_db):
        now = datetime(2026, 4, 20, tzinfo=timezone.utc)
        await UsageCounters().count("t-1", ResourceKind.APPOINTMENT, now=now)
        query = mock_db.appointments.count_documents.call_args.args[0]
        assert query["start_time"] == {
            "$gte": datetime(2026, 4, 1, tzinfo=timezone.utc),
            "$lt": datetime(2026, 5, 1, tzinfo=timezone.utc),
        }

    @pytest.mark.asyncio
    async def test_transactions_counted_by_created_at(self, mock_db):
        now = datetime(2026, 4, 20, tzinfo=timezone.utc)
        await UsageCounters().count("t-1", ResourceKind.TRANSACTION, now=now)
        query = mock_db.transactions.count_documents.call_args.args[0]
        assert "created_at" in query
