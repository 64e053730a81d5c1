"""
MercadoPago webhook: x-signature verification and preapproval sync.
"""
import hashlib
import hmac
import json

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from models import BillingProvider, PlanId, SubscriptionStatus
from services.billing_providers.mercadopago_adapter import MercadoPagoAdapter, MercadoPagoSettings
from services.mercadopago_webhook_service import (
    MercadoPagoWebhookService,
    verify_mercadopago_signature,
)
from utils.errors import ProviderNotConfigured, ValidationError

SECRET = "mp-webhook-secret"
TENANT_ID = "tenant-mp-webhook"
PREAPPROVAL_ID = "2c9380848f0a"
REQUEST_ID = "req-0001"
TS = "1767225600"


def _signature(data_id=PREAPPROVAL_ID, request_id=REQUEST_ID, ts=TS, secret=SECRET):
    manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return f"ts={ts},v1={digest}"


def _notification(topic="subscription_preapproval", data_id=PREAPPROVAL_ID):
    return json.dumps({
        "id": 123456,
        "type": topic,
        "action": "updated",
        "data": {"id": data_id},
    }).encode()


def _service(preapproval=None, current=None, settings=None):
    sdk = MagicMock()
    sdk.preapproval.return_value.get.return_value = {"status": 200, "response": preapproval or {}}

    subscriptions = MagicMock()
    subscriptions.get = AsyncMock(return_value=current)
    subscriptions.apply_provider_update = AsyncMock(return_value=(True, "Applied"))

    ledger = MagicMock()
    ledger.begin = AsyncMock(return_value=True)
    ledger.mark_processed = AsyncMock()
    ledger.mark_failed = AsyncMock()

    adapter = MercadoPagoAdapter(
        settings or MercadoPagoSettings(access_token="TEST-123", webhook_secret=SECRET),
        subscriptions=subscriptions,
        sdk=sdk,
    )
    return MercadoPagoWebhookService(adapter, subscriptions=subscriptions, ledger=ledger)


class TestSignatureHelper:

    def test_valid_signature(self):
        assert verify_mercadopago_signature(SECRET, _signature(), REQUEST_ID, PREAPPROVAL_ID)

    def test_wrong_secret(self):
        assert not verify_mercadopago_signature(SECRET, _signature(secret="other"), REQUEST_ID, PREAPPROVAL_ID)

    def test_tampered_data_id(self):
        assert not verify_mercadopago_signature(SECRET, _signature(), REQUEST_ID, "999")

    def test_alphanumeric_data_id_is_lowercased(self):
        header = _signature(data_id="abc123")
        assert verify_mercadopago_signature(SECRET, header, REQUEST_ID, "ABC123")

    @pytest.mark.parametrize("header", [None, "", "ts=1", "v1=abc", "garbage"])
    def test_malformed_header(self, header):
        assert not verify_mercadopago_signature(SECRET, header, REQUEST_ID, PREAPPROVAL_ID)


class TestProcessWebhook:

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self):
        service = _service(settings=MercadoPagoSettings())
        with pytest.raises(ProviderNotConfigured):
            await service.process_webhook(_notification(), _signature(), REQUEST_ID)

    @pytest.mark.asyncio
    async def test_missing_secret_rejected(self):
        service = _service(settings=MercadoPagoSettings(access_token="TEST-123"))
        with pytest.raises(ValidationError):
            await service.process_webhook(_notification(), _signature(), REQUEST_ID)

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_before_any_write(self):
        service = _service()
        with pytest.raises(ValidationError):
            await service.process_webhook(_notification(), _signature(secret="nope"), REQUEST_ID)
        service.ledger.begin.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        service = _service()
        with pytest.raises(ValidationError):
            await service.process_webhook(b"not json", _signature(), REQUEST_ID)

    @pytest.mark.asyncio
    async def test_non_preapproval_topic_ignored(self):
        service = _service()
        payload = _notification(topic="payment")
        success, message, _ = await service.process_webhook(payload, _signature(), REQUEST_ID)
        assert success is True
        assert message == "Ignored"
        service.ledger.begin.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_authorized_preapproval_activates_checkout_plan(self, mock_db):
        preapproval = {
            "id": PREAPPROVAL_ID,
            "status": "authorized",
            "external_reference": TENANT_ID,
            "date_created": "2026-01-01T10:00:00.000-03:00",
            "next_payment_date": "2026-02-01T10:00:00.000-03:00",
        }
        service = _service(preapproval=preapproval, current={"tenant_id": TENANT_ID, "status": "trialing"})
        mock_db.checkout_sessions.find_one = AsyncMock(return_value={
            "checkout_id": PREAPPROVAL_ID, "provider": "mercadopago", "plan": "basic",
            "tenant_id": TENANT_ID, "status": "OPEN",
        })

        success, message, details = await service.process_webhook(
            _notification(), _signature(), REQUEST_ID, query_data_id=PREAPPROVAL_ID,
        )

        assert success is True
        assert message == "Processed"
        args = service.subscriptions.apply_provider_update.call_args
        assert args.args[:3] == (TENANT_ID, BillingProvider.MERCADOPAGO, SubscriptionStatus.ACTIVE)
        assert args.kwargs["plan"] == PlanId.BASIC
        assert args.kwargs["provider_object_id"] == PREAPPROVAL_ID
        assert args.kwargs["end_date"].isoformat() == "2026-02-01T13:00:00+00:00"
        mock_db.checkout_sessions.update_one.assert_awaited_once()
        service.ledger.mark_processed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancelled_preapproval_for_superseded_object_ignored(self, mock_db):
        preapproval = {"id": PREAPPROVAL_ID, "status": "cancelled", "external_reference": TENANT_ID}
        current = {"tenant_id": TENANT_ID, "status": "active", "mercadopago_preapproval_id": "newer-pre"}
        service = _service(preapproval=preapproval, current=current)

        success, _, details = await service.process_webhook(_notification(), _signature(), REQUEST_ID)

        assert success is True
        assert details["reason"] == "stale_preapproval"
        service.subscriptions.apply_provider_update.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_authorized_old_preapproval_does_not_replace_current(self, mock_db):
        preapproval = {"id": PREAPPROVAL_ID, "status": "authorized", "external_reference": TENANT_ID}
        current = {
            "tenant_id": TENANT_ID, "status": "active", "provider": "mercadopago",
            "mercadopago_preapproval_id": "newer-pre",
        }
        service = _service(preapproval=preapproval, current=current)
        mock_db.checkout_sessions.find_one = AsyncMock(return_value={
            "checkout_id": PREAPPROVAL_ID, "provider": "mercadopago", "plan": "basic",
            "tenant_id": TENANT_ID, "status": "COMPLETED",
        })

        success, _, details = await service.process_webhook(_notification(), _signature(), REQUEST_ID)

        assert success is True
        assert details["reason"] == "stale_preapproval"
        service.subscriptions.apply_provider_update.assert_not_awaited()
        mock_db.checkout_sessions.update_one.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_preapproval_without_reference_fails_event(self):
        service = _service(preapproval={"id": PREAPPROVAL_ID, "status": "authorized"})

        with patch("services.mercadopago_webhook_service.create_audit_log", new_callable=AsyncMock):
            success, message, _ = await service.process_webhook(_notification(), _signature(), REQUEST_ID)

        assert success is False
        assert message == "Event processing failed"
        service.ledger.mark_failed.assert_awaited_once()
