"""MercadoPago Webhook Service - preapproval notifications.

MercadoPago notifications only carry the resource id, so the preapproval is
fetched from the API and its status mapped through
``MercadoPagoAdapter.map_status``. ``external_reference`` holds the tenant id.

Signature (x-signature header, ``ts=<ts>,v1=<hex>``) is an HMAC-SHA256 over
``id:<data.id>;request-id:<x-request-id>;ts:<ts>;`` keyed with
MERCADOPAGO_WEBHOOK_SECRET.
"""
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from database import database
from models import AuditAction, BillingProvider, PlanId, SubscriptionStatus, UserRole
from services.billing_providers.mercadopago_adapter import MercadoPagoAdapter
from services.provider_events import ProviderEventLedger, provider_event_ledger
from services.subscription_service import (
    SubscriptionService,
    is_stale_provider_object,
    subscription_service,
)
from utils.audit import create_audit_log
from utils.errors import ProviderNotConfigured, ValidationError

logger = logging.getLogger(__name__)

PREAPPROVAL_TOPICS = ("subscription_preapproval", "preapproval")


def _parse_signature_header(header: str) -> Dict[str, str]:
    parts = {}
    for chunk in (header or "").split(","):
        key, sep, value = chunk.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def verify_mercadopago_signature(
    secret: str,
    signature_header: Optional[str],
    request_id: Optional[str],
    data_id: Optional[str],
) -> bool:
    parts = _parse_signature_header(signature_header or "")
    ts = parts.get("ts")
    received = parts.get("v1")
    if not ts or not received:
        return False

    manifest = ""
    if data_id:
        normalized = data_id.lower() if data_id.isalnum() else data_id
        manifest += f"id:{normalized};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts};"

    expected = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received)


def _parse_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparseable MercadoPago date: %s", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class MercadoPagoWebhookService:

    def __init__(
        self,
        adapter: MercadoPagoAdapter,
        subscriptions: SubscriptionService = subscription_service,
        ledger: ProviderEventLedger = provider_event_ledger,
    ):
        self.adapter = adapter
        self.subscriptions = subscriptions
        self.ledger = ledger

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
        request_id: Optional[str],
        query_data_id: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[Dict]]:
        """Verify, deduplicate and apply one notification. Returns (success, message, details)."""
        if not self.adapter.is_configured():
            raise ProviderNotConfigured(BillingProvider.MERCADOPAGO.value)
        if not self.adapter.webhook_secret:
            raise ValidationError("MercadoPago webhook secret not configured")

        try:
            notification = json.loads(payload or b"{}")
        except ValueError as e:
            raise ValidationError("Invalid payload") from e
        if not isinstance(notification, dict):
            raise ValidationError("Invalid payload")

        data_id = query_data_id or str((notification.get("data") or {}).get("id") or "")
        if not verify_mercadopago_signature(self.adapter.webhook_secret, signature, request_id, data_id or None):
            logger.error("MercadoPago webhook signature verification failed request_id=%s", request_id)
            raise ValidationError("Invalid signature")

        topic = notification.get("type") or notification.get("topic")
        action = notification.get("action")
        event_id = str(notification.get("id") or request_id or f"{data_id}:{action}")
        logger.info(
            "WEBHOOK_RECEIVED provider=mercadopago event_id=%s type=%s action=%s data_id=%s",
            event_id, topic, action, data_id,
        )

        if topic not in PREAPPROVAL_TOPICS or not data_id:
            logger.info("Ignoring MercadoPago notification type=%s", topic)
            return True, "Ignored", {"handled": False, "type": topic}

        should_process = await self.ledger.begin(
            BillingProvider.MERCADOPAGO,
            event_id,
            f"{topic}.{action}" if action else topic,
            {"id": event_id, "type": topic, "action": action, "data_id": data_id},
        )
        if not should_process:
            return True, "Already processed", {"event_id": event_id}

        try:
            result = await self._handle_preapproval(data_id)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED provider=mercadopago event_id=%s error=%s", event_id, e,
            )
            await self.ledger.mark_failed(BillingProvider.MERCADOPAGO, event_id, str(e))
            await create_audit_log(
                action=AuditAction.PROVIDER_EVENT_FAILED,
                actor_role=UserRole.ROLE_SYSTEM,
                metadata={
                    "provider": BillingProvider.MERCADOPAGO.value,
                    "event_id": event_id,
                    "data_id": data_id,
                    "error": str(e),
                },
            )
            return False, "Event processing failed", {"event_id": event_id}

        await self.ledger.mark_processed(BillingProvider.MERCADOPAGO, event_id, result.get("tenant_id"))
        logger.info(
            "WEBHOOK_PROCESSED_OK provider=mercadopago event_id=%s tenant_id=%s",
            event_id, result.get("tenant_id"),
        )
        return True, "Processed", result

    async def _handle_preapproval(self, preapproval_id: str) -> Dict[str, Any]:
        preapproval = self.adapter.fetch_preapproval(preapproval_id)
        tenant_id = preapproval.get("external_reference")
        if not tenant_id:
            raise ValueError(f"Preapproval {preapproval_id} has no external_reference")

        status = self.adapter.map_status(preapproval.get("status"))
        db = database.get_db()
        checkout = await db.checkout_sessions.find_one(
            {"checkout_id": preapproval_id, "provider": BillingProvider.MERCADOPAGO.value},
            {"_id": 0},
        )
        new_checkout = bool(checkout) and checkout.get("tenant_id") == tenant_id and checkout.get("status") == "OPEN"

        current = await self.subscriptions.get(tenant_id)
        if is_stale_provider_object(current, BillingProvider.MERCADOPAGO, preapproval_id, new_checkout=new_checkout):
            logger.info("Ignoring %s for superseded preapproval %s", status.value, preapproval_id)
            return {"handled": False, "reason": "stale_preapproval", "tenant_id": tenant_id}

        plan = PlanId(checkout["plan"]) if checkout and checkout.get("plan") else None

        applied, reason = await self.subscriptions.apply_provider_update(
            tenant_id,
            BillingProvider.MERCADOPAGO,
            status,
            plan=plan,
            provider_object_id=preapproval_id,
            start_date=_parse_date(preapproval.get("date_created")),
            end_date=_parse_date(preapproval.get("next_payment_date")),
            new_checkout=new_checkout,
            source="mercadopago.preapproval",
        )

        if new_checkout and applied and status == SubscriptionStatus.ACTIVE:
            await db.checkout_sessions.update_one(
                {"checkout_id": preapproval_id},
                {"$set": {"status": "COMPLETED", "completed_at": datetime.now(timezone.utc)}},
            )
        return {
            "handled": True,
            "applied": applied,
            "reason": reason,
            "tenant_id": tenant_id,
            "status": status.value,
        }
