"""Stripe Webhook Service - verified, idempotent subscription sync.

Key Principles:
1. Signature verification: every event must be signed with STRIPE_WEBHOOK_SECRET
2. Idempotency: an event id is processed once (``provider_events``)
3. Status comes from ``StripeAdapter.map_status`` only
4. Transitions go through the subscription state machine

Events Handled:
- checkout.session.completed
- customer.subscription.created
- customer.subscription.updated
- customer.subscription.deleted
- invoice.paid
- invoice.payment_failed
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import stripe

from database import database
from models import AuditAction, BillingProvider, PlanId, SubscriptionStatus, UserRole
from services.billing_providers.stripe_adapter import (
    StripeAdapter,
    extract_period,
    extract_price_id,
)
from services.plan_catalog import PAID_PLANS
from services.provider_events import ProviderEventLedger, provider_event_ledger
from services.subscription_service import (
    SubscriptionService,
    is_stale_provider_object,
    subscription_service,
)
from utils.audit import create_audit_log
from utils.errors import ProviderNotConfigured, ValidationError

logger = logging.getLogger(__name__)


def _extract_webhook_context(event: Dict) -> Dict[str, Any]:
    """Safe fields for structured logging."""
    obj = event.get("data", {}).get("object", {}) or {}
    metadata = obj.get("metadata", {}) or {}
    return {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "livemode": event.get("livemode"),
        "tenant_id": metadata.get("tenant_id"),
        "customer": obj.get("customer"),
        "object_id": obj.get("id"),
    }


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    if subscription:
        return subscription
    # Newer API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


class StripeWebhookService:
    """Translates Stripe events into subscription record updates."""

    def __init__(
        self,
        adapter: StripeAdapter,
        subscriptions: SubscriptionService = subscription_service,
        ledger: ProviderEventLedger = provider_event_ledger,
    ):
        self.adapter = adapter
        self.subscriptions = subscriptions
        self.ledger = ledger

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def process_webhook(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> Tuple[bool, str, Optional[Dict]]:
        """
        Main webhook entry point.

        Raises ProviderNotConfigured / ValidationError when the event cannot be
        trusted. Otherwise returns (success, message, details).
        """
        if not self.adapter.is_configured():
            raise ProviderNotConfigured(BillingProvider.STRIPE.value)
        if not self.adapter.webhook_secret:
            raise ValidationError("Stripe webhook secret not configured")
        if not signature:
            raise ValidationError("Missing Stripe-Signature header")

        # Step 1: Verify signature
        try:
            event = self.adapter.verify_event(payload, signature)
        except stripe.SignatureVerificationError as e:
            logger.error("Stripe webhook signature verification failed: %s", e)
            raise ValidationError("Invalid signature") from e
        except ValueError as e:
            logger.error("Stripe webhook payload parse error: %s", e)
            raise ValidationError("Invalid payload") from e

        event_id = event.get("id")
        event_type = event.get("type")
        ctx = _extract_webhook_context(event)
        logger.info(
            "WEBHOOK_RECEIVED provider=stripe event_id=%s event_type=%s livemode=%s tenant_id=%s object_id=%s",
            event_id, event_type, ctx.get("livemode"), ctx.get("tenant_id"), ctx.get("object_id"),
        )

        # Step 2: Idempotency
        should_process = await self.ledger.begin(
            BillingProvider.STRIPE, event_id, event_type, self._extract_safe_data(event)
        )
        if not should_process:
            return True, "Already processed", {"event_id": event_id}

        # Step 3: Process
        try:
            result = await self._handle_event(event)
        except Exception as e:
            logger.error(
                "WEBHOOK_PROCESSING_FAILED provider=stripe event_id=%s event_type=%s error=%s",
                event_id, event_type, e,
            )
            await self.ledger.mark_failed(BillingProvider.STRIPE, event_id, str(e))
            await create_audit_log(
                action=AuditAction.PROVIDER_EVENT_FAILED,
                actor_role=UserRole.ROLE_SYSTEM,
                tenant_id=ctx.get("tenant_id"),
                metadata={
                    "provider": BillingProvider.STRIPE.value,
                    "event_id": event_id,
                    "event_type": event_type,
                    "error": str(e),
                },
            )
            return False, "Event processing failed", {"event_id": event_id}

        await self.ledger.mark_processed(BillingProvider.STRIPE, event_id, result.get("tenant_id"))
        logger.info(
            "WEBHOOK_PROCESSED_OK provider=stripe event_id=%s event_type=%s tenant_id=%s",
            event_id, event_type, result.get("tenant_id"),
        )
        return True, "Processed", result

    # =========================================================================
    # Event Handlers
    # =========================================================================

    async def _handle_event(self, event: Dict) -> Dict:
        """Route event to appropriate handler."""
        event_type = event.get("type")
        data = event.get("data", {}).get("object", {})

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.created": self._handle_subscription_change,
            "customer.subscription.updated": self._handle_subscription_change,
            "customer.subscription.deleted": self._handle_subscription_deleted,
            "invoice.paid": self._handle_invoice_paid,
            "invoice.payment_failed": self._handle_payment_failed,
        }

        handler = handlers.get(event_type)
        if handler:
            return await handler(data)

        logger.info(f"Ignoring unhandled event type: {event_type}")
        return {"handled": False, "event_type": event_type}

    async def _handle_checkout_completed(self, session: Dict) -> Dict:
        if session.get("mode") != "subscription":
            logger.info("Ignoring checkout mode: %s", session.get("mode"))
            return {"handled": False, "mode": session.get("mode")}

        metadata = session.get("metadata") or {}
        tenant_id = metadata.get("tenant_id")
        subscription_id = session.get("subscription")
        if not tenant_id or not subscription_id:
            raise ValueError("checkout.session.completed without tenant_id metadata or subscription")

        db = database.get_db()
        open_checkout = await db.checkout_sessions.find_one(
            {"checkout_id": session.get("id"), "tenant_id": tenant_id, "status": "OPEN"},
            {"_id": 0, "checkout_id": 1},
        )

        stripe_subscription = self.adapter.retrieve_subscription(subscription_id)
        plan = self._resolve_plan(metadata, stripe_subscription)
        status = self.adapter.map_status(stripe_subscription.get("status"))
        start, end = extract_period(stripe_subscription)

        applied, reason = await self.subscriptions.apply_provider_update(
            tenant_id,
            BillingProvider.STRIPE,
            status,
            plan=plan,
            provider_object_id=subscription_id,
            customer_id=session.get("customer"),
            start_date=start,
            end_date=end,
            cancel_at_period_end=bool(stripe_subscription.get("cancel_at_period_end")),
            new_checkout=bool(open_checkout),
            source="checkout.session.completed",
        )

        # A checkout that could not be applied yet stays open for the subscription events
        checkout_update = {"subscription_id": subscription_id}
        if applied:
            checkout_update.update({"status": "COMPLETED", "completed_at": datetime.now(timezone.utc)})
        await db.checkout_sessions.update_one(
            {"checkout_id": session.get("id")},
            {"$set": checkout_update},
        )
        return {
            "handled": True,
            "applied": applied,
            "reason": reason,
            "tenant_id": tenant_id,
            "subscription_id": subscription_id,
            "status": status.value,
        }

    async def _handle_subscription_change(self, subscription: Dict) -> Dict:
        tenant_id, current = await self._locate_tenant(subscription)
        status = self.adapter.map_status(subscription.get("status"))
        object_id = subscription.get("id")

        new_checkout = False
        if is_stale_provider_object(current, BillingProvider.STRIPE, object_id):
            new_checkout = await self._has_open_checkout(tenant_id, object_id)
            if not new_checkout:
                logger.info("Ignoring %s for superseded Stripe subscription %s", status.value, object_id)
                return {"handled": False, "reason": "stale_subscription", "tenant_id": tenant_id}

        start, end = extract_period(subscription)
        applied, reason = await self.subscriptions.apply_provider_update(
            tenant_id,
            BillingProvider.STRIPE,
            status,
            plan=self._resolve_plan(subscription.get("metadata") or {}, subscription),
            provider_object_id=object_id,
            customer_id=subscription.get("customer"),
            start_date=start,
            end_date=end,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            new_checkout=new_checkout,
            source="customer.subscription",
        )
        if applied and new_checkout:
            await self._complete_checkout(tenant_id, object_id)
        return {"handled": True, "applied": applied, "reason": reason, "tenant_id": tenant_id, "status": status.value}

    async def _handle_subscription_deleted(self, subscription: Dict) -> Dict:
        tenant_id, current = await self._locate_tenant(subscription)
        object_id = subscription.get("id")

        if is_stale_provider_object(current, BillingProvider.STRIPE, object_id):
            logger.info("Ignoring deletion of superseded Stripe subscription %s", object_id)
            return {"handled": False, "reason": "stale_subscription", "tenant_id": tenant_id}

        canceled_at = subscription.get("canceled_at") or subscription.get("ended_at")
        applied, reason = await self.subscriptions.apply_provider_update(
            tenant_id,
            BillingProvider.STRIPE,
            SubscriptionStatus.CANCELED,
            provider_object_id=object_id,
            canceled_at=datetime.fromtimestamp(int(canceled_at), tz=timezone.utc) if canceled_at else None,
            source="customer.subscription.deleted",
        )
        return {"handled": True, "applied": applied, "reason": reason, "tenant_id": tenant_id}

    async def _handle_invoice_paid(self, invoice: Dict) -> Dict:
        return await self._apply_invoice_status(invoice, SubscriptionStatus.ACTIVE, "invoice.paid")

    async def _handle_payment_failed(self, invoice: Dict) -> Dict:
        return await self._apply_invoice_status(invoice, SubscriptionStatus.PAST_DUE, "invoice.payment_failed")

    async def _apply_invoice_status(self, invoice: Dict, status: SubscriptionStatus, source: str) -> Dict:
        subscription_id = _invoice_subscription_id(invoice)
        if not subscription_id:
            return {"handled": False, "reason": "invoice_without_subscription"}

        current = await self.subscriptions.find_by_provider_reference(
            BillingProvider.STRIPE, object_id=subscription_id
        )
        if not current:
            # Invoice may arrive before the subscription events; those carry the state
            logger.info("No subscription linked to Stripe subscription %s yet", subscription_id)
            return {"handled": False, "reason": "unknown_subscription"}

        tenant_id = current["tenant_id"]
        applied, reason = await self.subscriptions.apply_provider_update(
            tenant_id,
            BillingProvider.STRIPE,
            status,
            provider_object_id=subscription_id,
            source=source,
        )
        return {"handled": True, "applied": applied, "reason": reason, "tenant_id": tenant_id, "status": status.value}

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _has_open_checkout(self, tenant_id: str, subscription_id: str) -> bool:
        """True if the subscription came from a checkout of this tenant not yet applied."""
        db = database.get_db()
        checkout = await db.checkout_sessions.find_one(
            {
                "tenant_id": tenant_id,
                "provider": BillingProvider.STRIPE.value,
                "subscription_id": subscription_id,
                "status": "OPEN",
            },
            {"_id": 0, "checkout_id": 1},
        )
        return checkout is not None

    async def _complete_checkout(self, tenant_id: str, subscription_id: str) -> None:
        db = database.get_db()
        await db.checkout_sessions.update_one(
            {"tenant_id": tenant_id, "subscription_id": subscription_id, "status": "OPEN"},
            {"$set": {"status": "COMPLETED", "completed_at": datetime.now(timezone.utc)}},
        )

    async def _locate_tenant(self, subscription: Dict) -> Tuple[str, Optional[Dict[str, Any]]]:
        tenant_id = (subscription.get("metadata") or {}).get("tenant_id")
        if tenant_id:
            return tenant_id, await self.subscriptions.get(tenant_id)

        current = await self.subscriptions.find_by_provider_reference(
            BillingProvider.STRIPE,
            customer_id=subscription.get("customer"),
            object_id=subscription.get("id"),
        )
        if not current:
            raise ValueError(f"No tenant found for Stripe subscription {subscription.get('id')}")
        return current["tenant_id"], current

    def _resolve_plan(self, metadata: Dict[str, Any], subscription: Dict[str, Any]) -> Optional[PlanId]:
        """Plan from the configured price first, then from checkout metadata."""
        plan = self.adapter.plan_for_price(extract_price_id(subscription))
        if plan:
            return plan
        plan_id = metadata.get("plan_id")
        try:
            plan = PlanId(plan_id) if plan_id else None
        except ValueError:
            plan = None
        if plan in PAID_PLANS:
            return plan
        return None

    def _extract_safe_data(self, event: Dict) -> Dict:
        """Extract safe subset of event data for logging (no secrets)."""
        obj = event.get("data", {}).get("object", {})
        return {
            "id": event.get("id"),
            "type": event.get("type"),
            "created": event.get("created"),
            "object_id": obj.get("id"),
            "object_type": obj.get("object"),
        }
