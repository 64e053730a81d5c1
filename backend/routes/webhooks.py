"""Webhook Routes - Stripe and MercadoPago subscription notifications.

POST /api/billing/webhook/stripe - header Stripe-Signature
POST /api/billing/webhook/mercadopago - headers x-signature, x-request-id

Both endpoints verify the signature before touching the database and
deduplicate by provider event id. Untrusted requests get 400, an
unconfigured provider 503. A failed handler answers 500 so the provider
redelivers; the event ledger lets the retry run again.
"""
from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse
from typing import Optional
import logging

from middleware import get_provider_adapters
from models import BillingProvider
from services.mercadopago_webhook_service import MercadoPagoWebhookService
from services.stripe_webhook_service import StripeWebhookService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing/webhook", tags=["webhooks"])


def _respond(provider: BillingProvider, success: bool, message: str, details: Optional[dict]):
    if success:
        return {"status": "received", "message": message, "details": details}
    logger.error("Webhook processing failed provider=%s: %s %s", provider.value, message, details)
    return JSONResponse(
        status_code=500,
        content={"status": "error", "message": message, "details": details},
    )


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
):
    payload = await request.body()
    service = StripeWebhookService(get_provider_adapters(request)[BillingProvider.STRIPE])
    success, message, details = await service.process_webhook(payload, stripe_signature)
    return _respond(BillingProvider.STRIPE, success, message, details)


@router.post("/mercadopago")
async def mercadopago_webhook(
    request: Request,
    x_signature: Optional[str] = Header(None, alias="x-signature"),
    x_request_id: Optional[str] = Header(None, alias="x-request-id"),
    data_id: Optional[str] = Query(None, alias="data.id"),
):
    payload = await request.body()
    service = MercadoPagoWebhookService(get_provider_adapters(request)[BillingProvider.MERCADOPAGO])
    success, message, details = await service.process_webhook(
        payload, x_signature, x_request_id, query_data_id=data_id,
    )
    return _respond(BillingProvider.MERCADOPAGO, success, message, details)
