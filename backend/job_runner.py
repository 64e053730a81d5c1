"""
Shared job runner for scheduled background jobs.
Used by the server scheduler and by the maintenance scripts.
Each run_* returns a dict with "message" and the job's counters.
"""
import logging

logger = logging.getLogger(__name__)


async def run_expired_data_retention():
    try:
        from services.retention import ExpiredDataRetentionJob
        result = await ExpiredDataRetentionJob().sweep()
        logger.info(
            f"Expired data retention completed: {result['deleted_count']} tenants purged, "
            f"{result['error_count']} errors"
        )
        return {"message": f"Tenants purged: {result['deleted_count']}", **result}
    except Exception as e:
        logger.error(f"Expired data retention job failed: {e}")
        raise


async def run_scheduled_cancellations():
    """Finalize MercadoPago cancellations scheduled for the end of the period."""
    try:
        from services.billing_providers.mercadopago_adapter import (
            MercadoPagoAdapter,
            load_mercadopago_settings,
        )
        adapter = MercadoPagoAdapter(load_mercadopago_settings())
        result = await adapter.finalize_due_cancellations()
        logger.info(
            f"Scheduled cancellation finalizer completed: {result['canceled_count']} canceled, "
            f"{result['error_count']} errors"
        )
        return {"message": f"Subscriptions canceled: {result['canceled_count']}", **result}
    except Exception as e:
        logger.error(f"Scheduled cancellation finalizer failed: {e}")
        raise
