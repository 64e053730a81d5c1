"""Webhook idempotency ledger (``provider_events`` collection).

Every provider event is recorded by (provider, event_id) before it is
handled. An event already marked PROCESSED is skipped; a FAILED one may be
retried by the provider and is processed again.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from pymongo.errors import DuplicateKeyError

from database import database
from models import BillingProvider

logger = logging.getLogger(__name__)

STATUS_PROCESSING = "PROCESSING"
STATUS_PROCESSED = "PROCESSED"
STATUS_FAILED = "FAILED"


class ProviderEventLedger:

    async def begin(
        self,
        provider: BillingProvider,
        event_id: str,
        event_type: Optional[str],
        raw_minimal: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Record the event as PROCESSING. Returns False if it must be skipped."""
        db = database.get_db()
        key = {"provider": provider.value, "event_id": event_id}
        existing = await db.provider_events.find_one(key, {"_id": 0})

        if existing and existing.get("status") == STATUS_PROCESSED:
            logger.info("Event %s/%s already processed - skipping", provider.value, event_id)
            return False

        record = {
            **key,
            "type": event_type,
            "received_at": datetime.now(timezone.utc),
            "processed_at": None,
            "status": STATUS_PROCESSING,
            "error": None,
            "tenant_id": None,
            "raw_minimal": raw_minimal or {},
        }
        if existing:
            await db.provider_events.update_one(key, {"$set": record})
            return True

        try:
            await db.provider_events.insert_one(record)
        except DuplicateKeyError:
            logger.info("Event %s/%s duplicate insert (race) - skipping", provider.value, event_id)
            return False
        return True

    async def mark_processed(
        self,
        provider: BillingProvider,
        event_id: str,
        tenant_id: Optional[str] = None,
    ) -> None:
        db = database.get_db()
        await db.provider_events.update_one(
            {"provider": provider.value, "event_id": event_id},
            {"$set": {
                "status": STATUS_PROCESSED,
                "processed_at": datetime.now(timezone.utc),
                "tenant_id": tenant_id,
            }},
        )

    async def mark_failed(self, provider: BillingProvider, event_id: str, error: str) -> None:
        db = database.get_db()
        await db.provider_events.update_one(
            {"provider": provider.value, "event_id": event_id},
            {"$set": {
                "status": STATUS_FAILED,
                "processed_at": datetime.now(timezone.utc),
                "error": error[:1000],
            }},
        )


provider_event_ledger = ProviderEventLedger()
