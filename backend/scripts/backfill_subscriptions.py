"""
Backfill Subscriptions Script
Creates the signup subscription for tenants that never got one.

Issue: Tenants registered before subscriptions existed have no subscription row
Effect: They resolve to the free plan with no trial record to show in billing

Solution: Create the 14-day free trial anchored at the tenant's created_at.
Tenants whose trial window already passed get the row as canceled.

Usage:
    python scripts/backfill_subscriptions.py [--dry-run]
"""

import asyncio
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database
from services.subscription_service import subscription_service
from datetime import datetime, timezone
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def find_tenants_without_subscription():
    db = database.get_db()
    tenants = await db.tenants.find({}, {"_id": 0, "tenant_id": 1, "name": 1, "created_at": 1}).to_list(length=None)
    tenant_ids = [t["tenant_id"] for t in tenants]
    existing = await db.subscriptions.distinct("tenant_id", {"tenant_id": {"$in": tenant_ids}})
    existing = set(existing)
    return [t for t in tenants if t["tenant_id"] not in existing]


async def backfill_tenant(tenant: dict, now: datetime) -> str:
    """Create the trial row for one tenant. Returns the resulting status."""
    created_at = tenant.get("created_at") or now
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)

    record = await subscription_service.create_trial(tenant["tenant_id"], now=created_at)
    if record["end_date"] <= now:
        await subscription_service.mark_canceled(tenant["tenant_id"], now=record["end_date"])
        return "canceled"
    return record["status"]


async def main(dry_run: bool = False):
    logger.info("=" * 80)
    logger.info("SUBSCRIPTION BACKFILL")
    logger.info("=" * 80)

    await database.connect()
    try:
        tenants = await find_tenants_without_subscription()
        if not tenants:
            logger.info("No tenants without a subscription.")
            return

        logger.info(f"Found {len(tenants)} tenant(s) without a subscription")
        if dry_run:
            for tenant in tenants:
                logger.info(f"  - {tenant['tenant_id']} ({tenant.get('name', 'N/A')})")
            logger.info("Dry run: nothing written.")
            return

        now = datetime.now(timezone.utc)
        results = {"trialing": 0, "canceled": 0, "failed": 0}
        for tenant in tenants:
            try:
                status = await backfill_tenant(tenant, now)
                results[status] = results.get(status, 0) + 1
            except Exception as e:
                results["failed"] += 1
                logger.error(f"Backfill failed for tenant {tenant['tenant_id']}: {e}")

        logger.info("=" * 80)
        logger.info("BACKFILL COMPLETE")
        logger.info("=" * 80)
        logger.info(f"Trialing: {results['trialing']}")
        logger.info(f"Canceled (trial already lapsed): {results['canceled']}")
        logger.info(f"Failed: {results['failed']}")
    finally:
        await database.close()


if __name__ == "__main__":
    asyncio.run(main(dry_run="--dry-run" in sys.argv))
