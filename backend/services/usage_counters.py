"""Live usage counts for quota checks. Never cached; recomputed on every call."""
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from database import database
from models import ResourceKind


def month_bounds(now: datetime) -> Tuple[datetime, datetime]:
    """Calendar month containing ``now`` on the server clock (UTC): [start, next_start)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        next_start = start.replace(year=start.year + 1, month=1)
    else:
        next_start = start.replace(month=start.month + 1)
    return start, next_start


class UsageCounters:

    async def count(
        self,
        tenant_id: str,
        kind: ResourceKind,
        now: Optional[datetime] = None,
    ) -> int:
        db = database.get_db()
        now = now or datetime.now(timezone.utc)

        if kind == ResourceKind.PATIENT:
            return await db.patients.count_documents({"tenant_id": tenant_id})
        if kind == ResourceKind.USER:
            return await db.users.count_documents({"tenant_id": tenant_id})

        start, next_start = month_bounds(now)
        if kind == ResourceKind.TRANSACTION:
            return await db.transactions.count_documents({
                "tenant_id": tenant_id,
                "created_at": {"$gte": start, "$lt": next_start},
            })
        if kind == ResourceKind.APPOINTMENT:
            return await db.appointments.count_documents({
                "tenant_id": tenant_id,
                "start_time": {"$gte": start, "$lt": next_start},
            })
        raise ValueError(f"Unknown resource kind: {kind}")

    async def snapshot(self, tenant_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
        return {
            kind.value: await self.count(tenant_id, kind, now=now)
            for kind in ResourceKind
        }


usage_counters = UsageCounters()
