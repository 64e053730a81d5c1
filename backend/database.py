from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import OperationFailure
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

# Collections owned by a tenant; purged by the retention cascade.
TENANT_OWNED_COLLECTIONS = (
    "patients",
    "appointments",
    "transactions",
    "inventory_items",
    "prescriptions",
    "medical_records",
    "loyalty_accounts",
    "commissions",
    "crm_contacts",
    "checkout_sessions",
)

class Database:
    client: AsyncIOMotorClient = None
    db = None
    
    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")
            
            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise
    
    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")
    
    def get_db(self):
        return self.db
    
    async def _create_indexes(self):
        """Create MongoDB indexes for entitlement and billing lookups."""
        try:
            await self.db.tenants.create_index("tenant_id", unique=True)

            try:
                await self.db.users.create_index("email", unique=True)
            except OperationFailure:
                pass  # Index may already exist with different options
            await self.db.users.create_index("user_id", unique=True)
            await self.db.users.create_index("tenant_id")

            # One subscription per tenant
            await self.db.subscriptions.create_index("tenant_id", unique=True)
            await self.db.subscriptions.create_index("stripe_customer_id", sparse=True)
            await self.db.subscriptions.create_index("stripe_subscription_id", sparse=True)
            await self.db.subscriptions.create_index("mercadopago_preapproval_id", sparse=True)
            # Retention sweep candidates
            await self.db.subscriptions.create_index([("status", 1), ("end_date", 1)])

            # Usage counters (monthly windows)
            await self.db.patients.create_index("tenant_id")
            await self.db.transactions.create_index([("tenant_id", 1), ("created_at", 1)])
            await self.db.appointments.create_index([("tenant_id", 1), ("start_time", 1)])

            # Webhook idempotency - duplicate event ids must not process twice
            await self.db.provider_events.create_index(
                [("provider", 1), ("event_id", 1)], unique=True
            )
            await self.db.checkout_sessions.create_index("checkout_id", unique=True)
            await self.db.checkout_sessions.create_index("tenant_id")

            await self.db.audit_logs.create_index([("tenant_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

