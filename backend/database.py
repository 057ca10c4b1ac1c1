from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware: ordering guard compares stored last_provider_event_at with aware datetimes
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
        """Create MongoDB indexes for tenant-keyed lookups."""
        # One subscription per tenant. The ordering guard relies on this index,
        # so a failure here must stop startup.
        await self.db.subscriptions.create_index("tenant_id", unique=True)

        try:
            await self.db.subscriptions.create_index("external_order_id", sparse=True)

            # Tenant resolution: email -> profile -> membership
            await self.db.profiles.create_index("email")
            await self.db.profiles.create_index("id", unique=True, sparse=True)
            await self.db.tenant_members.create_index("user_id")
            await self.db.tenant_members.create_index("tenant_id")

            # Ledger + sales settings (read-only inputs)
            await self.db.transactions.create_index([("tenant_id", 1), ("status", 1)])
            try:
                await self.db.sales_config.create_index("tenant_id", unique=True)
            except Exception:
                pass  # Legacy data may hold duplicate rows

            # Audit log indexes - for timeline queries
            await self.db.audit_logs.create_index([("tenant_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])

            # Webhook delivery log
            await self.db.billing_webhook_events.create_index([("received_at", -1)])
            await self.db.billing_webhook_events.create_index([("tenant_id", 1), ("received_at", -1)])
            await self.db.billing_webhook_events.create_index([("outcome", 1), ("received_at", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

