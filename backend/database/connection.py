import logging
from typing import Any, Dict, List, Optional, Tuple
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase, AsyncIOMotorCollection
from pymongo.errors import PyMongoError
from config.settings import settings

logger = logging.getLogger(__name__)

# collection -> [(keys, index options)]
INDEXES: Dict[str, List[Tuple[Any, Dict[str, Any]]]] = {
    "telemedicine_sessions": [
        ("session_id", {"unique": True}),
        ("room_id", {"unique": True}),
        ([("patient_id", 1), ("scheduled_time", -1)], {}),
        ([("provider_id", 1), ("scheduled_time", -1)], {}),
        ("status", {}),
    ],
    # One finalize record per session in each outbox
    "billing_outbox": [("session_id", {"unique": True})],
    "records_outbox": [("session_id", {"unique": True})],
}

class DatabaseManager:
    """Singleton MongoDB connection shared by the repository and the outboxes"""

    _instance: Optional['DatabaseManager'] = None
    _client: Optional[AsyncIOMotorClient] = None
    _database: Optional[AsyncIOMotorDatabase] = None

    def __new__(cls) -> 'DatabaseManager':
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    async def connect(self) -> None:
        """Open the pooled client, verify it and ensure indexes"""
        if self._client is not None:
            return

        client = AsyncIOMotorClient(
            settings.mongo_url,
            maxPoolSize=settings.db_connection_pool_size,
            minPoolSize=1,
            maxIdleTimeMS=30000,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=10000,
            socketTimeoutMS=10000,
            tz_aware=True
        )
        try:
            await client.admin.command('ping')
        except PyMongoError as e:
            logger.error(f"Failed to connect to MongoDB at {settings.mongo_url}: {e}")
            client.close()
            raise

        self._client = client
        self._database = client[settings.db_name]
        await self._ensure_indexes()
        logger.info(f"Connected to MongoDB: {settings.db_name}")

    async def disconnect(self) -> None:
        """Close database connection"""
        if self._client:
            self._client.close()
            self._client = None
            self._database = None
            logger.info("Disconnected from MongoDB")

    async def ping(self) -> None:
        await self.database.command("ping")

    async def _ensure_indexes(self) -> None:
        for collection, indexes in INDEXES.items():
            for keys, options in indexes:
                try:
                    await self._database[collection].create_index(keys, **options)
                except PyMongoError as e:
                    logger.warning(f"Failed to create index {keys} on {collection}: {e}")
        logger.info("Database indexes ensured")

    @property
    def database(self) -> AsyncIOMotorDatabase:
        if self._database is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._database

    @property
    def telemedicine_sessions(self) -> AsyncIOMotorCollection:
        return self.database.telemedicine_sessions

    @property
    def billing_outbox(self) -> AsyncIOMotorCollection:
        return self.database.billing_outbox

    @property
    def records_outbox(self) -> AsyncIOMotorCollection:
        return self.database.records_outbox

# Global database manager instance
db_manager = DatabaseManager()

async def get_database() -> DatabaseManager:
    """Get database manager instance"""
    if db_manager._database is None:
        await db_manager.connect()
    return db_manager
