"""
Database initialization and connection management.

A single motor client is created at startup. Timestamps come back timezone
aware (UTC) so cursor comparisons against stored createdAt values are exact.
"""

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING
from orderledger.core.config import DatabaseConfig
from orderledger.core.exceptions import StoreError
from orderledger.core.monitoring import monitor_errors
from orderledger.models import EXPIRY_JOBS, SETTLEMENTS, TRANSACTIONS
import logging
import asyncio
from datetime import datetime, timezone
from tenacity import retry, stop_after_attempt, wait_exponential
from typing import Dict, Any

logger = logging.getLogger(__name__)

# Global database client instance
_db_client = None


async def ensure_indexes(database) -> None:
    """Create the indexes ledger reads and writes rely on."""
    transactions = database[TRANSACTIONS]
    await transactions.create_index([("odrId", ASCENDING)], unique=True, name="odrId_unique")
    await transactions.create_index([("createdAt", DESCENDING), ("_id", DESCENDING)], name="created_cursor")
    await transactions.create_index(
        [("odrStatus", ASCENDING), ("createdAt", ASCENDING)], name="status_created"
    )
    await transactions.create_index(
        [("isSentCallbackNotification", ASCENDING), ("updatedAt", ASCENDING)], name="notification_pending"
    )
    await database[EXPIRY_JOBS].create_index([("scheduledFor", ASCENDING)], name="scheduled_for")
    await database[SETTLEMENTS].create_index([("odrId", ASCENDING)], name="settlement_order")


@monitor_errors("database_init")
@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)
async def init_db(config: DatabaseConfig):
    """
    Connect to MongoDB and prepare the ledger collections.

    Returns:
        The default database of the configured URL

    Raises:
        StoreError: If the connection fails
    """
    global _db_client

    try:
        logger.info(
            f"Connecting to MongoDB (pool: min={config.min_pool_size}, "
            f"max={config.max_pool_size})"
        )

        client = AsyncIOMotorClient(
            config.url,
            maxPoolSize=config.max_pool_size,
            minPoolSize=config.min_pool_size,
            maxIdleTimeMS=config.max_idle_time_ms,
            serverSelectionTimeoutMS=config.server_selection_timeout_ms,
            connectTimeoutMS=config.connect_timeout_ms,
            socketTimeoutMS=config.socket_timeout_ms,
            retryWrites=config.retry_writes,
            w=config.write_concern,
            tz_aware=True,
        )

        try:
            await asyncio.wait_for(client.admin.command("ping"), timeout=5.0)
        except asyncio.TimeoutError:
            raise StoreError("Database connection timeout", operation="ping_test")

        database = client.get_default_database()
        await ensure_indexes(database)

        _db_client = client
        logger.info("MongoDB connected and ledger indexes ensured")
        return database

    except StoreError:
        raise
    except Exception as e:
        logger.error("Failed to initialize database", exc_info=True)
        raise StoreError("Database initialization failed", operation="init_db") from e


def get_database_client() -> AsyncIOMotorClient:
    """
    Get the database client instance.

    Raises:
        StoreError: If database is not initialized
    """
    if _db_client is None:
        raise StoreError("Database not initialized. Call init_db() first.", operation="get_client")
    return _db_client


async def close_database():
    """Close the database connection gracefully."""
    global _db_client

    if _db_client:
        _db_client.close()
        _db_client = None
        logger.info("Database connection closed")


async def health_check() -> Dict[str, Any]:
    """
    Perform database health check.

    Returns:
        Dict with health status information
    """
    try:
        client = get_database_client()
        await client.admin.command("ping")
        return {
            "status": "healthy",
            "database": "connected",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    except Exception as e:
        logger.warning(f"Database health check failed: {type(e).__name__}")
        return {
            "status": "unhealthy",
            "database": "disconnected",
            "error": type(e).__name__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
