"""
Database connection and transaction management for casecore.

This module provides:
- MongoDB connection management with async support
- Client sessions for request-scoped transactions
- ``execute_write``, the only sanctioned way to run a mutating handler
- Soft delete indexes for registered collections
- Database health checking
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, TypeVar

import pymongo
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, ServerSelectionTimeoutError

from casecore.app.core.effect_recorder import RequestEffectContext
from casecore.app.core.exceptions import ErrorCode, raise_database_error, raise_transaction_required
from casecore.app.utils.logging import database_logger, get_logger, performance_context
from casecore.config.settings import DatabaseSettings, get_settings

logger = get_logger(__name__)

T = TypeVar("T")


class MongoDBManager:
    """
    MongoDB connection and lifecycle management.

    Provides the motor client and database handles, client sessions for
    transactions, and health checks.
    """

    def __init__(self, settings: Optional[DatabaseSettings] = None):
        """Initialize MongoDB manager."""
        self.settings = settings or get_settings().database
        self.client: Optional[AsyncIOMotorClient] = None
        self.database: Optional[AsyncIOMotorDatabase] = None
        self.is_connected: bool = False
        self._connection_lock = asyncio.Lock()

    async def connect(self) -> None:
        """
        Establish connection to MongoDB.

        Raises:
            DatabaseError: If connection fails
        """
        if self.is_connected:
            return

        async with self._connection_lock:
            if self.is_connected:
                return

            try:
                with performance_context("mongodb_connection"):
                    self.client = AsyncIOMotorClient(
                        self.settings.mongodb_url,
                        serverSelectionTimeoutMS=self.settings.server_selection_timeout_ms,
                        connectTimeoutMS=5000,
                        maxPoolSize=50,
                        minPoolSize=5,
                        retryWrites=True,
                        retryReads=True
                    )
                    self.database = self.client[self.settings.mongodb_database]

                    await self.client.admin.command('ping')
                    self.is_connected = True

                    database_logger.connection_established(
                        database_type="mongodb",
                        database_name=self.settings.mongodb_database
                    )

            except (ConnectionFailure, ServerSelectionTimeoutError) as e:
                database_logger.connection_failed("mongodb", str(e))
                raise_database_error(
                    f"Failed to connect to MongoDB: {e}",
                    database_type="mongodb",
                    operation="connect",
                    error_code=ErrorCode.DATABASE_CONNECTION_ERROR
                )

    async def disconnect(self) -> None:
        """Close MongoDB connection."""
        if self.client and self.is_connected:
            self.client.close()
            self.is_connected = False
            logger.info("MongoDB connection closed")

    async def start_session(self) -> Optional[AsyncIOMotorClientSession]:
        """
        Start a client session for one request.

        Returns:
            A new session, or None when not connected
        """
        if not self.is_connected or self.client is None:
            return None
        return await self.client.start_session()

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform MongoDB health check.

        Returns:
            Health status information
        """
        if not self.is_connected or not self.client:
            return {
                "status": "disconnected",
                "error": "Not connected to MongoDB"
            }

        try:
            start_time = time.time()
            await self.client.admin.command('ping')
            latency = (time.time() - start_time) * 1000

            return {
                "status": "healthy",
                "latency_ms": round(latency, 2),
            }
        except Exception as e:
            return {
                "status": "unhealthy",
                "error": str(e)
            }

    async def create_soft_delete_indexes(self, collection_names: Iterable[str]) -> None:
        """Index ``deleted_at`` on every soft-deletable collection."""
        database = self.get_database()

        try:
            with performance_context("mongodb_create_indexes"):
                for name in collection_names:
                    await database[name].create_index(
                        [("deleted_at", pymongo.ASCENDING)],
                        name="deleted_at_visibility"
                    )
                logger.info("Soft delete indexes ensured")
        except Exception as e:
            raise_database_error(
                f"Failed to create soft delete indexes: {e}",
                database_type="mongodb",
                operation="create_indexes"
            )

    def get_database(self) -> AsyncIOMotorDatabase:
        """
        Get the MongoDB database instance.

        Raises:
            DatabaseError: If not connected
        """
        if self.database is None:
            raise_database_error(
                "MongoDB not connected",
                database_type="mongodb",
                operation="get_database"
            )
        return self.database


async def execute_write(
    effects: Optional[RequestEffectContext],
    session: Any,
    fn: Callable[[Any], Awaitable[T]]
) -> T:
    """
    Run a mutating handler inside the request's transaction.

    ``effects.transaction_committed`` is set only after the commit returns,
    so effects buffered by ``fn`` are released on flush only when the
    writes persisted. Effects buffered by an attempt that the driver
    retries are dropped before the next attempt runs.

    Args:
        effects: The request's effect context
        session: Session opened by TransactionMiddleware
        fn: Coroutine function receiving the session

    Raises:
        TransactionError: If the request has no active transaction
    """
    if effects is None or not effects.transaction_active or session is None:
        raise_transaction_required(request_id=effects.request_id if effects else None)

    effects.transaction_committed = False
    mark = len(effects.effects)

    async def attempt(txn: Any) -> T:
        # with_transaction re-runs the callback after a transient error
        del effects.effects[mark:]
        return await fn(txn)

    result = await session.with_transaction(attempt)
    effects.transaction_committed = True
    return result

