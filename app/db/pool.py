# app/db/pool.py
"""
PostgreSQL connection pool manager using psycopg_pool.
Shared by the web tier (request handlers, diagnostics) and the mail scheduler worker process.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class DatabasePoolManager:
    """
    Database connection pool manager.

    Each process (web server, mail scheduler worker) owns its own pool;
    initialize() on startup, close() on shutdown.
    """

    def __init__(self, application_name: str = "account-portal"):
        self.pool: AsyncConnectionPool | None = None
        self.application_name = application_name
        self._initialized = False
        self._closed = False

    async def initialize(self) -> None:
        """Initialize the connection pool on process startup."""
        if self._initialized:
            logger.warning("Database pool already initialized")
            return

        if self._closed:
            raise RuntimeError("Cannot reinitialize closed pool")

        try:
            logger.info("Initializing database connection pool", application=self.application_name)

            pool_config = self._get_pool_config()

            self.pool = AsyncConnectionPool(
                conninfo=settings.DATABASE_URL,
                open=False,  # opened explicitly below
                **pool_config,
            )

            await self.pool.open()
            await self.pool.wait()

            # Mark as initialized before testing connections (connection() checks this flag)
            self._initialized = True

            await self._test_pool_connections()

            logger.info(
                "Database pool initialized successfully",
                min_size=pool_config["min_size"],
                max_size=pool_config["max_size"],
                timeout=pool_config["timeout"],
            )

        except Exception as e:
            logger.error("Failed to initialize database pool", error=str(e))
            self._initialized = False
            if self.pool:
                try:
                    await self.pool.close()
                except Exception:
                    pass  # Ignore errors during cleanup
                self.pool = None
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

    def _get_pool_config(self) -> dict[str, Any]:
        """Pool configuration from settings plus psycopg-specific hooks."""
        config = settings.get_db_pool_config()

        config.update(
            {
                "check": AsyncConnectionPool.check_connection,
                "configure": self._configure_connection,
            }
        )

        return config

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        """Configure each new connection from the pool."""
        try:
            conn.row_factory = dict_row

            # Autocommit: every repository statement is its own unit of work
            await conn.set_autocommit(True)

            app_name = f"{self.application_name}-{settings.environment}"
            await conn.execute(sql.SQL("SET application_name = {}").format(sql.Literal(app_name)))
            await conn.execute("SET timezone = 'UTC'")
            await conn.execute("SET statement_timeout = '60s'")

        except Exception:
            logger.exception("Failed to configure database connection")

    async def _test_pool_connections(self) -> None:
        """Test that pool connections work properly."""
        try:
            async with self.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1")
                    row = await cur.fetchone()
                    result = list(row.values())[0] if isinstance(row, dict) else row[0]
                if result != 1:
                    raise RuntimeError("Database connection test failed - got unexpected result")

            logger.debug("Database pool connection test passed")

        except Exception as e:
            logger.error("Database pool connection test failed", error=str(e))
            raise

    async def close(self) -> None:
        """Close the connection pool gracefully."""
        if not self._initialized or self._closed:
            return

        try:
            logger.info("Closing database connection pool")

            if self.pool:
                await asyncio.wait_for(self.pool.close(), timeout=30.0)

            self._initialized = False
            self._closed = True

            logger.info("Database pool closed successfully")

        except TimeoutError:
            logger.warning("Database pool close timed out, forcing shutdown")
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """
        Get a connection from the pool.

        Usage:
            async with db_pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1")
        """
        if not self._initialized:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")

        if self._closed:
            raise RuntimeError("Database pool is closed")

        try:
            async with self.pool.connection() as conn:
                yield conn

        except Exception as e:
            logger.error("Database connection error", error=str(e), error_type=type(e).__name__)
            raise

    async def health_check(self) -> dict[str, Any]:
        """
        Health check for the database pool.

        Returns:
            dict: Health status with basic pool statistics
        """
        if not self._initialized:
            return {"healthy": False, "error": "Pool not initialized", "service": "database_pool"}

        if self._closed:
            return {"healthy": False, "error": "Pool is closed", "service": "database_pool"}

        try:
            stats = self.pool.get_stats()
            start_time = time.time()

            async with self.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1")
                    await cur.fetchone()

            connection_time_ms = (time.time() - start_time) * 1000

            return {
                "healthy": True,
                "service": "database_pool",
                "connection_time_ms": round(connection_time_ms, 2),
                "pool_stats": {
                    "pool_size": stats.get("pool_size", 0),
                    "pool_available": stats.get("pool_available", 0),
                    "requests_waiting": stats.get("requests_waiting", 0),
                },
            }

        except Exception as e:
            logger.error("Database pool health check failed", error=str(e))
            return {
                "healthy": False,
                "service": "database_pool",
                "error": str(e),
                "error_type": type(e).__name__,
            }


# Global pool instance
db_pool = DatabasePoolManager()


# Convenience functions for easy imports
async def get_db_connection():
    """Get database connection from pool."""
    return db_pool.connection()


async def db_health_check() -> dict[str, Any]:
    """Get database pool health status."""
    return await db_pool.health_check()
