"""
PostgreSQL Client for the token platform

Thin async wrapper over an asyncpg connection pool. Repositories hold one
client and wrap each statement in ``async with self.db:``; the pool is
created lazily on first entry and reused until ``close()``.

Usage:
    from core.postgres_client import get_postgres_client

    db = await get_postgres_client("token_service")

    async with db:
        rows = await db.query("SELECT * FROM token.plans WHERE plan_id = $1", [plan_id])
"""

import asyncio
import logging
import os
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger(__name__)


class AsyncPostgresClient:
    """
    Pooled asyncpg client.

    Rows come back as plain dicts. ``execute`` returns the number of rows
    the statement touched, parsed from the asyncpg status tag.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        user_id: Optional[str] = None,
        min_size: int = 1,
        max_size: int = 10,
        command_timeout: float = 30.0,
    ):
        self.host = host
        self.port = port
        self.database = database or os.getenv("POSTGRES_DB", "postgres")
        self.username = username or os.getenv("POSTGRES_USER", "postgres")
        self.password = password if password is not None else os.getenv("POSTGRES_PASSWORD", "postgres")
        self.user_id = user_id or "token_service"
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout

        self._pool: Optional[asyncpg.Pool] = None
        self._pool_lock = asyncio.Lock()

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            async with self._pool_lock:
                if self._pool is None:
                    self._pool = await asyncpg.create_pool(
                        host=self.host,
                        port=self.port,
                        user=self.username,
                        password=self.password,
                        database=self.database,
                        min_size=self.min_size,
                        max_size=self.max_size,
                        command_timeout=self.command_timeout,
                        server_settings={"application_name": self.user_id},
                    )
                    logger.info(f"PostgreSQL pool created: {self.host}:{self.port}/{self.database}")
        return self._pool

    async def __aenter__(self):
        """Async context manager entry"""
        await self._ensure_pool()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Connections return to the pool per statement; nothing to release"""
        return False

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return all rows"""
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(sql, *(params or []))
        return [dict(row) for row in rows]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return the first row, or None"""
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(sql, *(params or []))
        return dict(row) if row is not None else None

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> int:
        """Execute a statement and return the affected row count"""
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            status = await conn.execute(sql, *(params or []))
        return self._affected_rows(status)

    async def execute_script(self, sql: str) -> None:
        """Run a multi-statement script (DDL); no parameters allowed"""
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            await conn.execute(sql)

    async def health_check(self) -> Optional[Dict[str, Any]]:
        """Check database health"""
        try:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return {"healthy": True, "host": self.host, "database": self.database}
        except (OSError, asyncpg.PostgresError) as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return {"healthy": False, "error": str(e)}

    async def close(self):
        """Close the pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info(f"PostgreSQL pool closed for {self.user_id}")

    @staticmethod
    def _affected_rows(status: str) -> int:
        # asyncpg status tags look like "UPDATE 3", "INSERT 0 1", "DELETE 0"
        try:
            return int(str(status).rsplit(" ", 1)[-1])
        except (ValueError, IndexError):
            return 0


# Singleton instances per service
_postgres_clients: Dict[str, AsyncPostgresClient] = {}


async def get_postgres_client(
    service_name: str,
    host: Optional[str] = None,
    port: Optional[int] = None,
    database: Optional[str] = None,
    **kwargs,
) -> AsyncPostgresClient:
    """
    Get or create the PostgreSQL client of a service.

    Args:
        service_name: Service name
        host: Optional host override
        port: Optional port override
        database: Optional database override
        **kwargs: Additional client options

    Returns:
        AsyncPostgresClient instance
    """
    global _postgres_clients

    if service_name not in _postgres_clients:
        from core.config_manager import ConfigManager

        config = ConfigManager(service_name)
        discovered_host, discovered_port = config.discover_service(
            service_name="postgres_service",
            default_host="localhost",
            default_port=5432,
            env_host_key="POSTGRES_HOST",
            env_port_key="POSTGRES_PORT",
        )
        _postgres_clients[service_name] = AsyncPostgresClient(
            host=host or discovered_host,
            port=port or discovered_port,
            database=database,
            user_id=service_name,
            **kwargs,
        )
        logger.info(f"PostgreSQL client initialized for {service_name}")

    return _postgres_clients[service_name]


__all__ = ["AsyncPostgresClient", "get_postgres_client"]
