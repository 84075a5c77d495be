"""
Postgres connection pool for run history, run metrics and schedulers.

Wraps an asyncpg pool with a retrying, lazily-run initialize (the database
container often comes up after the service does) and registers JSON codecs so
JSONB columns such as ``schedulers.config`` arrive as Python objects.
"""

import asyncio
import json
import logging
import random
import socket
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

import asyncpg
from asyncpg import Pool
from asyncpg.exceptions import CannotConnectNowError, TooManyConnectionsError

from loadpilot.config import settings

logger = logging.getLogger(__name__)

# Errors worth another attempt while the database is still starting.
RETRYABLE_CONNECT_ERRORS = (
    CannotConnectNowError,
    TooManyConnectionsError,
    ConnectionRefusedError,
    socket.gaierror,
    OSError,
)


async def _register_json_codecs(conn: asyncpg.Connection) -> None:
    for type_name in ("json", "jsonb"):
        await conn.set_type_codec(
            type_name,
            encoder=json.dumps,
            decoder=json.loads,
            schema="pg_catalog",
        )


class PostgresConnectionPool:
    """
    Lazily created asyncpg pool.

    Every query helper initializes the pool on first use, so the service can boot
    with the database down and recover once it is reachable.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_size: int = 2,
        max_size: int = 20,
        connect_attempts: int = 5,
        retry_delay: float = 1.0,
        command_timeout: float = 60.0,
        pool_name: str = "loadpilot",
    ):
        """
        Args:
            host: Database host
            port: Database port
            database: Database name
            user: Username
            password: Password
            min_size: Connections opened up front
            max_size: Upper bound on open connections
            connect_attempts: Pool creation attempts before giving up
            retry_delay: Base backoff between attempts, in seconds (grows linearly)
            command_timeout: Default statement timeout in seconds
            pool_name: Name used in log lines
        """
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_size = min_size
        self.max_size = max_size
        self.connect_attempts = max(1, int(connect_attempts))
        self.retry_delay = retry_delay
        self.command_timeout = command_timeout
        self.pool_name = pool_name

        self._pool: Optional[Pool] = None
        self._init_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls) -> "PostgresConnectionPool":
        return cls(
            host=settings.POSTGRES_HOST,
            port=settings.POSTGRES_PORT,
            database=settings.POSTGRES_DATABASE,
            user=settings.POSTGRES_USER,
            password=settings.POSTGRES_PASSWORD,
            min_size=settings.POSTGRES_POOL_MIN_SIZE,
            max_size=settings.POSTGRES_POOL_MAX_SIZE,
            connect_attempts=settings.POSTGRES_CONNECT_ATTEMPTS,
            retry_delay=settings.POSTGRES_CONNECT_RETRY_SECONDS,
            command_timeout=settings.POSTGRES_COMMAND_TIMEOUT_SECONDS,
        )

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self) -> None:
        """Create the pool (once); concurrent callers wait for the same attempt."""
        async with self._init_lock:
            if self._pool is not None:
                return
            self._pool = await self._create_pool()

    async def _create_pool(self) -> Pool:
        target = f"{self.user}@{self.host}:{self.port}/{self.database}"
        logger.info(
            f"[{self.pool_name}] Connecting to Postgres {target} "
            f"(pool size {self.min_size}-{self.max_size})"
        )

        for attempt in range(1, self.connect_attempts + 1):
            try:
                pool = await asyncpg.create_pool(
                    host=self.host,
                    port=self.port,
                    database=self.database,
                    user=self.user,
                    password=self.password,
                    min_size=self.min_size,
                    max_size=self.max_size,
                    command_timeout=self.command_timeout,
                    init=_register_json_codecs,
                )
            except RETRYABLE_CONNECT_ERRORS as e:
                if attempt >= self.connect_attempts:
                    logger.error(
                        f"[{self.pool_name}] Could not connect to {target} after "
                        f"{attempt} attempts: {type(e).__name__}: {e}"
                    )
                    raise
                delay = self.retry_delay * attempt + random.uniform(0, 0.5)
                logger.warning(
                    f"[{self.pool_name}] Postgres not reachable yet "
                    f"(attempt {attempt}/{self.connect_attempts}: {e}); "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                continue

            logger.info(f"[{self.pool_name}] Postgres pool ready")
            return pool

        raise RuntimeError("unreachable")

    @asynccontextmanager
    async def get_connection(self):
        """
        Acquire a pooled connection.

            async with pool.get_connection() as conn:
                async with conn.transaction():
                    ...
        """
        await self.initialize()
        assert self._pool is not None
        async with self._pool.acquire() as conn:
            yield conn

    async def execute_query(self, query: str, *args, timeout: Optional[float] = None) -> str:
        """Run a statement without a result set; returns the status tag, e.g. "UPDATE 1"."""
        async with self.get_connection() as conn:
            return await conn.execute(query, *args, timeout=timeout)

    async def execute_many(
        self, query: str, args_list: Sequence[tuple], timeout: Optional[float] = None
    ) -> None:
        async with self.get_connection() as conn:
            await conn.executemany(query, args_list, timeout=timeout)

    async def fetch_all(
        self, query: str, *args, timeout: Optional[float] = None
    ) -> List[asyncpg.Record]:
        async with self.get_connection() as conn:
            return await conn.fetch(query, *args, timeout=timeout)

    async def fetch_one(
        self, query: str, *args, timeout: Optional[float] = None
    ) -> Optional[asyncpg.Record]:
        async with self.get_connection() as conn:
            return await conn.fetchrow(query, *args, timeout=timeout)

    async def fetch_val(self, query: str, *args, timeout: Optional[float] = None) -> Any:
        async with self.get_connection() as conn:
            return await conn.fetchval(query, *args, timeout=timeout)

    async def is_healthy(self) -> bool:
        """True when the pool exists and answers ``SELECT 1``; never connects."""
        if self._pool is None:
            return False
        try:
            return await self.fetch_val("SELECT 1", timeout=5) == 1
        except Exception as e:
            logger.warning(f"[{self.pool_name}] Postgres health check failed: {e}")
            return False

    async def get_pool_stats(self) -> Dict[str, Any]:
        if self._pool is None:
            return {"initialized": False, "size": 0, "free": 0}
        size = self._pool.get_size()
        idle = self._pool.get_idle_size()
        return {
            "initialized": True,
            "min_size": self.min_size,
            "max_size": self.max_size,
            "size": size,
            "free": idle,
            "in_use": size - idle,
        }

    async def close(self) -> None:
        pool, self._pool = self._pool, None
        if pool is not None:
            await pool.close()
            logger.info(f"[{self.pool_name}] Postgres pool closed")


_default_pool: Optional[PostgresConnectionPool] = None


def get_default_pool() -> PostgresConnectionPool:
    """Process-wide pool built from settings (created on first call)."""
    global _default_pool
    if _default_pool is None:
        _default_pool = PostgresConnectionPool.from_settings()
    return _default_pool


async def close_default_pool() -> None:
    global _default_pool
    pool, _default_pool = _default_pool, None
    if pool is not None:
        await pool.close()
