"""
InfluxDB telemetry store connector.

k6 writes its samples here (``--out influxdb=...``); we only read them back, plus the
occasional direct write. The ``influxdb`` client is synchronous, so every call runs
on a dedicated thread pool.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any, Optional

from influxdb import InfluxDBClient

from loadpilot.config import settings

logger = logging.getLogger(__name__)


class TelemetryStoreClient:
    """
    Async query/write adapter for an InfluxDB 1.x database.

    Query results are flattened: each point becomes a dict and carries the tag
    values of the series it belongs to (``GROUP BY flow_id, step_id``).
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        database: str,
        username: str = "",
        password: str = "",
        timeout: float = 30.0,
        executor: Executor | None = None,
        owns_executor: bool = False,
        client: Optional[InfluxDBClient] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.database = database
        self._username = username
        self._password = password
        self._timeout = timeout
        self._executor = executor
        self._owns_executor = bool(owns_executor)
        self._client = client

    def _run_in_executor(self, func, *args):
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self._executor, func, *args)

    def _get_client(self) -> InfluxDBClient:
        if self._client is None:
            self._client = InfluxDBClient(
                host=self.host,
                port=self.port,
                username=self._username or None,
                password=self._password or None,
                database=self.database,
                timeout=self._timeout,
            )
            logger.info(
                "InfluxDB client initialized: %s:%s/%s", self.host, self.port, self.database
            )
        return self._client

    async def ensure_database(self) -> None:
        """Create the configured database if it does not exist yet."""

        def _ensure() -> bool:
            client = self._get_client()
            names = {db.get("name") for db in client.get_list_database()}
            if self.database in names:
                return False
            client.create_database(self.database)
            return True

        created = await self._run_in_executor(_ensure)
        if created:
            logger.info("Created InfluxDB database: %s", self.database)
        else:
            logger.info("InfluxDB database %s verified", self.database)

    async def query(
        self, query: str, bind_params: Optional[dict[str, Any]] = None
    ) -> list[dict[str, Any]]:
        """Run one InfluxQL statement and return its points as flat dicts."""

        def _query() -> list[dict[str, Any]]:
            result = self._get_client().query(
                query, bind_params=bind_params or None, database=self.database
            )
            rows: list[dict[str, Any]] = []
            for (_measurement, tags), points in result.items():
                for point in points:
                    row = dict(point)
                    if tags:
                        row.update(tags)
                    rows.append(row)
            return rows

        try:
            return await self._run_in_executor(_query)
        except Exception as e:
            logger.error("InfluxDB query failed: %s", e)
            raise

    async def write_metric(
        self,
        measurement: str,
        value: float,
        tags: Optional[dict[str, str]] = None,
        timestamp: Optional[datetime] = None,
    ) -> None:
        point = {
            "measurement": measurement,
            "tags": dict(tags or {}),
            "fields": {"value": float(value)},
            "time": (timestamp or datetime.now(UTC)).isoformat(),
        }

        def _write() -> bool:
            return self._get_client().write_points([point], database=self.database)

        try:
            await self._run_in_executor(_write)
        except Exception as e:
            logger.error(
                "Failed to write metric %s (tags=%s): %s", measurement, tags, e
            )
            raise

    async def ping(self) -> bool:
        try:
            await self._run_in_executor(lambda: self._get_client().ping())
            return True
        except Exception as e:
            logger.warning("InfluxDB ping failed: %s", e)
            return False

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                await self._run_in_executor(client.close)
            except Exception as e:
                logger.warning("Error closing InfluxDB client: %s", e)
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
            self._owns_executor = False


def build_telemetry_client() -> TelemetryStoreClient:
    executor = ThreadPoolExecutor(
        max_workers=max(1, int(settings.TELEMETRY_EXECUTOR_MAX_WORKERS)),
        thread_name_prefix="influx",
    )
    return TelemetryStoreClient(
        host=settings.INFLUXDB_HOST,
        port=settings.INFLUXDB_PORT,
        database=settings.INFLUXDB_DATABASE,
        username=settings.INFLUXDB_USERNAME,
        password=settings.INFLUXDB_PASSWORD,
        timeout=settings.INFLUXDB_TIMEOUT_SECONDS,
        executor=executor,
        owns_executor=True,
    )
