"""
Postgres-backed repositories for scenarios, runs, run metrics and schedulers.

The run-history row is the single source of truth across restarts. A partial
unique index allows at most one RUNNING row per scenario, which makes concurrent
starts from different processes collide in the database rather than in memory.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Iterable, Optional
from uuid import uuid4

from asyncpg.exceptions import UniqueViolationError

from loadpilot.core.errors import AlreadyRunningError
from loadpilot.models.run_history import (
    AggregateMetrics,
    RunHistory,
    RunHistoryMetric,
    RunHistoryStatus,
)
from loadpilot.models.scenario import Scenario
from loadpilot.models.scheduler import CronConfig, Scheduler

logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS scenarios (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        vus INTEGER NOT NULL DEFAULT 1,
        duration INTEGER NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scenario_flows (
        id TEXT PRIMARY KEY,
        scenario_id TEXT NOT NULL REFERENCES scenarios(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        weight DOUBLE PRECISION NOT NULL DEFAULT 1,
        position INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scenario_steps (
        id TEXT PRIMARY KEY,
        flow_id TEXT NOT NULL REFERENCES scenario_flows(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        type TEXT NOT NULL,
        config JSONB NOT NULL DEFAULT '{}'::jsonb,
        position INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS run_histories (
        id TEXT PRIMARY KEY,
        scenario_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL,
        run_at TIMESTAMPTZ,
        end_at TIMESTAMPTZ,
        progress INTEGER NOT NULL DEFAULT 0,
        avg_response_time DOUBLE PRECISION,
        p95_response_time DOUBLE PRECISION,
        avg_throughput DOUBLE PRECISION,
        error_rate DOUBLE PRECISION,
        success_rate DOUBLE PRECISION,
        total_requests BIGINT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS run_histories_one_running_per_scenario
        ON run_histories (scenario_id) WHERE status = 'RUNNING'
    """,
    """
    CREATE INDEX IF NOT EXISTS run_histories_scenario_created
        ON run_histories (scenario_id, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS run_history_metrics (
        run_history_id TEXT NOT NULL REFERENCES run_histories(id) ON DELETE CASCADE,
        flow_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        avg_response_time DOUBLE PRECISION NOT NULL DEFAULT 0,
        p95_response_time DOUBLE PRECISION NOT NULL DEFAULT 0,
        avg_throughput DOUBLE PRECISION NOT NULL DEFAULT 0,
        error_rate DOUBLE PRECISION NOT NULL DEFAULT 0,
        success_rate DOUBLE PRECISION NOT NULL DEFAULT 1,
        total_requests BIGINT NOT NULL DEFAULT 0,
        PRIMARY KEY (run_history_id, flow_id, step_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schedulers (
        id TEXT PRIMARY KEY,
        scenario_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        time_start TIMESTAMPTZ,
        time_end TIMESTAMPTZ,
        timezone TEXT NOT NULL DEFAULT 'UTC',
        cron_expression TEXT NOT NULL,
        config JSONB NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


async def ensure_schema(pool) -> None:
    """Create tables and indexes if they do not exist."""
    async with pool.get_connection() as conn:
        async with conn.transaction():
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(statement)
    logger.info("Database schema verified (%d statements)", len(SCHEMA_STATEMENTS))


def _now() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Scenarios (read-only)
# ============================================================================


class ScenarioRepository:
    def __init__(self, pool) -> None:
        self._pool = pool

    async def find_one(self, scenario_id: str, user_id: str) -> Optional[Scenario]:
        """Scenario with ordered flows/steps, or None if absent or not owned."""
        row = await self._pool.fetch_one(
            """
            SELECT id, user_id, name, vus, duration
            FROM scenarios
            WHERE id = $1 AND user_id = $2
            """,
            scenario_id,
            user_id,
        )
        if row is None:
            return None

        flow_rows = await self._pool.fetch_all(
            """
            SELECT id, name, weight
            FROM scenario_flows
            WHERE scenario_id = $1
            ORDER BY position, id
            """,
            scenario_id,
        )
        step_rows = await self._pool.fetch_all(
            """
            SELECT s.id, s.flow_id, s.name, s.type, s.config
            FROM scenario_steps s
            JOIN scenario_flows f ON f.id = s.flow_id
            WHERE f.scenario_id = $1
            ORDER BY s.position, s.id
            """,
            scenario_id,
        )

        steps_by_flow: dict[str, list[dict[str, Any]]] = {}
        for step in step_rows:
            steps_by_flow.setdefault(step["flow_id"], []).append(
                {
                    "id": step["id"],
                    "name": step["name"],
                    "type": step["type"],
                    "config": step["config"],
                }
            )

        return Scenario.model_validate(
            {
                "id": row["id"],
                "user_id": row["user_id"],
                "name": row["name"],
                "vus": row["vus"],
                "duration": row["duration"],
                "flows": [
                    {
                        "id": flow["id"],
                        "name": flow["name"],
                        "weight": flow["weight"],
                        "steps": steps_by_flow.get(flow["id"], []),
                    }
                    for flow in flow_rows
                ],
            }
        )


# ============================================================================
# Run histories
# ============================================================================


_RUN_COLUMNS = """
    id, scenario_id, user_id, status, run_at, end_at, progress,
    avg_response_time, p95_response_time, avg_throughput, error_rate,
    success_rate, total_requests, created_at
"""


def _row_to_run(row) -> RunHistory:
    metrics = None
    if row["total_requests"] is not None:
        metrics = AggregateMetrics(
            avg_response_time=row["avg_response_time"] or 0.0,
            p95_response_time=row["p95_response_time"] or 0.0,
            avg_throughput=row["avg_throughput"] or 0.0,
            error_rate=row["error_rate"] or 0.0,
            success_rate=row["success_rate"] if row["success_rate"] is not None else 1.0,
            total_requests=row["total_requests"],
        )
    return RunHistory(
        id=row["id"],
        scenario_id=row["scenario_id"],
        user_id=row["user_id"],
        status=RunHistoryStatus(row["status"]),
        run_at=row["run_at"],
        end_at=row["end_at"],
        progress=row["progress"] or 0,
        metrics=metrics,
        created_at=row["created_at"],
    )


class RunHistoryRepository:
    def __init__(self, pool) -> None:
        self._pool = pool

    async def create(self, scenario_id: str, user_id: str) -> RunHistory:
        """
        Insert a new RUNNING row.

        Raises:
            AlreadyRunningError: another RUNNING row exists for the scenario.
        """
        try:
            row = await self._pool.fetch_one(
                f"""
                INSERT INTO run_histories (id, scenario_id, user_id, status)
                VALUES ($1, $2, $3, 'RUNNING')
                RETURNING {_RUN_COLUMNS}
                """,
                str(uuid4()),
                scenario_id,
                user_id,
            )
        except UniqueViolationError as e:
            raise AlreadyRunningError(scenario_id) from e
        return _row_to_run(row)

    async def get(self, run_id: str) -> Optional[RunHistory]:
        row = await self._pool.fetch_one(
            f"SELECT {_RUN_COLUMNS} FROM run_histories WHERE id = $1", run_id
        )
        return _row_to_run(row) if row is not None else None

    async def find_running(self, scenario_id: str, user_id: str) -> Optional[RunHistory]:
        row = await self._pool.fetch_one(
            f"""
            SELECT {_RUN_COLUMNS} FROM run_histories
            WHERE scenario_id = $1 AND user_id = $2 AND status = 'RUNNING'
            ORDER BY created_at DESC
            LIMIT 1
            """,
            scenario_id,
            user_id,
        )
        return _row_to_run(row) if row is not None else None

    async def find_running_all(self, scenario_id: str) -> list[RunHistory]:
        rows = await self._pool.fetch_all(
            f"""
            SELECT {_RUN_COLUMNS} FROM run_histories
            WHERE scenario_id = $1 AND status = 'RUNNING'
            ORDER BY created_at
            """,
            scenario_id,
        )
        return [_row_to_run(r) for r in rows]

    async def list_running(self) -> list[RunHistory]:
        rows = await self._pool.fetch_all(
            f"""
            SELECT {_RUN_COLUMNS} FROM run_histories
            WHERE status = 'RUNNING'
            ORDER BY created_at
            """
        )
        return [_row_to_run(r) for r in rows]

    async def find_latest(self, scenario_id: str) -> Optional[RunHistory]:
        row = await self._pool.fetch_one(
            f"""
            SELECT {_RUN_COLUMNS} FROM run_histories
            WHERE scenario_id = $1
            ORDER BY created_at DESC
            LIMIT 1
            """,
            scenario_id,
        )
        return _row_to_run(row) if row is not None else None

    async def restart(self, run_id: str) -> Optional[RunHistory]:
        """Reset a stale RUNNING row so it can be reused for a fresh job."""
        row = await self._pool.fetch_one(
            f"""
            UPDATE run_histories
            SET run_at = NULL, end_at = NULL, progress = 0, updated_at = now()
            WHERE id = $1 AND status = 'RUNNING'
            RETURNING {_RUN_COLUMNS}
            """,
            run_id,
        )
        return _row_to_run(row) if row is not None else None

    async def update_start(self, run_id: str, run_at: datetime) -> Optional[RunHistory]:
        row = await self._pool.fetch_one(
            f"""
            UPDATE run_histories
            SET run_at = $2, updated_at = now()
            WHERE id = $1 AND status = 'RUNNING'
            RETURNING {_RUN_COLUMNS}
            """,
            run_id,
            run_at,
        )
        return _row_to_run(row) if row is not None else None

    async def update_progress(self, run_id: str, progress: int) -> None:
        await self._pool.execute_query(
            """
            UPDATE run_histories
            SET progress = $2, updated_at = now()
            WHERE id = $1 AND status = 'RUNNING' AND progress < $2
            """,
            run_id,
            int(progress),
        )

    async def mark_terminal(
        self,
        run_id: str,
        status: RunHistoryStatus,
        run_at: Optional[datetime],
        end_at: Optional[datetime],
    ) -> Optional[RunHistory]:
        """
        Move a RUNNING row to ``status``.

        Returns None when the row is already terminal, so the first writer wins.
        """
        if not RunHistoryStatus(status).is_terminal:
            raise ValueError(f"{status} is not a terminal status")
        row = await self._pool.fetch_one(
            f"""
            UPDATE run_histories
            SET status = $2,
                run_at = COALESCE($3, run_at),
                end_at = $4,
                progress = CASE WHEN $2 = 'SUCCESS' THEN 100 ELSE progress END,
                updated_at = now()
            WHERE id = $1 AND status = 'RUNNING'
            RETURNING {_RUN_COLUMNS}
            """,
            run_id,
            RunHistoryStatus(status).value,
            run_at,
            end_at,
        )
        return _row_to_run(row) if row is not None else None

    async def update_metrics(self, run_id: str, metrics: AggregateMetrics) -> None:
        await self._pool.execute_query(
            """
            UPDATE run_histories
            SET avg_response_time = $2,
                p95_response_time = $3,
                avg_throughput = $4,
                error_rate = $5,
                success_rate = $6,
                total_requests = $7,
                updated_at = now()
            WHERE id = $1
            """,
            run_id,
            metrics.avg_response_time,
            metrics.p95_response_time,
            metrics.avg_throughput,
            metrics.error_rate,
            metrics.success_rate,
            metrics.total_requests,
        )


class RunHistoryMetricRepository:
    def __init__(self, pool) -> None:
        self._pool = pool

    async def create_many(self, run_id: str, rows: Iterable[RunHistoryMetric]) -> int:
        args = [
            (
                run_id,
                r.flow_id,
                r.step_id,
                r.avg_response_time,
                r.p95_response_time,
                r.avg_throughput,
                r.error_rate,
                r.success_rate,
                r.total_requests,
            )
            for r in rows
        ]
        if not args:
            return 0
        await self._pool.execute_many(
            """
            INSERT INTO run_history_metrics (
                run_history_id, flow_id, step_id, avg_response_time,
                p95_response_time, avg_throughput, error_rate, success_rate,
                total_requests
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            ON CONFLICT (run_history_id, flow_id, step_id) DO UPDATE SET
                avg_response_time = EXCLUDED.avg_response_time,
                p95_response_time = EXCLUDED.p95_response_time,
                avg_throughput = EXCLUDED.avg_throughput,
                error_rate = EXCLUDED.error_rate,
                success_rate = EXCLUDED.success_rate,
                total_requests = EXCLUDED.total_requests
            """,
            args,
        )
        return len(args)


# ============================================================================
# Schedulers
# ============================================================================


_SCHEDULER_COLUMNS = """
    id, scenario_id, user_id, time_start, time_end, timezone, cron_expression,
    config, is_active, created_at, updated_at
"""

_SCHEDULER_UPDATABLE = (
    "time_start",
    "time_end",
    "timezone",
    "cron_expression",
    "config",
    "is_active",
)


def _row_to_scheduler(row) -> Scheduler:
    return Scheduler(
        id=row["id"],
        scenario_id=row["scenario_id"],
        user_id=row["user_id"],
        time_start=row["time_start"],
        time_end=row["time_end"],
        timezone=row["timezone"],
        cron_expression=row["cron_expression"],
        config=CronConfig.model_validate(row["config"]),
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SchedulerRepository:
    def __init__(self, pool) -> None:
        self._pool = pool

    async def find_active(self) -> list[Scheduler]:
        rows = await self._pool.fetch_all(
            f"SELECT {_SCHEDULER_COLUMNS} FROM schedulers WHERE is_active ORDER BY created_at"
        )
        return [_row_to_scheduler(r) for r in rows]

    async def find_for_user(self, user_id: str) -> list[Scheduler]:
        rows = await self._pool.fetch_all(
            f"""
            SELECT {_SCHEDULER_COLUMNS} FROM schedulers
            WHERE user_id = $1
            ORDER BY created_at DESC
            """,
            user_id,
        )
        return [_row_to_scheduler(r) for r in rows]

    async def find_user_scheduler(
        self, scheduler_id: str, user_id: str
    ) -> Optional[Scheduler]:
        row = await self._pool.fetch_one(
            f"SELECT {_SCHEDULER_COLUMNS} FROM schedulers WHERE id = $1 AND user_id = $2",
            scheduler_id,
            user_id,
        )
        return _row_to_scheduler(row) if row is not None else None

    async def get(self, scheduler_id: str) -> Optional[Scheduler]:
        row = await self._pool.fetch_one(
            f"SELECT {_SCHEDULER_COLUMNS} FROM schedulers WHERE id = $1", scheduler_id
        )
        return _row_to_scheduler(row) if row is not None else None

    async def create(
        self,
        *,
        scenario_id: str,
        user_id: str,
        time_start: Optional[datetime],
        time_end: Optional[datetime],
        timezone: str,
        cron_expression: str,
        config: CronConfig,
        is_active: bool,
    ) -> Scheduler:
        row = await self._pool.fetch_one(
            f"""
            INSERT INTO schedulers (
                id, scenario_id, user_id, time_start, time_end, timezone,
                cron_expression, config, is_active
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
            RETURNING {_SCHEDULER_COLUMNS}
            """,
            str(uuid4()),
            scenario_id,
            user_id,
            time_start,
            time_end,
            timezone,
            cron_expression,
            config.model_dump(mode="json", exclude_none=True),
            bool(is_active),
        )
        return _row_to_scheduler(row)

    async def update(self, scheduler_id: str, **fields: Any) -> Optional[Scheduler]:
        """Update the given columns; unknown column names raise ValueError."""
        unknown = set(fields) - set(_SCHEDULER_UPDATABLE)
        if unknown:
            raise ValueError(f"Unknown scheduler fields: {sorted(unknown)}")
        if not fields:
            return await self.get(scheduler_id)

        assignments: list[str] = []
        params: list[Any] = [scheduler_id]
        for name in _SCHEDULER_UPDATABLE:
            if name not in fields:
                continue
            value = fields[name]
            params.append(value)
            if name == "config":
                if isinstance(value, CronConfig):
                    params[-1] = value.model_dump(mode="json", exclude_none=True)
                assignments.append(f"config = ${len(params)}::jsonb")
            else:
                assignments.append(f"{name} = ${len(params)}")

        row = await self._pool.fetch_one(
            f"""
            UPDATE schedulers
            SET {", ".join(assignments)}, updated_at = now()
            WHERE id = $1
            RETURNING {_SCHEDULER_COLUMNS}
            """,
            *params,
        )
        return _row_to_scheduler(row) if row is not None else None

    async def set_active(self, scheduler_id: str, is_active: bool) -> None:
        await self._pool.execute_query(
            "UPDATE schedulers SET is_active = $2, updated_at = now() WHERE id = $1",
            scheduler_id,
            bool(is_active),
        )

    async def delete(self, scheduler_id: str) -> bool:
        status = await self._pool.execute_query(
            "DELETE FROM schedulers WHERE id = $1", scheduler_id
        )
        return str(status or "").strip().endswith(" 1")
