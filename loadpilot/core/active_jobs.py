"""
In-memory registry of cluster jobs started by this process.

Maps a run id to what is needed to cancel or clean the job up. Not persisted; the
run coordinator rebuilds it at startup from RUNNING rows plus a cluster query.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Optional


@dataclass(frozen=True)
class ActiveJob:
    run_id: str
    scenario_id: str
    user_id: str
    job_name: str
    config_map_name: str
    registered_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class ActiveJobRegistry:
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._by_run: dict[str, ActiveJob] = {}
        self._log_tasks: dict[str, asyncio.Task] = {}

    async def add(self, job: ActiveJob) -> None:
        rid = str(job.run_id).strip()
        if not rid:
            return
        async with self._lock:
            self._by_run[rid] = replace(job, run_id=rid)

    async def get(self, run_id: str) -> Optional[ActiveJob]:
        rid = str(run_id).strip()
        if not rid:
            return None
        async with self._lock:
            return self._by_run.get(rid)

    async def contains(self, run_id: str) -> bool:
        return await self.get(run_id) is not None

    async def set_log_task(self, run_id: str, task: asyncio.Task) -> None:
        rid = str(run_id).strip()
        if not rid:
            return
        async with self._lock:
            self._log_tasks[rid] = task

    async def remove(self, run_id: str) -> Optional[ActiveJob]:
        """Drop the run and cancel its log-stream task, if any."""
        rid = str(run_id).strip()
        if not rid:
            return None
        async with self._lock:
            job = self._by_run.pop(rid, None)
            task = self._log_tasks.pop(rid, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        return job

    async def list_for_user(self, user_id: str) -> list[ActiveJob]:
        uid = str(user_id).strip()
        async with self._lock:
            return [j for j in self._by_run.values() if j.user_id == uid]

    async def snapshot(self) -> list[ActiveJob]:
        async with self._lock:
            return list(self._by_run.values())

    async def clear(self) -> list[asyncio.Task]:
        """Forget everything; returns the log tasks that were cancelled."""
        async with self._lock:
            tasks = list(self._log_tasks.values())
            self._by_run.clear()
            self._log_tasks.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
        return tasks
