"""
Run lifecycle: start, supervise, stop.

States are RUNNING -> SUCCESS | FAILED | ABORTED. The run-history row is the single
source of truth; the active-job registry is a per-process cache rebuilt by
``reconcile`` at startup.

Starting is idempotent: a scenario whose RUNNING run still has a cluster job gets
that run back. Concurrent starts for the same (scenario, user) in one process
share a single in-flight attempt; across processes the partial unique index on
``run_histories`` makes the loser re-read the winner's row.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import UTC, datetime
from typing import Callable, Optional

from loadpilot.core.active_jobs import ActiveJob, ActiveJobRegistry
from loadpilot.core.errors import (
    AlreadyRunningError,
    ClusterOperationError,
    NotFoundError,
    RunStartError,
    RunStoppedError,
)
from loadpilot.core.job_orchestrator import (
    JobOrchestrator,
    config_map_name_for,
    job_name_for,
)
from loadpilot.core.metrics_engine import MetricsEngine
from loadpilot.core.repositories import (
    RunHistoryMetricRepository,
    RunHistoryRepository,
    ScenarioRepository,
)
from loadpilot.core.run_log_stream import ProgressTracker
from loadpilot.core.script_generator import generate_script
from loadpilot.core.status_fanout import StatusFanout
from loadpilot.models.run_history import RunHistory, RunHistoryStatus, StatusEvent
from loadpilot.models.scenario import Scenario

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def _clamp_end(run_at: Optional[datetime], end_at: datetime) -> datetime:
    if run_at is not None and end_at < run_at:
        return run_at
    return end_at


class RunCoordinator:
    def __init__(
        self,
        *,
        scenarios: ScenarioRepository,
        runs: RunHistoryRepository,
        run_metrics: RunHistoryMetricRepository,
        orchestrator: JobOrchestrator,
        metrics: MetricsEngine,
        fanout: StatusFanout,
        active_jobs: Optional[ActiveJobRegistry] = None,
        script_generator: Callable[[Scenario, str], str] = generate_script,
    ) -> None:
        self._scenarios = scenarios
        self._runs = runs
        self._run_metrics = run_metrics
        self._orchestrator = orchestrator
        self._metrics = metrics
        self._fanout = fanout
        self.active_jobs = active_jobs or ActiveJobRegistry()
        self._generate_script = script_generator

        self._lock = asyncio.Lock()
        self._pending: dict[tuple[str, str], asyncio.Task] = {}
        self._background_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Background task bookkeeping
    # ------------------------------------------------------------------

    def _track_task(self, task: asyncio.Task) -> None:
        self._background_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Run background task failed: %s", exc, exc_info=exc)

        task.add_done_callback(_done)

    def _forget_pending(self, key: tuple[str, str], task: asyncio.Task) -> None:
        if self._pending.get(key) is task:
            self._pending.pop(key, None)
        if not task.cancelled():
            # Retrieved by the awaiting callers; mark it seen for the loop.
            task.exception()

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(self, scenario_id: str, user_id: str) -> RunHistory:
        """
        Start (or return the already running) run of a scenario.

        Raises:
            NotFoundError: scenario absent or not owned by ``user_id``.
            RunStartError: setup failed; the run was marked FAILED.
            RunStoppedError: a concurrent stop aborted the run during setup.
        """
        key = (str(scenario_id).strip(), str(user_id).strip())
        async with self._lock:
            task = self._pending.get(key)
            if task is None:
                task = asyncio.create_task(
                    self._start(*key), name=f"run-start:{key[0]}"
                )
                self._pending[key] = task
                task.add_done_callback(functools.partial(self._forget_pending, key))
        return await asyncio.shield(task)

    async def _job_still_present(self, run_id: str) -> bool:
        if await self.active_jobs.contains(run_id):
            return True
        try:
            return await self._orchestrator.job_exists(run_id)
        except ClusterOperationError as e:
            # Unknown; do not risk a second job for the scenario.
            logger.warning("Could not check job for run %s: %s", run_id, e)
            return True

    async def _start(self, scenario_id: str, user_id: str) -> RunHistory:
        existing = await self._runs.find_running(scenario_id, user_id)
        if existing is not None:
            if await self._job_still_present(existing.id):
                logger.info(
                    "Scenario %s already running as %s; returning it",
                    scenario_id,
                    existing.id,
                )
                return existing
            logger.warning(
                "Run %s is RUNNING but its job is gone; recreating the job",
                existing.id,
            )

        scenario = await self._scenarios.find_one(scenario_id, user_id)
        if scenario is None:
            raise NotFoundError(f"Scenario {scenario_id} not found")

        if existing is not None:
            run = await self._runs.restart(existing.id) or existing
        else:
            try:
                run = await self._runs.create(scenario_id, user_id)
            except AlreadyRunningError:
                current = await self._runs.find_running(scenario_id, user_id)
                if current is None:
                    raise
                logger.info(
                    "Scenario %s was started concurrently as %s", scenario_id, current.id
                )
                return current

        return await self._launch(scenario, run)

    async def _launch(self, scenario: Scenario, run: RunHistory) -> RunHistory:
        rid = run.id
        logger.info("Starting run %s for scenario %s", rid, scenario.id)
        try:
            script = self._generate_script(scenario, rid)
            job_name = await self._orchestrator.submit(
                rid, scenario.id, run.user_id, script
            )
            await self.active_jobs.add(
                ActiveJob(
                    run_id=rid,
                    scenario_id=scenario.id,
                    user_id=run.user_id,
                    job_name=job_name,
                    config_map_name=config_map_name_for(rid),
                )
            )
            await self._orchestrator.wait_until_ready(rid)
            run_at = await self._metrics.get_run_at(rid)
            started = await self._runs.update_start(rid, run_at)
        except Exception as e:
            if await self._fail_start(run, e) is None and await self._finalized(rid):
                raise RunStoppedError(
                    f"Load test for scenario {scenario.id} was stopped while starting"
                ) from e
            raise RunStartError(
                f"Failed to start load test for scenario {scenario.id}"
            ) from e

        if started is None:
            # update_start only matches RUNNING rows: a stop won the race.
            logger.info("Run %s was stopped while starting; discarding its job", rid)
            await self._discard_job(rid)
            raise RunStoppedError(
                f"Load test for scenario {scenario.id} was stopped while starting"
            )

        await self._fanout.publish(StatusEvent.from_run(started))
        await self._attach_watchers(started)
        logger.info("Run %s is RUNNING (runAt=%s)", rid, started.run_at)
        return started

    async def _discard_job(self, run_id: str) -> None:
        await self._orchestrator.cancel_watch(run_id)
        await self._orchestrator.cleanup(run_id)
        await self.active_jobs.remove(run_id)

    async def _finalized(self, run_id: str) -> bool:
        try:
            current = await self._runs.get(run_id)
        except Exception as e:
            logger.warning("Could not re-read run %s: %s", run_id, e)
            return False
        return current is not None and current.status.is_terminal

    async def _fail_start(self, run: RunHistory, exc: BaseException) -> Optional[RunHistory]:
        """Mark the run FAILED and announce it; None if the row was not updated."""
        rid = run.id
        logger.error("Failed to start run %s: %s", rid, exc, exc_info=exc)

        await self._discard_job(rid)

        run_at, end_at = await asyncio.gather(
            self._metrics.find_run_at(rid), self._metrics.find_end_at(rid)
        )
        run_at = run_at or run.run_at
        if end_at is not None:
            end_at = _clamp_end(run_at, end_at)

        try:
            failed = await self._runs.mark_terminal(
                rid, RunHistoryStatus.FAILED, run_at, end_at
            )
        except Exception as e:
            logger.error("Could not mark run %s FAILED: %s", rid, e, exc_info=True)
            return None

        if failed is None:
            logger.info("Run %s was finalized elsewhere during start", rid)
            return None
        await self._record_metrics(failed)
        await self._fanout.publish(StatusEvent.from_run(failed))
        return failed

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    async def _attach_watchers(self, run: RunHistory) -> None:
        rid = run.id
        tracker = ProgressTracker(
            rid, functools.partial(self._runs.update_progress, rid)
        )
        log_task = asyncio.create_task(
            self._follow_logs(rid, tracker), name=f"run-logs:{rid}"
        )
        self._track_task(log_task)
        await self.active_jobs.set_log_task(rid, log_task)
        await self._orchestrator.await_completion(
            rid, functools.partial(self._on_job_complete, rid)
        )

    async def _follow_logs(self, run_id: str, tracker: ProgressTracker) -> None:
        try:
            await self._orchestrator.stream_logs(run_id, tracker.on_line)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Progress stream for run %s stopped: %s", run_id, e)

    async def _on_job_complete(self, run_id: str, status: RunHistoryStatus) -> None:
        run = await self._runs.get(run_id)
        if run is None or run.status.is_terminal:
            await self.active_jobs.remove(run_id)
            return

        try:
            end_at = await self._metrics.get_end_at(run_id)
        except Exception as e:
            # The run must still reach a terminal state without telemetry.
            logger.warning("Run %s: endAt unavailable (%s); using completion time", run_id, e)
            end_at = _now()
        run_at = run.run_at or await self._metrics.find_run_at(run_id)
        end_at = _clamp_end(run_at, end_at)

        finished = await self._runs.mark_terminal(run_id, status, run_at, end_at)
        await self.active_jobs.remove(run_id)
        if finished is None:
            logger.info("Run %s was already finalized", run_id)
            return

        await self._record_metrics(finished)
        await self._fanout.publish(StatusEvent.from_run(finished))
        logger.info("Run %s finished: %s", run_id, finished.status.value)

    async def _record_metrics(self, run: RunHistory) -> None:
        """Per-(flow, step) rows plus the run aggregate; best-effort."""
        if run.run_at is None or run.end_at is None:
            return
        try:
            scenario = await self._scenarios.find_one(run.scenario_id, run.user_id)
            pairs = scenario.flow_step_pairs() if scenario is not None else []
            rows, aggregate = await self._metrics.compute_run_metrics(
                run.id, pairs, run.run_at, run.end_at
            )
            await self._run_metrics.create_many(run.id, rows)
            await self._runs.update_metrics(run.id, aggregate)
        except Exception as e:
            logger.warning("Failed to record metrics for run %s: %s", run.id, e)

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def stop(self, scenario_id: str, user_id: str) -> list[RunHistory]:
        """
        Abort every RUNNING run of the scenario.

        Raises:
            NotFoundError: scenario not owned by ``user_id`` or nothing running.
        """
        scenario = await self._scenarios.find_one(scenario_id, user_id)
        if scenario is None:
            raise NotFoundError(f"Scenario {scenario_id} not found")

        running = await self._runs.find_running_all(scenario_id)
        if not running:
            raise NotFoundError(f"No running load test for scenario {scenario_id}")

        stopped = await asyncio.gather(*(self._abort(run) for run in running))
        return [run for run in stopped if run is not None]

    async def _abort(self, run: RunHistory) -> Optional[RunHistory]:
        rid = run.id
        logger.info("Aborting run %s", rid)
        await self._orchestrator.cancel_watch(rid)
        await self.active_jobs.remove(rid)

        _, end_at = await asyncio.gather(
            self._orchestrator.cleanup(rid), self._metrics.find_end_at(rid)
        )
        run_at = run.run_at or await self._metrics.find_run_at(rid)
        end_at = _clamp_end(run_at, end_at or _now())

        aborted = await self._runs.mark_terminal(
            rid, RunHistoryStatus.ABORTED, run_at, end_at
        )
        if aborted is None:
            logger.info("Run %s finished before it could be aborted", rid)
            return await self._runs.get(rid)

        await self._record_metrics(aborted)
        await self._fanout.publish(StatusEvent.from_run(aborted))
        return aborted

    # ------------------------------------------------------------------
    # Restart reconciliation and replay
    # ------------------------------------------------------------------

    async def reconcile(self) -> int:
        """
        Re-attach progress and completion watchers to RUNNING runs whose job
        still exists. Runs without a job are left for the next start to reuse.
        """
        reattached = 0
        for run in await self._runs.list_running():
            if await self.active_jobs.contains(run.id):
                continue
            try:
                exists = await self._orchestrator.job_exists(run.id)
            except ClusterOperationError as e:
                logger.warning("Reconcile: cannot check job for run %s: %s", run.id, e)
                continue
            if not exists:
                logger.warning("Reconcile: run %s has no job; leaving it stale", run.id)
                continue

            await self.active_jobs.add(
                ActiveJob(
                    run_id=run.id,
                    scenario_id=run.scenario_id,
                    user_id=run.user_id,
                    job_name=job_name_for(run.id),
                    config_map_name=config_map_name_for(run.id),
                )
            )
            await self._attach_watchers(run)
            reattached += 1

        if reattached:
            logger.info("Reconcile: re-attached watchers to %d running job(s)", reattached)
        return reattached

    async def current_statuses(self, user_id: str) -> list[StatusEvent]:
        """Status of every job the user has in flight, queried fresh."""
        try:
            jobs = await self._orchestrator.list_running_jobs_for_user(user_id)
        except Exception as e:
            logger.warning("Listing running jobs for user %s failed: %s", user_id, e)
            return []

        events: list[StatusEvent] = []
        for job in jobs:
            run = await self._runs.get(job.run_id)
            if run is not None:
                if run.status.is_terminal:
                    continue
                events.append(StatusEvent.from_run(run))
            else:
                events.append(
                    StatusEvent(
                        run_id=job.run_id,
                        scenario_id=job.scenario_id,
                        user_id=job.user_id,
                        status=RunHistoryStatus.RUNNING,
                    )
                )
        return events

    async def shutdown(self) -> None:
        await self._orchestrator.shutdown()
        await self.active_jobs.clear()
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
