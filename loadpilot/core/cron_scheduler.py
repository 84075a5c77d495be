"""
Cron-driven scenario runs.

Every active scheduler row is registered as an APScheduler job keyed by the
scheduler id. A firing re-reads the row, so deactivation and window expiry take
effect even if a trigger was left behind.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from loadpilot.core.cron_expressions import to_cron_expression
from loadpilot.core.errors import InvalidScheduleError, NotFoundError
from loadpilot.core.repositories import ScenarioRepository, SchedulerRepository
from loadpilot.core.run_coordinator import RunCoordinator
from loadpilot.models.scheduler import (
    RecurrenceType,
    Scheduler,
    SchedulerCreate,
    SchedulerUpdate,
    window_is_ordered,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(UTC)


def _aware(value: datetime, tz: ZoneInfo) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=tz)


def _zone(timezone: str) -> ZoneInfo:
    try:
        return ZoneInfo(str(timezone or "UTC"))
    except (ZoneInfoNotFoundError, ValueError, OSError) as e:
        raise InvalidScheduleError(f"Unknown timezone: {timezone!r}") from e


def build_trigger(
    cron_expression: str, timezone: str, start_date: Optional[datetime] = None
) -> CronTrigger:
    """CronTrigger for a five-field expression evaluated in ``timezone``."""
    fields = str(cron_expression or "").split()
    if len(fields) != 5:
        raise InvalidScheduleError(f"Invalid cron expression: {cron_expression!r}")
    tz = _zone(timezone)
    minute, hour, day, month, day_of_week = fields
    try:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            start_date=_aware(start_date, tz) if start_date else None,
            timezone=tz,
        )
    except ValueError as e:
        raise InvalidScheduleError(
            f"Invalid cron expression {cron_expression!r}: {e}"
        ) from e


def window_elapsed(scheduler: Scheduler, now: Optional[datetime] = None) -> bool:
    if scheduler.time_end is None:
        return False
    end = _aware(scheduler.time_end, _zone(scheduler.timezone))
    return (now or _now()) >= end


class CronScheduler:
    """Registers scheduler rows as cron jobs and serves scheduler CRUD."""

    def __init__(
        self,
        *,
        schedulers: SchedulerRepository,
        scenarios: ScenarioRepository,
        coordinator: RunCoordinator,
        scheduler: Optional[AsyncIOScheduler] = None,
        misfire_grace_seconds: int = 60,
    ) -> None:
        self._repo = schedulers
        self._scenarios = scenarios
        self._coordinator = coordinator
        self._scheduler = scheduler or AsyncIOScheduler(timezone=UTC)
        self._misfire_grace_seconds = int(misfire_grace_seconds)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> int:
        """Start the cron loop and register every active, unexpired scheduler."""
        if not self._scheduler.running:
            self._scheduler.start()

        registered = 0
        for row in await self._repo.find_active():
            if window_elapsed(row):
                logger.info("Scheduler %s window has ended; deactivating", row.id)
                await self._repo.set_active(row.id, False)
                continue
            try:
                self.register(row)
            except InvalidScheduleError as e:
                logger.warning("Skipping scheduler %s: %s", row.id, e)
                continue
            registered += 1

        logger.info("Cron scheduler started with %d trigger(s)", registered)
        return registered

    async def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Trigger registry
    # ------------------------------------------------------------------

    def register(self, row: Scheduler) -> None:
        trigger = build_trigger(row.cron_expression, row.timezone, row.time_start)
        self._scheduler.add_job(
            self._fire,
            trigger,
            args=[row.id],
            id=row.id,
            name=f"scenario:{row.scenario_id}",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=self._misfire_grace_seconds,
        )
        logger.info(
            "Registered scheduler %s (%s %s) for scenario %s",
            row.id,
            row.cron_expression,
            row.timezone,
            row.scenario_id,
        )

    def deregister(self, scheduler_id: str) -> None:
        try:
            self._scheduler.remove_job(scheduler_id)
        except JobLookupError:
            return
        logger.info("Deregistered scheduler %s", scheduler_id)

    def is_registered(self, scheduler_id: str) -> bool:
        return self._scheduler.get_job(scheduler_id) is not None

    async def _fire(self, scheduler_id: str) -> None:
        row = await self._repo.get(scheduler_id)
        if row is None or not row.is_active:
            self.deregister(scheduler_id)
            return

        if window_elapsed(row):
            logger.info("Scheduler %s window has ended; deactivating", row.id)
            await self._repo.set_active(row.id, False)
            self.deregister(row.id)
            return

        logger.info("Scheduler %s firing scenario %s", row.id, row.scenario_id)
        try:
            run = await self._coordinator.start(row.scenario_id, row.user_id)
            logger.info("Scheduler %s started run %s", row.id, run.id)
        except Exception as e:
            logger.error(
                "Scheduled run of scenario %s (scheduler %s) failed: %s",
                row.scenario_id,
                row.id,
                e,
            )
        finally:
            if row.config.type == RecurrenceType.ONCE:
                await self._repo.set_active(row.id, False)
                self.deregister(row.id)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def list_for_user(self, user_id: str) -> list[Scheduler]:
        return await self._repo.find_for_user(user_id)

    async def create(self, user_id: str, payload: SchedulerCreate) -> Scheduler:
        scenario = await self._scenarios.find_one(payload.scenario_id, user_id)
        if scenario is None:
            raise NotFoundError(f"Scenario {payload.scenario_id} not found")

        cron_expression = to_cron_expression(payload.config, payload.timezone)
        build_trigger(cron_expression, payload.timezone, payload.time_start)

        row = await self._repo.create(
            scenario_id=payload.scenario_id,
            user_id=user_id,
            time_start=payload.time_start,
            time_end=payload.time_end,
            timezone=payload.timezone,
            cron_expression=cron_expression,
            config=payload.config,
            is_active=payload.is_active,
        )
        if row.is_active and not window_elapsed(row):
            self.register(row)
        return row

    async def update(
        self, scheduler_id: str, user_id: str, payload: SchedulerUpdate
    ) -> Scheduler:
        existing = await self._repo.find_user_scheduler(scheduler_id, user_id)
        if existing is None:
            raise NotFoundError(f"Scheduler {scheduler_id} not found")

        fields: dict[str, Any] = {}
        for name in payload.model_fields_set:
            value = getattr(payload, name)
            if value is None and name in ("timezone", "config", "is_active"):
                continue
            fields[name] = value

        timezone = fields.get("timezone", existing.timezone)
        time_start = fields.get("time_start", existing.time_start)
        time_end = fields.get("time_end", existing.time_end)
        if not window_is_ordered(time_start, time_end, timezone or "UTC"):
            raise InvalidScheduleError("timeStart must be before timeEnd")

        config = fields.get("config", existing.config)
        cron_expression = to_cron_expression(config, timezone)
        build_trigger(cron_expression, timezone, time_start)
        if cron_expression != existing.cron_expression:
            fields["cron_expression"] = cron_expression

        self.deregister(existing.id)
        updated = await self._repo.update(existing.id, **fields)
        if updated is None:
            raise NotFoundError(f"Scheduler {scheduler_id} not found")
        if updated.is_active and not window_elapsed(updated):
            self.register(updated)
        return updated

    async def delete(self, scheduler_id: str, user_id: str) -> None:
        existing = await self._repo.find_user_scheduler(scheduler_id, user_id)
        if existing is None:
            raise NotFoundError(f"Scheduler {scheduler_id} not found")
        self.deregister(existing.id)
        await self._repo.delete(existing.id)
