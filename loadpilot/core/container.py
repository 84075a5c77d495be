"""
Service wiring.

``build_services`` creates one instance of every component with its collaborators
passed explicitly; the app keeps the result on ``app.state.services``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from loadpilot.config import settings
from loadpilot.connectors.influx_client import (
    TelemetryStoreClient,
    build_telemetry_client,
)
from loadpilot.connectors.k8s_client import ClusterClient, build_cluster_client
from loadpilot.connectors.postgres_pool import PostgresConnectionPool, get_default_pool
from loadpilot.connectors.redis_bus import RedisStatusBus, build_status_bus
from loadpilot.core.active_jobs import ActiveJobRegistry
from loadpilot.core.cron_scheduler import CronScheduler
from loadpilot.core.job_orchestrator import JobOrchestrator
from loadpilot.core.metrics_engine import MetricsEngine
from loadpilot.core.repositories import (
    RunHistoryMetricRepository,
    RunHistoryRepository,
    ScenarioRepository,
    SchedulerRepository,
)
from loadpilot.core.run_coordinator import RunCoordinator
from loadpilot.core.status_fanout import StatusFanout

logger = logging.getLogger(__name__)


@dataclass
class LoadTestServices:
    pool: PostgresConnectionPool
    cluster: ClusterClient
    telemetry: TelemetryStoreClient
    bus: RedisStatusBus
    scenarios: ScenarioRepository
    runs: RunHistoryRepository
    run_metrics: RunHistoryMetricRepository
    schedulers: SchedulerRepository
    orchestrator: JobOrchestrator
    metrics: MetricsEngine
    fanout: StatusFanout
    coordinator: RunCoordinator
    cron: CronScheduler

    async def close(self) -> None:
        """Stop background work and release connections; each step is best-effort."""
        steps = (
            ("cron scheduler", self.cron.shutdown),
            ("run coordinator", self.coordinator.shutdown),
            ("status fan-out", self.fanout.close),
            ("status bus", self.bus.close),
            ("telemetry client", self.telemetry.close),
        )
        for name, step in steps:
            try:
                await step()
            except Exception as e:
                logger.warning("Error shutting down %s: %s", name, e)
        try:
            self.cluster.close()
        except Exception as e:
            logger.warning("Error shutting down cluster client: %s", e)


def build_services(
    *,
    pool: Optional[PostgresConnectionPool] = None,
    cluster: Optional[ClusterClient] = None,
    telemetry: Optional[TelemetryStoreClient] = None,
    bus: Optional[RedisStatusBus] = None,
) -> LoadTestServices:
    pool = pool or get_default_pool()
    cluster = cluster or build_cluster_client()
    telemetry = telemetry or build_telemetry_client()
    bus = bus or build_status_bus()

    scenarios = ScenarioRepository(pool)
    runs = RunHistoryRepository(pool)
    run_metrics = RunHistoryMetricRepository(pool)
    schedulers = SchedulerRepository(pool)

    orchestrator = JobOrchestrator(
        cluster,
        image=settings.K6_IMAGE,
        influx_write_url=settings.INFLUXDB_WRITE_URL,
        job_ttl_seconds=settings.K6_JOB_TTL_SECONDS,
        ready_attempts=settings.POD_READY_ATTEMPTS,
        ready_interval_seconds=settings.POD_READY_INTERVAL_SECONDS,
        log_tail_lines=settings.K6_LOG_TAIL_LINES,
        log_attach_delay_seconds=settings.LOG_ATTACH_DELAY_SECONDS,
        watch_timeout_seconds=settings.K8S_WATCH_TIMEOUT_SECONDS,
    )
    metrics = MetricsEngine(
        telemetry,
        run_at_attempts=settings.RUN_AT_POLL_ATTEMPTS,
        run_at_interval_seconds=settings.RUN_AT_POLL_INTERVAL_SECONDS,
        run_at_timeout_seconds=settings.RUN_AT_TIMEOUT_SECONDS,
        default_interval=settings.DEFAULT_METRICS_INTERVAL,
    )
    fanout = StatusFanout(
        bus,
        heartbeat_seconds=settings.STATUS_HEARTBEAT_SECONDS,
        retry_ms=settings.STATUS_EVENT_RETRY_MS,
        queue_size=settings.SUBSCRIBER_QUEUE_SIZE,
    )
    coordinator = RunCoordinator(
        scenarios=scenarios,
        runs=runs,
        run_metrics=run_metrics,
        orchestrator=orchestrator,
        metrics=metrics,
        fanout=fanout,
        active_jobs=ActiveJobRegistry(),
    )
    fanout.set_replay_provider(coordinator.current_statuses)
    cron = CronScheduler(
        schedulers=schedulers, scenarios=scenarios, coordinator=coordinator
    )

    return LoadTestServices(
        pool=pool,
        cluster=cluster,
        telemetry=telemetry,
        bus=bus,
        scenarios=scenarios,
        runs=runs,
        run_metrics=run_metrics,
        schedulers=schedulers,
        orchestrator=orchestrator,
        metrics=metrics,
        fanout=fanout,
        coordinator=coordinator,
        cron=cron,
    )
