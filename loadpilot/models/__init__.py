"""
Data models for LoadPilot.

This package contains Pydantic models for:
- Scenarios (weighted flows of API/browser steps)
- Runs, per-step run metrics and status events
- Recurring schedulers
- Metrics series and live-update events
"""

from loadpilot.models.scenario import (
    StepType,
    HttpMethod,
    ApiStepConfig,
    BrowserStepConfig,
    ApiStep,
    BrowserStep,
    ScenarioFlow,
    Scenario,
)

from loadpilot.models.run_history import (
    RunHistoryStatus,
    AggregateMetrics,
    RunHistory,
    RunHistoryMetric,
    StatusEvent,
)

from loadpilot.models.scheduler import (
    RecurrenceType,
    CronConfig,
    Scheduler,
    SchedulerCreate,
    SchedulerUpdate,
)

from loadpilot.models.metrics import (
    LatencyRow,
    CountRow,
    ErrorRateRow,
    MetricSeriesSet,
    LatencyPoint,
    ValuePoint,
    MetricPoints,
    MetricsResponse,
    LiveEvent,
)

__all__ = [
    # scenario
    "StepType",
    "HttpMethod",
    "ApiStepConfig",
    "BrowserStepConfig",
    "ApiStep",
    "BrowserStep",
    "ScenarioFlow",
    "Scenario",
    # run_history
    "RunHistoryStatus",
    "AggregateMetrics",
    "RunHistory",
    "RunHistoryMetric",
    "StatusEvent",
    # scheduler
    "RecurrenceType",
    "CronConfig",
    "Scheduler",
    "SchedulerCreate",
    "SchedulerUpdate",
    # metrics
    "LatencyRow",
    "CountRow",
    "ErrorRateRow",
    "MetricSeriesSet",
    "LatencyPoint",
    "ValuePoint",
    "MetricPoints",
    "MetricsResponse",
    "LiveEvent",
]
