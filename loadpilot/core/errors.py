"""
Load-test domain errors.

The API layer maps these onto HTTP responses (see loadpilot.api.error_handling);
everything below the routes raises these instead of HTTP exceptions.
"""

from __future__ import annotations


class LoadTestError(Exception):
    """Base class for load-test orchestration failures."""


class NotFoundError(LoadTestError):
    """Scenario, run or scheduler is absent or not owned by the caller."""


class AlreadyRunningError(LoadTestError):
    """A RUNNING run already exists for the scenario.

    Resolved idempotently by the run coordinator; callers never see it.
    """

    def __init__(self, scenario_id: str) -> None:
        super().__init__(f"Scenario {scenario_id} already has a running load test")
        self.scenario_id = scenario_id


class JobNotReadyError(LoadTestError):
    """The k6 pod never became ready within the retry budget."""


class TelemetryTimeoutError(LoadTestError):
    """The telemetry store had no data for the run within the retry budget."""


class ClusterOperationError(LoadTestError):
    """A Kubernetes API call failed."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


class RunStartError(LoadTestError):
    """Generic "failed to start" surfaced to callers; details are logged."""


class RunStoppedError(LoadTestError):
    """The run was stopped by another request before its start completed."""


class InvalidScheduleError(LoadTestError):
    """Recurrence config, cron expression or timezone cannot be scheduled."""
