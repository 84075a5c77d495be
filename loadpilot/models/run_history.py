"""
Run History Models

A run is one execution of a scenario. Only the run coordinator mutates it; once the
status leaves RUNNING the row is terminal.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class RunHistoryStatus(str, Enum):
    """Run lifecycle states. RUNNING is the only non-terminal state."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    ABORTED = "ABORTED"

    @property
    def is_terminal(self) -> bool:
        return self is not RunHistoryStatus.RUNNING


class AggregateMetrics(BaseModel):
    """Latency/throughput/error figures for a whole run or one (flow, step) pair."""

    avg_response_time: float = Field(0.0, description="Mean request duration (ms)")
    p95_response_time: float = Field(0.0, description="95th percentile duration (ms)")
    avg_throughput: float = Field(0.0, description="Requests per second")
    error_rate: float = Field(0.0, ge=0, description="Mean error indicator (0-1)")
    success_rate: float = Field(1.0, ge=0, description="1 - error_rate, floored at 0")
    total_requests: int = Field(0, ge=0)


class RunHistory(BaseModel):
    id: str
    scenario_id: str
    user_id: str
    status: RunHistoryStatus = RunHistoryStatus.RUNNING
    run_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    progress: int = Field(0, ge=0, le=100)
    metrics: Optional[AggregateMetrics] = None
    created_at: Optional[datetime] = None


class RunHistoryMetric(AggregateMetrics):
    """Per-(flow, step) metrics recorded once when a run completes."""

    run_history_id: str
    flow_id: str
    step_id: str


class StatusEvent(BaseModel):
    """
    Ephemeral run status notification.

    Never persisted; delivered to live subscribers and over the cross-instance bus.
    Serialized with camelCase keys on the wire.
    """

    run_id: str = Field(..., alias="runId")
    scenario_id: str = Field(..., alias="scenarioId")
    user_id: str = Field(..., alias="userId")
    status: RunHistoryStatus
    run_at: Optional[datetime] = Field(None, alias="runAt")

    model_config = {"populate_by_name": True}

    @property
    def event_id(self) -> str:
        return f"{self.scenario_id}:{self.run_id}"

    @classmethod
    def from_run(cls, run: RunHistory) -> "StatusEvent":
        return cls(
            run_id=run.id,
            scenario_id=run.scenario_id,
            user_id=run.user_id,
            status=run.status,
            run_at=run.run_at,
        )
