"""
Metrics Models

Raw telemetry rows returned by the metrics engine, the chart-ready points served by
the metrics API, and the live-update event envelope.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from loadpilot.models.run_history import RunHistoryStatus


# ============================================================================
# Raw series rows (one per time bucket and tag group)
# ============================================================================


class LatencyRow(BaseModel):
    time: Optional[datetime] = None
    flow_id: Optional[str] = None
    step_id: Optional[str] = None
    mean: Optional[float] = Field(None, description="Mean http_req_duration (ms)")
    p95: Optional[float] = Field(None, description="95th percentile duration (ms)")


class CountRow(BaseModel):
    time: Optional[datetime] = None
    flow_id: Optional[str] = None
    step_id: Optional[str] = None
    count: int = 0


class ErrorRateRow(BaseModel):
    time: Optional[datetime] = None
    flow_id: Optional[str] = None
    step_id: Optional[str] = None
    mean: Optional[float] = Field(None, description="Mean error indicator (0-1)")


class MetricSeriesSet(BaseModel):
    """The three ordered series answered by one metrics query."""

    latency: List[LatencyRow] = Field(default_factory=list)
    requests: List[CountRow] = Field(default_factory=list)
    errors: List[ErrorRateRow] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.latency or self.requests or self.errors)

    @property
    def total_requests(self) -> int:
        return sum(row.count for row in self.requests)


# ============================================================================
# API response points
# ============================================================================


class LatencyPoint(BaseModel):
    timestamp: datetime
    avg: float = 0.0
    p95: float = 0.0


class ValuePoint(BaseModel):
    timestamp: datetime
    value: float = 0.0


class MetricPoints(BaseModel):
    latency: List[LatencyPoint] = Field(default_factory=list)
    throughput: List[ValuePoint] = Field(default_factory=list)
    error_rate: List[ValuePoint] = Field(default_factory=list, alias="errorRate")

    model_config = {"populate_by_name": True}


class MetricsResponse(BaseModel):
    """Chart payload for one run, optionally narrowed to a flow/step."""

    run_history_id: str = Field(..., alias="runHistoryId")
    scenario_id: str = Field(..., alias="scenarioId")
    scenario_name: Optional[str] = Field(None, alias="scenarioName")
    interval: str
    tags: Dict[str, str] = Field(default_factory=dict)
    metrics: MetricPoints = Field(default_factory=MetricPoints)
    status: RunHistoryStatus
    progress: int = 0
    run_at: Optional[datetime] = Field(None, alias="runAt")
    end_at: Optional[datetime] = Field(None, alias="endAt")
    last_updated: datetime = Field(..., alias="lastUpdated")

    model_config = {"populate_by_name": True}


# ============================================================================
# Live update stream
# ============================================================================


class LiveEvent(BaseModel):
    """One event on a live update stream (SSE or WebSocket)."""

    event: str = Field(..., description="Event name, e.g. 'message' or 'ping'")
    id: Optional[str] = None
    retry: Optional[int] = Field(None, description="Client reconnect delay (ms)")
    data: Any = None
