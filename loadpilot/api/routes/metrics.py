"""
API routes for run metrics charts.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from loadpilot.api.deps import current_user_id, get_services
from loadpilot.api.error_handling import http_exception
from loadpilot.core.container import LoadTestServices
from loadpilot.core.errors import NotFoundError
from loadpilot.core.metrics_engine import validate_interval
from loadpilot.models.metrics import MetricsResponse

router = APIRouter()

LATEST_RUN = "latest"


@router.get("/{scenario_id}/{run_history_id}", response_model=MetricsResponse)
async def get_run_metrics(
    scenario_id: str,
    run_history_id: str,
    interval: Optional[str] = Query(None, description="Bucket size, e.g. 10s or 1m"),
    flow_id: Optional[str] = Query(None, alias="flowId"),
    step_id: Optional[str] = Query(None, alias="stepId"),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    user_id: str = Depends(current_user_id),
    services: LoadTestServices = Depends(get_services),
) -> MetricsResponse:
    """
    Latency, throughput and error-rate points for one run.

    ``latest`` resolves to the scenario's most recent run. Without ``start`` and
    ``end`` the run's own window is used.
    """
    try:
        scenario = await services.scenarios.find_one(scenario_id, user_id)
        if scenario is None:
            raise NotFoundError(f"Scenario {scenario_id} not found")

        if run_history_id == LATEST_RUN:
            run = await services.runs.find_latest(scenario_id)
        else:
            run = await services.runs.get(run_history_id)
        if run is None or run.scenario_id != scenario.id:
            raise NotFoundError(f"Run {run_history_id} not found")

        bucket = validate_interval(interval or services.metrics.default_interval)
        tags = {k: v for k, v in (("flow_id", flow_id), ("step_id", step_id)) if v}
        series = await services.metrics.query_metrics(
            run.id,
            bucket,
            tags,
            start or run.run_at,
            end or run.end_at,
            group_by_tags=False,
        )

        return MetricsResponse(
            run_history_id=run.id,
            scenario_id=scenario.id,
            scenario_name=scenario.name,
            interval=bucket,
            tags=tags,
            metrics=services.metrics.build_points(series, bucket),
            status=run.status,
            progress=run.progress,
            run_at=run.run_at,
            end_at=run.end_at,
            last_updated=datetime.now(UTC),
        )
    except HTTPException:
        raise
    except Exception as e:
        raise http_exception("query run metrics", e)
