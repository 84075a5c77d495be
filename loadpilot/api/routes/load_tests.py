"""
API routes for starting and stopping load tests, plus the live status stream.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from loadpilot.api.deps import current_user_id, get_services
from loadpilot.api.error_handling import http_exception
from loadpilot.core.container import LoadTestServices
from loadpilot.models.run_history import RunHistory
from loadpilot.websocket.streaming import sse_status_stream

router = APIRouter()


class StopResponse(BaseModel):
    scenario_id: str
    stopped: list[RunHistory]


@router.post(
    "/{scenario_id}/run",
    response_model=RunHistory,
    status_code=status.HTTP_202_ACCEPTED,
)
async def run_load_test(
    scenario_id: str,
    user_id: str = Depends(current_user_id),
    services: LoadTestServices = Depends(get_services),
) -> RunHistory:
    """
    Start a load test for the scenario, or return the run already in progress.
    """
    try:
        return await services.coordinator.start(scenario_id, user_id)
    except HTTPException:
        raise
    except Exception as e:
        raise http_exception("start load test", e)


@router.delete("/{scenario_id}/stop", response_model=StopResponse)
async def stop_load_test(
    scenario_id: str,
    user_id: str = Depends(current_user_id),
    services: LoadTestServices = Depends(get_services),
) -> StopResponse:
    """
    Abort every running load test of the scenario.
    """
    try:
        stopped = await services.coordinator.stop(scenario_id, user_id)
        return StopResponse(scenario_id=scenario_id, stopped=stopped)
    except HTTPException:
        raise
    except Exception as e:
        raise http_exception("stop load test", e)


@router.get("/status")
async def status_stream(
    request: Request,
    user_id: str = Depends(current_user_id),
    services: LoadTestServices = Depends(get_services),
) -> StreamingResponse:
    """
    Server-sent events with the caller's run status changes.

    In-flight runs are replayed on connect; a ``ping`` event keeps idle
    connections open.
    """
    return StreamingResponse(
        sse_status_stream(services.fanout, user_id, request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
