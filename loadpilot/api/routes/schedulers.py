"""
API routes for recurring scenario schedules.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from loadpilot.api.deps import current_user_id, get_services
from loadpilot.api.error_handling import http_exception
from loadpilot.core.container import LoadTestServices
from loadpilot.models.scheduler import Scheduler, SchedulerCreate, SchedulerUpdate

router = APIRouter()


@router.get("/", response_model=list[Scheduler])
async def list_schedulers(
    user_id: str = Depends(current_user_id),
    services: LoadTestServices = Depends(get_services),
) -> list[Scheduler]:
    try:
        return await services.cron.list_for_user(user_id)
    except Exception as e:
        raise http_exception("list schedulers", e)


@router.post("/", response_model=Scheduler, status_code=status.HTTP_201_CREATED)
async def create_scheduler(
    payload: SchedulerCreate,
    user_id: str = Depends(current_user_id),
    services: LoadTestServices = Depends(get_services),
) -> Scheduler:
    """
    Create a schedule for one of the caller's scenarios; active schedules are
    registered immediately.
    """
    try:
        return await services.cron.create(user_id, payload)
    except HTTPException:
        raise
    except Exception as e:
        raise http_exception("create scheduler", e)


@router.patch("/{scheduler_id}", response_model=Scheduler)
async def update_scheduler(
    scheduler_id: str,
    payload: SchedulerUpdate,
    user_id: str = Depends(current_user_id),
    services: LoadTestServices = Depends(get_services),
) -> Scheduler:
    try:
        return await services.cron.update(scheduler_id, user_id, payload)
    except HTTPException:
        raise
    except Exception as e:
        raise http_exception("update scheduler", e)


@router.delete("/{scheduler_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_scheduler(
    scheduler_id: str,
    user_id: str = Depends(current_user_id),
    services: LoadTestServices = Depends(get_services),
) -> None:
    try:
        await services.cron.delete(scheduler_id, user_id)
    except HTTPException:
        raise
    except Exception as e:
        raise http_exception("delete scheduler", e)
