"""
Domain error -> HTTP error mapping shared by the route modules.
"""

from __future__ import annotations

import logging

from fastapi import HTTPException

from loadpilot.core.errors import (
    InvalidScheduleError,
    NotFoundError,
    RunStartError,
    RunStoppedError,
)

logger = logging.getLogger(__name__)


def http_exception(action: str, exc: BaseException) -> HTTPException:
    """
    Build the HTTPException for a failure while performing ``action``.

    Internal details of unexpected errors are logged, not returned.
    """
    if isinstance(exc, HTTPException):
        return exc
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, RunStoppedError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (InvalidScheduleError, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, RunStartError):
        logger.error("Failed to %s: %s", action, exc.__cause__ or exc)
        return HTTPException(status_code=500, detail=str(exc))

    logger.error("Failed to %s: %s", action, exc, exc_info=exc)
    return HTTPException(status_code=500, detail=f"Failed to {action}")
