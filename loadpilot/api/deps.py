"""
FastAPI dependencies.
"""

from __future__ import annotations

from fastapi import Header, HTTPException
from starlette.requests import HTTPConnection

from loadpilot.core.container import LoadTestServices


def get_services(request: HTTPConnection) -> LoadTestServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services are not initialized")
    return services


def current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity; authentication happens upstream of this service."""
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return user_id
