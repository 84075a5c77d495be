"""
Live status streaming over SSE and WebSocket.

Both transports drain the same per-user subscription queue and always
unsubscribe when the client goes away.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import UTC, datetime
from typing import AsyncIterator, Awaitable, Callable

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from loadpilot.core.status_fanout import StatusFanout
from loadpilot.models.metrics import LiveEvent

logger = logging.getLogger(__name__)


def format_sse(event: LiveEvent) -> str:
    """Render one event in text/event-stream framing."""
    lines: list[str] = []
    if event.id:
        lines.append(f"id: {event.id}")
    if event.event:
        lines.append(f"event: {event.event}")
    if event.retry is not None:
        lines.append(f"retry: {int(event.retry)}")
    payload = event.data if isinstance(event.data, str) else json.dumps(event.data, default=str)
    for part in str(payload).splitlines() or [""]:
        lines.append(f"data: {part}")
    return "\n".join(lines) + "\n\n"


async def sse_status_stream(
    fanout: StatusFanout,
    user_id: str,
    is_disconnected: Callable[[], Awaitable[bool]],
    *,
    poll_seconds: float = 1.0,
) -> AsyncIterator[str]:
    """Yield SSE frames for ``user_id`` until the client disconnects."""
    async with fanout.subscription(user_id) as queue:
        logger.info("SSE status stream opened for user %s", user_id)
        try:
            while True:
                if await is_disconnected():
                    break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=poll_seconds)
                except asyncio.TimeoutError:
                    continue
                yield format_sse(item)
        finally:
            logger.info("SSE status stream closed for user %s", user_id)


async def stream_status(websocket: WebSocket, fanout: StatusFanout, user_id: str) -> None:
    """Forward live events to an accepted WebSocket until it disconnects."""
    await websocket.send_json(
        {
            "status": "connected",
            "user_id": user_id,
            "timestamp": datetime.now(UTC).isoformat(),
        }
    )

    async with fanout.subscription(user_id) as queue:
        while True:
            recv_task = asyncio.create_task(websocket.receive())
            next_task = asyncio.create_task(queue.get())
            done, pending = await asyncio.wait(
                {recv_task, next_task}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()

            if recv_task in done:
                msg = recv_task.result()
                if msg.get("type") == "websocket.disconnect":
                    break
                if next_task not in done:
                    continue

            if websocket.client_state != WebSocketState.CONNECTED:
                break

            if next_task in done:
                item: LiveEvent = next_task.result()
                await websocket.send_json(item.model_dump(mode="json"))
