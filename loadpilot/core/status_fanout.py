"""
Per-user live status channels with cross-instance delivery.

Each user with at least one open stream gets a channel: a set of subscriber queues
plus a heartbeat task. Status events are delivered to the local channel and
published on the Redis bus; every process re-delivers bus messages from other
processes to the channels it holds.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

from pydantic import ValidationError

from loadpilot.connectors.redis_bus import RedisStatusBus
from loadpilot.models.metrics import LiveEvent
from loadpilot.models.run_history import StatusEvent

logger = logging.getLogger(__name__)

STATUS_EVENT_NAME = "message"
PING_EVENT_NAME = "ping"

ReplayProvider = Callable[[str], Awaitable[list[StatusEvent]]]


@dataclass
class _Channel:
    user_id: str
    queues: set[asyncio.Queue] = field(default_factory=set)
    heartbeat: Optional[asyncio.Task] = None


class StatusFanout:
    def __init__(
        self,
        bus: Optional[RedisStatusBus] = None,
        *,
        instance_id: Optional[str] = None,
        heartbeat_seconds: float = 15.0,
        retry_ms: int = 3000,
        queue_size: int = 50,
        replay_provider: Optional[ReplayProvider] = None,
    ) -> None:
        self._bus = bus
        self.instance_id = instance_id or uuid4().hex
        self._heartbeat_seconds = float(heartbeat_seconds)
        self._retry_ms = int(retry_ms)
        self._queue_size = int(queue_size)
        self._replay_provider = replay_provider

        self._lock = asyncio.Lock()
        self._channels: dict[str, _Channel] = {}
        self._started = False

    def set_replay_provider(self, provider: ReplayProvider) -> None:
        self._replay_provider = provider

    async def start(self) -> None:
        """Subscribe to the cross-instance bus (once per process)."""
        if self._started or self._bus is None:
            return
        await self._bus.subscribe(self._on_bus_message)
        self._started = True
        logger.info("Status fan-out listening on bus (instance=%s)", self.instance_id)

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def status_live_event(self, event: StatusEvent) -> LiveEvent:
        return LiveEvent(
            event=STATUS_EVENT_NAME,
            id=event.event_id,
            retry=self._retry_ms,
            data=event.model_dump(mode="json", by_alias=True),
        )

    @staticmethod
    def ping_live_event() -> LiveEvent:
        return LiveEvent(
            event=PING_EVENT_NAME,
            data={"timestamp": datetime.now(UTC).isoformat()},
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    async def subscribe(self, user_id: str) -> asyncio.Queue:
        """
        Add a subscriber queue for ``user_id``.

        The first subscriber creates the channel and its heartbeat. The new queue
        (and only it) immediately receives the user's in-flight runs.
        """
        uid = str(user_id).strip()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        async with self._lock:
            channel = self._channels.get(uid)
            if channel is None:
                channel = _Channel(user_id=uid)
                channel.heartbeat = asyncio.create_task(
                    self._heartbeat(uid), name=f"status-heartbeat:{uid}"
                )
                self._channels[uid] = channel
                logger.info("Opened status channel for user %s", uid)
            channel.queues.add(queue)

        await self._replay(uid, queue)
        return queue

    async def unsubscribe(self, user_id: str, queue: asyncio.Queue) -> None:
        """Remove a subscriber; the last one out tears the channel down."""
        uid = str(user_id).strip()
        heartbeat = None
        async with self._lock:
            channel = self._channels.get(uid)
            if channel is None:
                return
            channel.queues.discard(queue)
            if not channel.queues:
                self._channels.pop(uid, None)
                heartbeat = channel.heartbeat
                logger.info("Closed status channel for user %s", uid)
        if heartbeat is not None:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    @asynccontextmanager
    async def subscription(self, user_id: str) -> AsyncIterator[asyncio.Queue]:
        queue = await self.subscribe(user_id)
        try:
            yield queue
        finally:
            await self.unsubscribe(user_id, queue)

    async def has_channel(self, user_id: str) -> bool:
        async with self._lock:
            return str(user_id).strip() in self._channels

    async def subscriber_count(self, user_id: str) -> int:
        async with self._lock:
            channel = self._channels.get(str(user_id).strip())
            return len(channel.queues) if channel else 0

    async def _replay(self, user_id: str, queue: asyncio.Queue) -> None:
        if self._replay_provider is None:
            return
        try:
            events = await self._replay_provider(user_id)
        except Exception as e:
            logger.warning("Status replay for user %s failed: %s", user_id, e)
            return
        for event in events:
            self._offer(queue, self.status_live_event(event))

    async def _heartbeat(self, user_id: str) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_seconds)
            await self._deliver(user_id, self.ping_live_event())

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    @staticmethod
    def _offer(queue: asyncio.Queue, item: LiveEvent) -> None:
        try:
            queue.put_nowait(item)
        except asyncio.QueueFull:
            # Slow consumer; drop rather than block the publisher.
            logger.debug("Dropping live event %s: subscriber queue full", item.event)

    async def _deliver(self, user_id: str, item: LiveEvent) -> int:
        async with self._lock:
            channel = self._channels.get(user_id)
            queues = list(channel.queues) if channel else []
        for queue in queues:
            self._offer(queue, item)
        return len(queues)

    async def publish(self, event: StatusEvent) -> None:
        """Deliver locally and publish on the bus; bus failures are logged."""
        await self._deliver(event.user_id, self.status_live_event(event))
        if self._bus is None:
            return
        try:
            await self._bus.publish(
                {
                    "origin": self.instance_id,
                    "event": event.model_dump(mode="json", by_alias=True),
                }
            )
        except Exception as e:
            logger.warning(
                "Failed to publish status %s for run %s: %s",
                event.status.value,
                event.run_id,
                e,
            )

    async def _on_bus_message(self, message: dict[str, Any]) -> None:
        if message.get("origin") == self.instance_id:
            return
        try:
            event = StatusEvent.model_validate(message.get("event") or {})
        except ValidationError as e:
            logger.warning("Ignoring malformed status message: %s", e)
            return
        await self._deliver(event.user_id, self.status_live_event(event))

    async def close(self) -> None:
        async with self._lock:
            channels = list(self._channels.values())
            self._channels.clear()
        tasks = [c.heartbeat for c in channels if c.heartbeat is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
