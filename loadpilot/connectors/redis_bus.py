"""
Redis pub/sub bus for cross-instance status delivery.

Every process publishes status events to one fixed channel and holds exactly one
subscription to it. The listener reconnects with backoff when the connection drops.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis

from loadpilot.config import settings

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]


class RedisStatusBus:
    """
    Async Redis publisher/subscriber for one topic.

    Messages are JSON objects; malformed payloads are logged and skipped.
    """

    def __init__(
        self,
        redis_url: str,
        topic: str,
        *,
        client: Optional[Any] = None,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
    ):
        """
        Args:
            redis_url: Redis connection URL
            topic: Pub/sub channel name
            client: Pre-built client (tests)
            reconnect_delay: Initial listener reconnect backoff in seconds
            max_reconnect_delay: Backoff ceiling in seconds
        """
        self.redis_url = redis_url
        self.topic = topic
        self._client = client
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._listener: Optional[asyncio.Task] = None

    def _get_client(self):
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    async def connect(self) -> None:
        """Open the connection and verify it with PING."""
        await self._get_client().ping()
        logger.info(f"✅ Redis bus connected: {self.redis_url} (topic={self.topic})")

    async def publish(self, message: dict[str, Any]) -> int:
        """Publish one message; returns the number of receiving subscribers."""
        payload = json.dumps(message, default=str)
        return int(await self._get_client().publish(self.topic, payload))

    async def subscribe(self, handler: MessageHandler) -> None:
        """Start the (single) background listener for this process."""
        if self._listener is not None and not self._listener.done():
            return
        self._listener = asyncio.create_task(
            self._listen(handler), name=f"redis-bus:{self.topic}"
        )

    async def _listen(self, handler: MessageHandler) -> None:
        delay = self._reconnect_delay
        while True:
            pubsub = self._get_client().pubsub()
            try:
                await pubsub.subscribe(self.topic)
                logger.info(f"Subscribed to Redis topic {self.topic}")
                delay = self._reconnect_delay
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    await self._dispatch(handler, message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(
                    f"Redis bus listener error on {self.topic}: {e}; "
                    f"reconnecting in {delay:.1f}s"
                )
                await asyncio.sleep(delay)
                delay = min(delay * 2, self._max_reconnect_delay)
            finally:
                try:
                    await pubsub.aclose()
                except Exception as e:
                    logger.debug(f"Closing Redis pubsub raised: {e}")

    async def _dispatch(self, handler: MessageHandler, raw: Any) -> None:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed bus message on {self.topic}: {e}")
            return
        if not isinstance(data, dict):
            logger.warning(f"Dropping non-object bus message on {self.topic}")
            return
        try:
            await handler(data)
        except Exception as e:
            logger.error(f"Bus message handler failed: {e}", exc_info=True)

    async def is_healthy(self) -> bool:
        try:
            return bool(await self._get_client().ping())
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        """Stop the listener and close the connection."""
        listener, self._listener = self._listener, None
        if listener is not None:
            listener.cancel()
            await asyncio.gather(listener, return_exceptions=True)
        if self._client is not None:
            try:
                await self._client.aclose()
                logger.info("Redis bus connection closed")
            except Exception as e:
                logger.error(f"Error closing Redis connection: {e}")
            self._client = None


def build_status_bus() -> RedisStatusBus:
    return RedisStatusBus(settings.REDIS_URL, settings.STATUS_TOPIC)
