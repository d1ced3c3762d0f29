"""Redis pub/sub: relays room broadcasts between API processes.

Learn: Redis pub/sub is fire-and-forget. If no process is listening, the
message is lost. That's fine here: realtime delivery is best-effort and
every message is already persisted before it is broadcast.

Every process publishes room broadcasts to one channel and runs one
listener that hands each message to its local RoomRouter. A process
therefore also receives its own broadcasts, which is how local
connections get them once the relay is attached.
"""

import asyncio
import json
from typing import Any, Optional

import redis.asyncio as aioredis
import structlog

from nearhelp.config import settings
from nearhelp.realtime.rooms import RoomRouter

logger = structlog.get_logger()

# Global Redis connection pool (initialized in lifespan)
_redis: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global _redis
    _redis = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    # Verify connection
    await _redis.ping()
    return _redis


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


class RedisRoomRelay:
    """Publishes room broadcasts and feeds received ones to a RoomRouter."""

    def __init__(
        self,
        redis: aioredis.Redis,
        router: RoomRouter,
        channel: str,
        retry_seconds: float = 1.0,
    ):
        self.redis = redis
        self.router = router
        self.channel = channel
        self.retry_seconds = retry_seconds

    async def publish(
        self, room: str, event: str, data: Any, exclude: Optional[str] = None
    ) -> None:
        payload = json.dumps(
            {"room": room, "event": event, "data": data, "exclude": exclude},
            default=str,
        )
        await self.redis.publish(self.channel, payload)

    def handle(self, raw: str) -> None:
        try:
            message = json.loads(raw)
            room = message["room"]
            event = message["event"]
        except (ValueError, KeyError, TypeError):
            logger.warning("relay.malformed_message", raw=raw[:200])
            return
        self.router.deliver_local(
            room, event, message.get("data"), exclude=message.get("exclude")
        )

    async def listen(self) -> None:
        """Forward relayed broadcasts to local connections until cancelled.

        Learn: The relay attaches itself as the router's publisher only
        while it is subscribed. If the subscription drops, it detaches so
        broadcasts fall back to local delivery, then resubscribes after
        retry_seconds.
        """
        while True:
            try:
                await self._listen_once()
            except Exception as e:
                self._detach()
                logger.warning(
                    "relay.subscription_lost",
                    channel=self.channel,
                    error=str(e),
                    retry_in=self.retry_seconds,
                )
                await asyncio.sleep(self.retry_seconds)

    async def _listen_once(self) -> None:
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(self.channel)
            self.router.publisher = self
            logger.info("relay.subscribed", channel=self.channel)
            async for message in pubsub.listen():
                if message["type"] == "message":
                    self.handle(message["data"])
            raise ConnectionError("Subscription stream ended")
        finally:
            self._detach()
            try:
                await pubsub.aclose()
            except Exception as e:
                logger.debug("relay.close_failed", error=str(e))

    def _detach(self) -> None:
        if self.router.publisher is self:
            self.router.publisher = None
