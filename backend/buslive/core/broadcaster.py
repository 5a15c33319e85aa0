"""Redis pub/sub broadcaster for map surface updates."""

import asyncio
import logging

import orjson
import redis.asyncio as aioredis

from buslive.config import settings

logger = logging.getLogger(__name__)

CHANNEL = "buslive:map"
STATE_KEY = "buslive:map_state"


class Broadcaster:
    """Publishes map operations to Redis and manages WebSocket subscribers."""

    def __init__(self) -> None:
        self._redis: aioredis.Redis | None = None
        self._subscribers: set[asyncio.Queue] = set()
        self._last_state: bytes | None = None

    async def connect(self) -> None:
        self._redis = aioredis.from_url(settings.redis_url, decode_responses=False)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    async def publish(self, update: dict, state: dict) -> None:
        """Publish a batch of map operations and remember the resulting layer state."""
        payload = orjson.dumps(update)
        self._last_state = orjson.dumps(state)

        if self._redis:
            try:
                # Store current state for new connections
                await self._redis.set(STATE_KEY, self._last_state)
                await self._redis.publish(CHANNEL, payload)
            except Exception:
                logger.exception("Failed to publish to Redis")

        # Fan out directly to WebSocket subscribers
        dead = set()
        for q in self._subscribers:
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                dead.add(q)
        if dead:
            logger.warning("Dropping %d slow map subscribers", len(dead))
        self._subscribers -= dead

    async def get_current_state(self) -> bytes | None:
        """Get latest map state snapshot, from Redis when available."""
        if self._redis:
            try:
                data = await self._redis.get(STATE_KEY)
                if data:
                    return data
            except Exception:
                logger.exception("Failed to get state from Redis")
        return self._last_state

    def subscribe(self) -> asyncio.Queue:
        """Create a new subscriber queue for WebSocket fan-out."""
        q: asyncio.Queue = asyncio.Queue(maxsize=10)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)
