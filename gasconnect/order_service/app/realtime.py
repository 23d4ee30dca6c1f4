"""Per-order real-time push channels.

Without Redis, broadcasts go straight to the subscriber queues of this
process. With Redis, broadcasts are published on ``gasconnect:order:<id>`` and
a listener task fans them out to local subscribers, so every process serving
WebSockets sees every update exactly once.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "gasconnect:order:"


class RealtimeHub:
    def __init__(self, redis: Redis | None = None, *, queue_size: int = 100) -> None:
        self._redis = redis
        self._queue_size = queue_size
        self._subscribers: dict[int, set[asyncio.Queue[dict[str, Any]]]] = defaultdict(set)
        self._listener: asyncio.Task[None] | None = None

    @staticmethod
    def channel(order_id: int) -> str:
        return f"{CHANNEL_PREFIX}{order_id}"

    def subscriber_count(self, order_id: int) -> int:
        return len(self._subscribers.get(order_id, ()))

    @asynccontextmanager
    async def subscribe(self, order_id: int) -> AsyncIterator[asyncio.Queue[dict[str, Any]]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[order_id].add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(order_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    self._subscribers.pop(order_id, None)

    async def broadcast(self, order_id: int, kind: str, data: dict[str, Any]) -> None:
        message = {
            "type": kind,
            "orderId": order_id,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self._redis is None:
            self._deliver(order_id, message)
            return
        try:
            await self._redis.publish(self.channel(order_id), json.dumps(message, default=str))
        except RedisError as exc:
            logger.warning("Redis publish for order %s failed, delivering locally: %s", order_id, exc)
            self._deliver(order_id, message)

    def _deliver(self, order_id: int, message: dict[str, Any]) -> None:
        for queue in list(self._subscribers.get(order_id, ())):
            if queue.full():
                # Slow consumer: drop its oldest update rather than block the publisher.
                with suppress(asyncio.QueueEmpty):
                    queue.get_nowait()
            queue.put_nowait(message)

    async def start(self) -> None:
        if self._redis is None or self._listener is not None:
            return
        self._listener = asyncio.create_task(self._listen(), name="realtime-hub-listener")

    async def stop(self) -> None:
        if self._listener is None:
            return
        self._listener.cancel()
        with suppress(asyncio.CancelledError):
            await self._listener
        self._listener = None

    async def _listen(self) -> None:
        assert self._redis is not None
        pubsub = self._redis.pubsub()
        await pubsub.psubscribe(f"{CHANNEL_PREFIX}*")
        try:
            async for raw in pubsub.listen():
                if raw.get("type") != "pmessage":
                    continue
                try:
                    order_id = int(str(raw["channel"]).removeprefix(CHANNEL_PREFIX))
                    message = json.loads(raw["data"])
                except (KeyError, ValueError, TypeError):
                    logger.warning("Ignoring malformed real-time message on %s", raw.get("channel"))
                    continue
                self._deliver(order_id, message)
        finally:
            await pubsub.aclose()
