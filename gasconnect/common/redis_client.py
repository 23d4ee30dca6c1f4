"""Async Redis client helpers (pub/sub fan-out for real-time order channels)."""

from __future__ import annotations

from typing import Dict

from redis.asyncio import Redis

from .config import ServiceSettings


_CLIENTS: Dict[str, Redis] = {}


def get_redis_client(redis_url: str) -> Redis:
    """Return the process-wide Redis client for ``redis_url``, creating it on first use."""

    client = _CLIENTS.get(redis_url)
    if client is None:
        client = Redis.from_url(redis_url, decode_responses=True)
        _CLIENTS[redis_url] = client
    return client


def resolve_redis(settings: ServiceSettings) -> Redis | None:
    """Return a Redis client, or None when no Redis URL is configured."""

    if not settings.redis_url:
        return None
    return get_redis_client(settings.redis_url)


async def close_redis_connections() -> None:
    """Close every Redis client created through this module."""

    clients = list(_CLIENTS.values())
    _CLIENTS.clear()
    for client in clients:
        await client.aclose()
