"""Connection helpers shared by the Redis-backed stores."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .errors import StoreUnavailableError


def resolve_redis_url(redis_url: Optional[str] = None) -> str:
    """Support both a single `REDIS_URL` and individual host/port/password environment variables."""
    redis_url = redis_url or os.getenv("REDIS_URL")
    if redis_url:
        return redis_url

    host = os.getenv("REDIS_HOST")
    port = os.getenv("REDIS_PORT")
    password = os.getenv("REDIS_PASSWORD")

    if not host:
        raise ValueError(
            "Redis configuration is missing. Set REDIS_URL or a combination of "
            "(REDIS_HOST, REDIS_PORT and REDIS_PASSWORD)"
        )
    port = port or "6379"
    if password:
        return f"redis://:{password}@{host}:{port}"
    return f"redis://{host}:{port}"


async def connect_redis(redis_url: str, max_connections: int = 10) -> aioredis.Redis:
    """Create a Redis client and check connectivity before handing it out."""
    try:
        client = aioredis.from_url(
            redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=max_connections,
        )
        await client.ping()
    except Exception as exc:  # pragma: no cover - network errors are runtime concerns
        raise StoreUnavailableError(
            f"Failed to connect to Redis at {redis_url}. "
            f"Error: {str(exc)}. "
            "Make sure Redis is running or REDIS_URL "
            "(or REDIS_HOST/REDIS_PORT/REDIS_PASSWORD) is set correctly."
        ) from exc
    return client


@asynccontextmanager
async def redis_errors(operation: str) -> AsyncIterator[None]:
    """Translate Redis connectivity failures into StoreUnavailableError."""
    try:
        yield
    except (RedisConnectionError, RedisTimeoutError) as exc:
        raise StoreUnavailableError(f"Redis unavailable during {operation}: {exc}") from exc
