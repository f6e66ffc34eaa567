"""Redis-backed ProcessStateStore: the whole document lives under one key."""

from __future__ import annotations

import json
from typing import Optional

import redis.asyncio as aioredis

from ..redis_client import connect_redis, redis_errors, resolve_redis_url
from .base import ProcessState, ProcessStateStore


class RedisProcessStateStore(ProcessStateStore):

    def __init__(self, redis_url: Optional[str] = None, key: str = "cron"):
        self.redis_url = resolve_redis_url(redis_url)
        self.redis: Optional[aioredis.Redis] = None
        self.key = f"process_state:{key}"

    async def _get_redis(self) -> aioredis.Redis:
        if self.redis is None:
            self.redis = await connect_redis(self.redis_url)
        return self.redis

    async def load(self) -> ProcessState:
        redis = await self._get_redis()
        async with redis_errors("process state load"):
            data = await redis.get(self.key)
        return ProcessState.from_dict(json.loads(data) if data else None)

    async def save(self, state: ProcessState) -> None:
        redis = await self._get_redis()
        async with redis_errors("process state save"):
            await redis.set(self.key, json.dumps(state.to_dict()))

    async def close(self) -> None:
        if self.redis:
            await self.redis.aclose()
            self.redis = None
