"""Redis-backed TaskStore implementation."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from ..errors import TaskNotFoundError
from ..redis_client import connect_redis, redis_errors, resolve_redis_url
from .base import (
    Task,
    TaskQuery,
    TaskStatus,
    TaskStore,
    apply_update,
    build_task,
    is_timed_out,
    timeout_updates,
    utc_now,
)


class RedisTaskStore(TaskStore):
    """
    Redis-backed task store used for tracking generation tasks.

    - Stores task payloads as JSON values, optionally with an expiration (TTL).
    - Maintains secondary indexes (status sets, subject sets, a created-at sorted set)
      so tasks can be listed by status, subject and creation-time range.
    - Keeps one "live task" pointer per subject; creation WATCHes that pointer so two
      concurrent scans cannot both create a live task for the same subject.
    """

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: Optional[int] = None, prefix: str = "task"):
        """
        Configure the Redis connection URL and TTL.

        Args:
            redis_url: Optional Redis URL. Falls back to env vars when omitted.
            ttl_seconds: Seconds before a task entry expires. None or 0 keeps tasks until cleanup.
            prefix: Key namespace for every key written by this store.
        """
        self.redis_url = resolve_redis_url(redis_url)
        self.redis: Optional[aioredis.Redis] = None
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds if ttl_seconds and ttl_seconds > 0 else None

    async def _get_redis(self) -> aioredis.Redis:
        """Get or lazily create the shared Redis connection."""
        if self.redis is None:
            self.redis = await connect_redis(self.redis_url)
        return self.redis

    def _task_key(self, task_id: str) -> str:
        return f"{self.prefix}:{task_id}"

    def _live_key(self, subject_id: str) -> str:
        return f"{self.prefix}:live:{subject_id}"

    def _status_key(self, status: TaskStatus) -> str:
        return f"{self.prefix}:status:{status.value}"

    def _subject_key(self, subject_id: str) -> str:
        return f"{self.prefix}:subject:{subject_id}"

    @property
    def _created_key(self) -> str:
        return f"{self.prefix}:created"

    def _queue_write(self, pipe, task: Task, previous: Optional[Task] = None) -> None:
        """Buffer the record and index writes for ``task`` on a MULTI pipeline."""
        key = self._task_key(task.id)
        payload = json.dumps(task.to_dict())
        if self.ttl_seconds:
            pipe.setex(key, self.ttl_seconds, payload)
        else:
            pipe.set(key, payload)
        if previous is not None and previous.status != task.status:
            pipe.srem(self._status_key(previous.status), task.id)
        pipe.sadd(self._status_key(task.status), task.id)
        pipe.sadd(self._subject_key(task.subject_id), task.id)
        pipe.zadd(self._created_key, {task.id: task.created_at.timestamp()})

    async def create_task(
        self,
        subject_id: Any,
        provider: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """Create a PENDING task unless the subject already has a live one."""
        subject = str(subject_id)
        redis = await self._get_redis()
        pointer = self._live_key(subject)

        async with redis_errors("create_task"):
            async with redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(pointer)
                        now = utc_now()
                        existing: Optional[Task] = None
                        live_id = await pipe.get(pointer)
                        if live_id:
                            raw = await pipe.get(self._task_key(live_id))
                            if raw:
                                existing = Task.from_dict(json.loads(raw))

                        expired: Optional[Task] = None
                        if existing is not None:
                            if is_timed_out(now, existing.timeout_at, existing.status):
                                expired = apply_update(existing, timeout_updates(existing), now)
                            elif not existing.is_terminal:
                                await pipe.unwatch()
                                return existing.id

                        task = build_task(subject, provider, options, timeout_seconds=timeout_seconds, now=now)
                        pipe.multi()
                        if expired is not None:
                            self._queue_write(pipe, expired, previous=existing)
                        self._queue_write(pipe, task)
                        pipe.set(pointer, task.id)
                        await pipe.execute()
                        return task.id
                    except WatchError:
                        # another writer touched the pointer; re-read and decide again
                        continue

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Retrieve a task by ID, or None when it does not exist (or has expired)."""
        redis = await self._get_redis()
        async with redis_errors("get_task"):
            data = await redis.get(self._task_key(task_id))
        if data:
            return Task.from_dict(json.loads(data))
        return None

    async def update_task(self, task_id: str, **updates) -> Task:
        """Merge fields under WATCH so concurrent writers to one task converge."""
        redis = await self._get_redis()
        key = self._task_key(task_id)

        async with redis_errors("update_task"):
            async with redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if not raw:
                            await pipe.unwatch()
                            raise TaskNotFoundError(task_id)
                        current = Task.from_dict(json.loads(raw))
                        task = apply_update(current, updates)
                        pipe.multi()
                        self._queue_write(pipe, task, previous=current)
                        await pipe.execute()
                        return task
                    except WatchError:
                        continue

    async def list_tasks(self, query: Optional[TaskQuery] = None) -> List[Task]:
        query = query or TaskQuery()
        redis = await self._get_redis()

        async with redis_errors("list_tasks"):
            if query.status is not None or query.subject_id is not None:
                keys = []
                if query.status is not None:
                    keys.append(self._status_key(query.status))
                if query.subject_id is not None:
                    keys.append(self._subject_key(str(query.subject_id)))
                ids = list(await redis.sinter(keys))
            else:
                ids = await redis.zrevrangebyscore(
                    self._created_key,
                    _score(query.created_before) if query.created_before else "+inf",
                    _score(query.created_after) if query.created_after else "-inf",
                )
            if not ids:
                return []
            payloads = await redis.mget([self._task_key(task_id) for task_id in ids])

        tasks = [Task.from_dict(json.loads(raw)) for raw in payloads if raw]
        matched = sorted(
            (task for task in tasks if query.matches(task)),
            key=lambda task: task.created_at,
            reverse=True,
        )
        return matched[: query.limit] if query.limit else matched

    async def delete_task(self, task_id: str) -> None:
        """Delete a task entry and its index memberships."""
        task = await self.get_task(task_id)
        redis = await self._get_redis()
        async with redis_errors("delete_task"):
            async with redis.pipeline(transaction=True) as pipe:
                pipe.delete(self._task_key(task_id))
                pipe.zrem(self._created_key, task_id)
                if task is not None:
                    pipe.srem(self._status_key(task.status), task_id)
                    pipe.srem(self._subject_key(task.subject_id), task_id)
                await pipe.execute()
            if task is not None:
                live_key = self._live_key(task.subject_id)
                if await redis.get(live_key) == task_id:
                    await redis.delete(live_key)

    async def close(self) -> None:
        """Close the shared Redis connection (idempotent)."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None


def _score(value: datetime) -> float:
    return value.timestamp()
