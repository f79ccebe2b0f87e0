"""Per-entity mutual exclusion for read-modify-write operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager

from .config import settings
from .redis_client import get_redis_client

logger = logging.getLogger(__name__)


class EntityLocks:
    """Registry of asyncio locks keyed by entity (``"step:<id>"``, ``"project:<id>"``).

    ``hold`` acquires several keys in sorted order so two callers asking for
    overlapping sets cannot deadlock. When Redis locking is enabled the same
    keys are also taken as distributed locks for multi-process deployments.
    A key's lock is dropped once no caller holds or waits for it.
    """

    def __init__(self, *, use_redis: bool | None = None) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}
        self._use_redis = use_redis

    @property
    def use_redis(self) -> bool:
        return settings.redis_locks_enabled if self._use_redis is None else self._use_redis

    def _acquire_ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] = self._users.get(key, 0) + 1
        return lock

    def _release_ref(self, key: str) -> None:
        remaining = self._users[key] - 1
        if remaining:
            self._users[key] = remaining
        else:
            del self._users[key]
            del self._locks[key]

    @property
    def active_keys(self) -> list[str]:
        return sorted(self._locks)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        async with AsyncExitStack() as stack:
            for key in sorted(set(keys)):
                lock = self._acquire_ref(key)
                stack.callback(self._release_ref, key)
                await stack.enter_async_context(lock)
                if self.use_redis:
                    redis_lock = get_redis_client().lock(
                        f"lock:{key}", timeout=settings.redis_lock_timeout_seconds
                    )
                    await stack.enter_async_context(redis_lock)
            yield


def step_key(step_id: str) -> str:
    return f"step:{step_id}"


def task_key(task_id: str) -> str:
    return f"task:{task_id}"


def project_key(project_id: str) -> str:
    return f"project:{project_id}"
