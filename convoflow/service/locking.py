from __future__ import annotations

import asyncio
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Dict, Optional, TypeVar

from redis.exceptions import RedisError

from convoflow.logging import get_logger
from convoflow.service.errors import LockBusyError, LockLostError
from convoflow.storage.memory import MemoryCache
from convoflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 30
DEFAULT_LOCK_RETRIES = 5
DEFAULT_LOCK_WAIT_MS = 200
MIN_HEARTBEAT_SECONDS = 0.05

T = TypeVar("T")


def conversation_resource(conversation_id: str) -> str:
    return f"workflow:exec:{conversation_id}"


class ExecutionLock:
    """Per-resource mutual exclusion on the shared backing store.

    Each successful acquisition stores a fresh random token; release and
    extend only act when the stored value still equals that token, so a
    holder whose TTL lapsed can never free a lock someone else now owns.
    """

    def __init__(
        self,
        cache: RedisCache | MemoryCache,
        *,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        retries: int = DEFAULT_LOCK_RETRIES,
        wait_ms: int = DEFAULT_LOCK_WAIT_MS,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.retries = retries
        self.wait_ms = wait_ms
        self._tokens: Dict[str, str] = {}

    async def _try_acquire(self, resource: str, ttl: Optional[int]) -> Optional[str]:
        token = secrets.token_hex(16)
        try:
            acquired = await self.cache.acquire_lock(resource, token, ttl or self.ttl_seconds)
        except (RedisError, OSError) as exc:
            # Fail closed: an unreachable store never grants the lock
            logger.error("lock_acquire_error", resource=resource, error=str(exc))
            return None
        if not acquired:
            return None
        logger.debug("lock_acquired", resource=resource)
        return token

    async def _release_token(self, resource: str, token: str) -> bool:
        try:
            released = await self.cache.release_lock(resource, token)
        except (RedisError, OSError) as exc:
            logger.error("lock_release_error", resource=resource, error=str(exc))
            return False
        if not released:
            logger.warning("lock_release_not_owner", resource=resource)
        return released

    async def acquire(self, resource: str, ttl: Optional[int] = None) -> bool:
        token = await self._try_acquire(resource, ttl)
        if token is None:
            return False
        self._tokens[resource] = token
        return True

    async def release(self, resource: str) -> bool:
        token = self._tokens.pop(resource, None)
        if token is None:
            return False
        return await self._release_token(resource, token)

    async def extend(self, resource: str, seconds: Optional[int] = None) -> bool:
        token = self._tokens.get(resource)
        if token is None:
            return False
        return await self.extend_token(resource, token, seconds)

    async def extend_token(self, resource: str, token: str, seconds: Optional[int] = None) -> bool:
        try:
            return await self.cache.extend_lock(resource, token, seconds or self.ttl_seconds)
        except (RedisError, OSError) as exc:
            logger.error("lock_extend_error", resource=resource, error=str(exc))
            return False

    @asynccontextmanager
    async def with_lock(
        self,
        resource: str,
        *,
        ttl: Optional[int] = None,
        retries: Optional[int] = None,
        wait_ms: Optional[int] = None,
    ) -> AsyncIterator[str]:
        """Hold ``resource`` for the body of the ``async with`` block.

        Retries acquisition with linear backoff (``wait_ms * attempt``) and
        raises LockBusyError once the attempts run out. The lock is released
        on every exit path, including cancellation. Yields the acquisition
        token for use with ``extend_token``.
        """
        max_attempts = max(1, retries if retries is not None else self.retries)
        base_wait_ms = wait_ms if wait_ms is not None else self.wait_ms
        attempt = 0
        while True:
            attempt += 1
            token = await self._try_acquire(resource, ttl)
            if token is not None:
                break
            if attempt >= max_attempts:
                logger.warning("lock_busy", resource=resource, attempts=attempt)
                raise LockBusyError(resource, attempts=attempt)
            await asyncio.sleep(base_wait_ms * attempt / 1000.0)
        try:
            yield token
        finally:
            await self._release_token(resource, token)

    async def run_while_held(
        self,
        resource: str,
        token: str,
        work: Awaitable[T],
        *,
        ttl: Optional[int] = None,
    ) -> T:
        """Await ``work`` while refreshing the lock every third of its TTL.

        If an extension fails the lock is no longer ours: ``work`` is
        cancelled, so it writes nothing further, and LockLostError is raised.
        """
        ttl_seconds = ttl or self.ttl_seconds
        interval = max(ttl_seconds / 3.0, MIN_HEARTBEAT_SECONDS)
        task = asyncio.ensure_future(work)
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=interval)
                if done:
                    return task.result()
                if not await self.extend_token(resource, token, ttl_seconds):
                    logger.error("lock_lost", resource=resource)
                    raise LockLostError(resource)
                logger.debug("lock_heartbeat", resource=resource, ttl_seconds=ttl_seconds)
        finally:
            if not task.done():
                task.cancel()
                # the work must be fully stopped before the caller releases the lock
                await asyncio.gather(task, return_exceptions=True)
