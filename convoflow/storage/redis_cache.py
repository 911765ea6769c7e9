from __future__ import annotations

import json
import re
from typing import List, Optional

import redis.asyncio as aioredis
from redis import Redis

from convoflow.logging import get_logger

logger = get_logger(__name__)

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def workflow_state_key(conversation_id: str, tenant_id: Optional[str] = None) -> str:
    """Context key; tenant keys live under their own root so the namespaces never overlap."""
    if not tenant_id:
        return f"workflow:state:{conversation_id}"
    if ":" in tenant_id:
        raise ValueError(f"tenant id must not contain ':': {tenant_id!r}")
    return f"workflow:tenant:{tenant_id}:state:{conversation_id}"


def lock_key(resource: str) -> str:
    return f"lock:{resource}"


class RedisCache:
    """Redis backing store shared by the execution context store and the lock."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Only the holder of the token may delete or extend the lock
    _RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

    _EXTEND_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the engine starts accepting work."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # =========================================================================
    # Execution context records
    # =========================================================================

    async def get_workflow_state(
        self, conversation_id: str, *, tenant_id: Optional[str] = None
    ) -> Optional[dict]:
        key = workflow_state_key(conversation_id, tenant_id)
        cached = await self.client.get(key)
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            logger.warning("workflow_state_corrupt", key=key)
            return None

    async def set_workflow_state(
        self,
        conversation_id: str,
        state: dict,
        ttl_seconds: int,
        *,
        tenant_id: Optional[str] = None,
    ) -> None:
        # SET with EX replaces value and TTL atomically
        await self.client.set(
            workflow_state_key(conversation_id, tenant_id),
            json.dumps(state),
            ex=ttl_seconds,
        )

    async def delete_workflow_state(
        self, conversation_id: str, *, tenant_id: Optional[str] = None
    ) -> bool:
        removed = await self.client.delete(workflow_state_key(conversation_id, tenant_id))
        return bool(removed)

    async def workflow_state_exists(
        self, conversation_id: str, *, tenant_id: Optional[str] = None
    ) -> bool:
        return bool(await self.client.exists(workflow_state_key(conversation_id, tenant_id)))

    async def expire_workflow_state(
        self, conversation_id: str, ttl_seconds: int, *, tenant_id: Optional[str] = None
    ) -> bool:
        return bool(
            await self.client.expire(workflow_state_key(conversation_id, tenant_id), ttl_seconds)
        )

    async def scan_workflow_states(self, *, tenant_id: Optional[str] = None) -> List[str]:
        """Conversation ids with a live context, via SCAN (never KEYS)."""
        prefix = workflow_state_key("", tenant_id)
        conversation_ids: List[str] = []
        pattern = _GLOB_SPECIAL.sub(r"\\\1", prefix) + "*"
        async for key in self.client.scan_iter(match=pattern, count=200):
            conversation_ids.append(key[len(prefix):])
        return conversation_ids

    # =========================================================================
    # Execution lock
    # =========================================================================

    async def acquire_lock(self, resource: str, token: str, ttl_seconds: int) -> bool:
        acquired = await self.client.set(lock_key(resource), token, nx=True, ex=ttl_seconds)
        return bool(acquired)

    async def release_lock(self, resource: str, token: str) -> bool:
        result = await self.client.eval(self._RELEASE_SCRIPT, 1, lock_key(resource), token)
        return bool(result)

    async def extend_lock(self, resource: str, token: str, ttl_seconds: int) -> bool:
        result = await self.client.eval(
            self._EXTEND_SCRIPT, 1, lock_key(resource), token, ttl_seconds
        )
        return bool(result)

    async def lock_holder(self, resource: str) -> Optional[str]:
        return await self.client.get(lock_key(resource))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
