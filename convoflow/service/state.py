from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from convoflow.logging import get_logger
from convoflow.storage.memory import MemoryCache
from convoflow.storage.models import ExecutionContext
from convoflow.storage.redis_cache import RedisCache

DEFAULT_STATE_TTL_SECONDS = 3600


class ExecutionContextStore:
    """Durable, TTL-bounded home of one suspendable continuation per conversation.

    Every save rewrites the whole record and resets the TTL, so a conversation
    that keeps talking never expires mid-run and an abandoned one disappears on
    its own.
    """

    def __init__(
        self,
        cache: RedisCache | MemoryCache,
        *,
        ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
        tenant_id: Optional[str] = None,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.tenant_id = tenant_id
        self.logger = get_logger(__name__)

    async def save(self, context: ExecutionContext) -> None:
        context.updated_at = datetime.now(timezone.utc)
        await self.cache.set_workflow_state(
            context.conversation_id,
            context.to_dict(),
            self.ttl_seconds,
            tenant_id=self.tenant_id,
        )

    async def get(self, conversation_id: str) -> Optional[ExecutionContext]:
        raw = await self.cache.get_workflow_state(conversation_id, tenant_id=self.tenant_id)
        if raw is None:
            return None
        try:
            return ExecutionContext.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            # Unreadable record: treat as absent rather than wedge the conversation
            self.logger.warning(
                "workflow_state_unreadable",
                conversation_id=conversation_id,
                error=str(exc),
            )
            return None

    async def delete(self, conversation_id: str) -> bool:
        return await self.cache.delete_workflow_state(conversation_id, tenant_id=self.tenant_id)

    async def exists(self, conversation_id: str) -> bool:
        return await self.cache.workflow_state_exists(conversation_id, tenant_id=self.tenant_id)

    async def extend_ttl(self, conversation_id: str, ttl_seconds: Optional[int] = None) -> bool:
        return await self.cache.expire_workflow_state(
            conversation_id, ttl_seconds or self.ttl_seconds, tenant_id=self.tenant_id
        )

    async def list_active(self) -> List[str]:
        return await self.cache.scan_workflow_states(tenant_id=self.tenant_id)
