from __future__ import annotations

import json
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from convoflow.logging import get_logger
from convoflow.storage.models import (
    Conversation,
    KnowledgeChunk,
    Message,
    WorkflowDefinition,
)
from convoflow.storage.redis_cache import lock_key, workflow_state_key


class MemoryCache:
    """In-process stand-in for RedisCache.

    Same async surface and key layout as the Redis store, with TTLs tracked on
    a monotonic clock. Only safe for a single process: TEST_MODE, local
    development, or an explicit USE_MEMORY_CACHE.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    def _get_live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            self._data.pop(key, None)
            return None
        return value

    def _set(self, key: str, value: str, ttl_seconds: Optional[int]) -> None:
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    def ttl(self, key: str) -> Optional[float]:
        """Remaining seconds for ``key``; None when absent or persistent."""
        with self._data_lock:
            if self._get_live(key) is None:
                return None
            _, expires_at = self._data[key]
            return None if expires_at is None else expires_at - time.monotonic()

    # Execution context records

    async def get_workflow_state(
        self, conversation_id: str, *, tenant_id: Optional[str] = None
    ) -> Optional[dict]:
        key = workflow_state_key(conversation_id, tenant_id)
        with self._data_lock:
            raw = self._get_live(key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            self.logger.warning("workflow_state_corrupt", key=key)
            return None

    async def set_workflow_state(
        self,
        conversation_id: str,
        state: dict,
        ttl_seconds: int,
        *,
        tenant_id: Optional[str] = None,
    ) -> None:
        payload = json.dumps(state)
        with self._data_lock:
            self._set(workflow_state_key(conversation_id, tenant_id), payload, ttl_seconds)

    async def delete_workflow_state(
        self, conversation_id: str, *, tenant_id: Optional[str] = None
    ) -> bool:
        key = workflow_state_key(conversation_id, tenant_id)
        with self._data_lock:
            live = self._get_live(key) is not None
            self._data.pop(key, None)
            return live

    async def workflow_state_exists(
        self, conversation_id: str, *, tenant_id: Optional[str] = None
    ) -> bool:
        with self._data_lock:
            return self._get_live(workflow_state_key(conversation_id, tenant_id)) is not None

    async def expire_workflow_state(
        self, conversation_id: str, ttl_seconds: int, *, tenant_id: Optional[str] = None
    ) -> bool:
        key = workflow_state_key(conversation_id, tenant_id)
        with self._data_lock:
            value = self._get_live(key)
            if value is None:
                return False
            self._set(key, value, ttl_seconds)
            return True

    async def scan_workflow_states(self, *, tenant_id: Optional[str] = None) -> List[str]:
        prefix = workflow_state_key("", tenant_id)
        with self._data_lock:
            keys = [key for key in list(self._data) if key.startswith(prefix)]
            live = [key for key in keys if self._get_live(key) is not None]
        return [key[len(prefix):] for key in live]

    # Execution lock

    async def acquire_lock(self, resource: str, token: str, ttl_seconds: int) -> bool:
        key = lock_key(resource)
        with self._data_lock:
            if self._get_live(key) is not None:
                return False
            self._set(key, token, ttl_seconds)
            return True

    async def release_lock(self, resource: str, token: str) -> bool:
        key = lock_key(resource)
        with self._data_lock:
            if self._get_live(key) != token:
                return False
            self._data.pop(key, None)
            return True

    async def extend_lock(self, resource: str, token: str, ttl_seconds: int) -> bool:
        key = lock_key(resource)
        with self._data_lock:
            if self._get_live(key) != token:
                return False
            self._set(key, token, ttl_seconds)
            return True

    async def lock_holder(self, resource: str) -> Optional[str]:
        with self._data_lock:
            return self._get_live(lock_key(resource))

    async def close(self) -> None:
        with self._data_lock:
            self._data.clear()


class MemoryStore:
    """In-memory conversation, workflow-definition and knowledge store.

    Backs the definition provider, messenger, directory, handoff and knowledge
    capabilities when no external system is wired in.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.workflows: Dict[str, WorkflowDefinition] = {}
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, List[Message]] = {}
        self.knowledge: Dict[str, List[KnowledgeChunk]] = {}
        self.handoffs: List[Dict[str, Any]] = []
        self._data_lock = threading.RLock()

    # Workflow definitions

    def save_workflow(self, workflow: WorkflowDefinition | dict) -> WorkflowDefinition:
        if isinstance(workflow, dict):
            workflow = WorkflowDefinition.from_dict(workflow)
        with self._data_lock:
            self.workflows[workflow.id] = workflow
        return workflow

    def get_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        with self._data_lock:
            return self.workflows.get(workflow_id)

    # Conversations

    def create_conversation(
        self, conversation_id: Optional[str] = None, *, tenant_id: Optional[str] = None
    ) -> Conversation:
        conversation = Conversation(id=conversation_id or str(uuid.uuid4()), tenant_id=tenant_id)
        with self._data_lock:
            self.conversations[conversation.id] = conversation
            self.messages.setdefault(conversation.id, [])
        return conversation

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self._data_lock:
            return self.conversations.get(conversation_id)

    def _ensure_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            conversation = Conversation(id=conversation_id)
            self.conversations[conversation_id] = conversation
        return conversation

    def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        meta: Optional[Dict] = None,
        touch: bool = True,
    ) -> Message:
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            role=role,
            content=content,
            meta=meta,
        )
        with self._data_lock:
            conversation = self._ensure_conversation(conversation_id)
            self.messages.setdefault(conversation_id, []).append(message)
            # Only visitor messages count as activity for inactivity triggers
            if touch and role == "user":
                conversation.last_activity_at = message.created_at
        return message

    def list_messages(self, conversation_id: str, *, limit: Optional[int] = None) -> List[Message]:
        with self._data_lock:
            messages = list(self.messages.get(conversation_id, []))
        return messages[-limit:] if limit else messages

    def set_last_activity(self, conversation_id: str, when: datetime) -> None:
        with self._data_lock:
            self._ensure_conversation(conversation_id).last_activity_at = when

    def set_conversation_status(self, conversation_id: str, status: str) -> None:
        with self._data_lock:
            self._ensure_conversation(conversation_id).status = status

    def assign_conversation(
        self,
        conversation_id: str,
        *,
        agent_id: Optional[str] = None,
        team_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = {
            "conversation_id": conversation_id,
            "agent_id": agent_id,
            "team_id": team_id,
            "reason": reason,
            "assigned_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._data_lock:
            conversation = self._ensure_conversation(conversation_id)
            conversation.assigned_to = agent_id or team_id
            conversation.status = "pending_human"
            self.handoffs.append(record)
        return record

    # Knowledge base

    def add_knowledge(
        self, knowledge_base_id: str, content: str, *, source: Optional[str] = None
    ) -> KnowledgeChunk:
        chunk = KnowledgeChunk(id=str(uuid.uuid4()), content=content, source=source)
        with self._data_lock:
            self.knowledge.setdefault(knowledge_base_id, []).append(chunk)
        return chunk

    def search_knowledge(
        self, query: str, *, knowledge_base_id: Optional[str] = None, limit: int = 5
    ) -> List[KnowledgeChunk]:
        """Term-overlap ranking; good enough for tests and local development."""
        terms = {t for t in query.lower().split() if t}
        if not terms:
            return []
        with self._data_lock:
            if knowledge_base_id:
                candidates = list(self.knowledge.get(knowledge_base_id, []))
            else:
                candidates = [c for chunks in self.knowledge.values() for c in chunks]
        scored: List[KnowledgeChunk] = []
        for chunk in candidates:
            words = set(chunk.content.lower().split())
            overlap = len(terms & words)
            if overlap:
                scored.append(
                    KnowledgeChunk(
                        id=chunk.id,
                        content=chunk.content,
                        source=chunk.source,
                        score=overlap / len(terms),
                        meta=chunk.meta,
                    )
                )
        scored.sort(key=lambda c: c.score, reverse=True)
        return scored[:limit]
