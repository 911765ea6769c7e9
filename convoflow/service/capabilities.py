from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from convoflow.logging import get_logger
from convoflow.storage.memory import MemoryStore
from convoflow.storage.models import KnowledgeChunk, Message, WorkflowDefinition

logger = get_logger(__name__)


class WorkflowDefinitionProvider(Protocol):
    async def load(self, workflow_id: str) -> Optional[WorkflowDefinition]: ...


class ConversationMessenger(Protocol):
    async def send(
        self, conversation_id: str, text: str, *, metadata: Optional[dict] = None
    ) -> None: ...


class AICapability(Protocol):
    async def complete(
        self,
        prompt: str,
        *,
        system_prompt: Optional[str] = None,
        context: Optional[str] = None,
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
    ) -> str: ...

    async def classify_intent(self, text: str, intents: Sequence[str]) -> Dict[str, Any]: ...

    async def analyze_sentiment(self, text: str) -> Dict[str, Any]: ...

    async def extract_fields(self, text: str, fields: Sequence[str]) -> Dict[str, Any]: ...

    async def validate_format(self, text: str, expected_format: str) -> Dict[str, Any]: ...

    async def summarize(self, text: str, *, max_length: Optional[int] = None) -> str: ...


class KnowledgeSearch(Protocol):
    async def search(
        self, knowledge_base_id: Optional[str], query: str, limit: int = 3
    ) -> List[KnowledgeChunk]: ...


class HumanHandoff(Protocol):
    async def assign(
        self,
        conversation_id: str,
        *,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]: ...


class ConversationDirectory(Protocol):
    async def last_activity_at(self, conversation_id: str) -> Optional[datetime]: ...

    async def set_status(self, conversation_id: str, status: str) -> None: ...

    async def recent_messages(self, conversation_id: str, limit: int = 20) -> List[Message]: ...


class OutboundHttp(Protocol):
    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: Optional[dict[str, str]] = None,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> dict: ...


class EmailSender(Protocol):
    async def send(
        self,
        to_email: str,
        subject: str,
        body: str,
        *,
        reply_to: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> bool: ...


@dataclass
class Capabilities:
    """Bundle of collaborators the node executor calls out to."""

    definitions: WorkflowDefinitionProvider
    messenger: ConversationMessenger
    ai: AICapability
    knowledge: KnowledgeSearch
    handoff: HumanHandoff
    directory: ConversationDirectory
    http: OutboundHttp
    email: EmailSender


class StoreBackedCollaborators:
    """Definition provider, messenger, handoff, directory and knowledge search over MemoryStore."""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    async def load(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        return self.store.get_workflow(workflow_id)

    async def send(
        self, conversation_id: str, text: str, *, metadata: Optional[dict] = None
    ) -> None:
        self.store.append_message(
            conversation_id,
            "assistant",
            text,
            meta={"source": "workflow", **(metadata or {})},
        )
        logger.info("workflow_message_sent", conversation_id=conversation_id, length=len(text))

    async def assign(
        self,
        conversation_id: str,
        *,
        user_id: Optional[str] = None,
        team_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.store.assign_conversation(
            conversation_id, agent_id=user_id, team_id=team_id, reason=reason
        )

    async def last_activity_at(self, conversation_id: str) -> Optional[datetime]:
        conversation = self.store.get_conversation(conversation_id)
        return conversation.last_activity_at if conversation else None

    async def set_status(self, conversation_id: str, status: str) -> None:
        self.store.set_conversation_status(conversation_id, status)

    async def recent_messages(self, conversation_id: str, limit: int = 20) -> List[Message]:
        return self.store.list_messages(conversation_id, limit=limit)

    async def search(
        self, knowledge_base_id: Optional[str], query: str, limit: int = 3
    ) -> List[KnowledgeChunk]:
        return self.store.search_knowledge(query, knowledge_base_id=knowledge_base_id, limit=limit)
