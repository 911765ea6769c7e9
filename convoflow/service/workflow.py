from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Set

from convoflow.config import Settings
from convoflow.logging import execution_logging, get_logger
from convoflow.service.capabilities import WorkflowDefinitionProvider
from convoflow.service.errors import (
    EgressBlockedError,
    LockLostError,
    NodeExecutionError,
    NotFoundError,
    ServiceError,
    WorkflowDefinitionError,
)
from convoflow.service.locking import ExecutionLock, conversation_resource
from convoflow.service.loop_guard import LoopGuard, LoopLimits
from convoflow.service.nodes import NodeExecutor, validate_input
from convoflow.service.routing import EdgeRouter
from convoflow.service.state import ExecutionContextStore
from convoflow.storage.models import (
    ExecutionContext,
    ExecutionStatus,
    InboundMessageOutcome,
    Node,
    NodeExecutionResult,
    NodeType,
)

DEFAULT_NODE_TIMEOUT_MS = 30_000
MAX_NODE_TIMEOUT_MS = 120_000
DEFAULT_NODE_MAX_RETRIES = 3
DEFAULT_BACKOFF_MS = 1000
GENERIC_FAILURE_REPLY = "Sorry, something went wrong. A member of our team will follow up shortly."

_DURATION_NODE_TYPES = {NodeType.TRIGGER_WAIT.value, NodeType.ACTION_DELAY.value}


@dataclass
class BurstOutcome:
    status: ExecutionStatus
    node_id: Optional[str] = None
    error: Optional[str] = None


class WorkflowEngine:
    """Drives one conversation's workflow graph, one burst at a time.

    A burst runs from initialize or resume until the run suspends for visitor
    input or reaches a terminal state. Every burst holds the conversation's
    execution lock for its whole duration; between bursts the only state is
    the persisted ExecutionContext.
    """

    def __init__(
        self,
        store: ExecutionContextStore,
        lock: ExecutionLock,
        executor: NodeExecutor,
        definitions: WorkflowDefinitionProvider,
        *,
        settings: Optional[Settings] = None,
        router: Optional[EdgeRouter] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.lock = lock
        self.executor = executor
        self.definitions = definitions
        self.router = router or EdgeRouter()
        self.logger = get_logger(__name__)
        self._sleep = sleep
        if settings is not None:
            self.limits = LoopLimits(
                max_visits_per_node=settings.max_visits_per_node,
                max_total_nodes=settings.max_total_nodes,
                max_execution_time_ms=settings.max_execution_time_ms,
            )
            self.max_node_timeout_ms = settings.max_node_timeout_ms
            self.backoff_ms = settings.node_retry_backoff_ms
        else:
            self.limits = LoopLimits()
            self.max_node_timeout_ms = MAX_NODE_TIMEOUT_MS
            self.backoff_ms = DEFAULT_BACKOFF_MS
        self._tasks: Set[asyncio.Task] = set()

    # =========================================================================
    # Exposed operations
    # =========================================================================

    async def initialize(
        self,
        conversation_id: str,
        workflow_id: str,
        initial_variables: Optional[dict] = None,
    ) -> str:
        """Create the conversation's context and schedule its first burst.

        Returns the execution id without waiting for the burst. A conversation
        that already has a live context keeps it; its execution id is returned.
        """
        resource = conversation_resource(conversation_id)
        async with self.lock.with_lock(resource):
            existing = await self.store.get(conversation_id)
            if existing is not None:
                self.logger.info(
                    "workflow_already_running",
                    conversation_id=conversation_id,
                    workflow_id=existing.workflow_id,
                    current_node_id=existing.current_node_id,
                    waiting_for_input=existing.waiting_for_input,
                )
                return existing.execution_id

            workflow = await self.definitions.load(workflow_id)
            if workflow is None or not workflow.is_active:
                raise NotFoundError(
                    "workflow not found or inactive", detail={"workflow_id": workflow_id}
                )
            entry_node_id = workflow.entry_node_id()
            if entry_node_id is None:
                raise WorkflowDefinitionError(
                    "no entry node found in workflow", detail={"workflow_id": workflow_id}
                )
            context = ExecutionContext.new(
                conversation_id, workflow, entry_node_id, initial_variables
            )
            await self.store.save(context)
            self.logger.info(
                "workflow_initialized",
                conversation_id=conversation_id,
                workflow_id=workflow_id,
                execution_id=context.execution_id,
                entry_node_id=entry_node_id,
                node_count=len(workflow.nodes),
                edge_count=len(workflow.edges),
            )
        self._schedule(conversation_id)
        return context.execution_id

    async def handle_inbound_message(
        self,
        conversation_id: str,
        text: str,
        metadata: Optional[dict] = None,
    ) -> InboundMessageOutcome:
        """Feed a visitor message to the conversation's run, if there is one.

        Never creates a context. A suspended run is validated and resumed
        inline, so the call returns after that burst has finished.
        """
        resource = conversation_resource(conversation_id)
        async with self.lock.with_lock(resource) as token:
            context = await self.store.get(conversation_id)
            if context is None:
                return InboundMessageOutcome(should_reply_directly=False, workflow_is_handling=False)

            if not context.waiting_for_input:
                # First burst not started yet; run it now with the message in scope
                context.variables["lastUserMessage"] = text
                context.variables["lastMessageMetadata"] = metadata
                outcome = await self._run_burst(context, resource=resource, token=token)
                return self._outcome_for(outcome)

            valid, error_message, extracted = validate_input(text, context.expected_input_validation)
            if not valid:
                self.logger.info(
                    "workflow_input_rejected",
                    conversation_id=conversation_id,
                    expected_input_type=context.expected_input_type,
                )
                return InboundMessageOutcome(
                    should_reply_directly=True,
                    reply_text=error_message or "Invalid input. Please try again.",
                    workflow_is_handling=True,
                )

            context.variables["lastUserMessage"] = text
            context.variables["lastMessageMetadata"] = metadata
            context.variables["validatedInput"] = extracted
            context.waiting_for_input = False
            context.expected_input_type = None
            context.expected_input_validation = None
            context.status = ExecutionStatus.RUNNING.value
            await self.store.save(context)
            self.logger.info(
                "workflow_resumed",
                conversation_id=conversation_id,
                execution_id=context.execution_id,
                node_id=context.current_node_id,
            )
            outcome = await self._run_burst(context, resource=resource, token=token, resume=True)
            return self._outcome_for(outcome)

    async def get_state(self, conversation_id: str) -> Optional[ExecutionContext]:
        return await self.store.get(conversation_id)

    async def stop(self, conversation_id: str) -> bool:
        """Delete the conversation's context once no burst holds its lock."""
        async with self.lock.with_lock(conversation_resource(conversation_id)):
            removed = await self.store.delete(conversation_id)
        self.logger.info("workflow_stopped", conversation_id=conversation_id, removed=removed)
        return removed

    async def list_active(self) -> List[str]:
        return await self.store.list_active()

    async def drain(self) -> None:
        """Wait for every scheduled background burst to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Bursts
    # =========================================================================

    def _schedule(self, conversation_id: str) -> None:
        task = asyncio.create_task(self._run_scheduled(conversation_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_scheduled(self, conversation_id: str) -> None:
        resource = conversation_resource(conversation_id)
        try:
            async with self.lock.with_lock(resource) as token:
                context = await self.store.get(conversation_id)
                # Stopped, finished, or already advanced by an inbound message
                if context is None or context.waiting_for_input:
                    return
                await self._run_burst(context, resource=resource, token=token)
        except Exception:
            self.logger.exception("workflow_background_burst_failed", conversation_id=conversation_id)

    @staticmethod
    def _outcome_for(outcome: BurstOutcome) -> InboundMessageOutcome:
        if outcome.status == ExecutionStatus.FAILED:
            return InboundMessageOutcome(
                should_reply_directly=True,
                reply_text=GENERIC_FAILURE_REPLY,
                workflow_is_handling=False,
            )
        return InboundMessageOutcome(should_reply_directly=False, workflow_is_handling=True)

    async def _run_burst(
        self,
        context: ExecutionContext,
        *,
        resource: str,
        token: str,
        resume: bool = False,
    ) -> BurstOutcome:
        with execution_logging(context.conversation_id, context.execution_id):
            try:
                return await self.lock.run_while_held(
                    resource, token, self._drive(context, resume=resume)
                )
            except LockLostError:
                # another owner may hold the conversation now; leave its state alone
                self.logger.error("workflow_lock_lost", node_id=context.current_node_id)
                raise
            except ServiceError as exc:
                # runaway, exhausted node or bad graph: the run ends here
                await self._fail(context, exc)
                return BurstOutcome(
                    ExecutionStatus.FAILED, node_id=context.current_node_id, error=str(exc)
                )

    async def _drive(self, context: ExecutionContext, *, resume: bool) -> BurstOutcome:
        workflow = context.workflow
        if workflow is None:
            workflow = await self.definitions.load(context.workflow_id)
            if workflow is None:
                raise WorkflowDefinitionError(
                    "workflow definition no longer available",
                    detail={"workflow_id": context.workflow_id},
                )
            context.workflow = workflow
        guard = LoopGuard(self.limits)
        context.status = ExecutionStatus.RUNNING.value

        if resume:
            # The suspended node already ran; continue from its outgoing edges
            edge = self.router.next_edge(workflow, context.current_node_id, context.variables)
            if edge is None:
                return await self._complete(context)
            context.current_node_id = edge.target_node_id
            await self.store.save(context)

        while True:
            node = workflow.node(context.current_node_id)
            if node is None:
                raise WorkflowDefinitionError(
                    f"node {context.current_node_id} not found in workflow",
                    detail={"node_id": context.current_node_id},
                )
            guard.visit(node.id)
            context.node_visits[node.id] = context.node_visits.get(node.id, 0) + 1
            context.total_dispatches += 1

            result = await self._execute_node_with_retry(node, context)
            context.merge_variables(result.data)
            save_as = (node.config or {}).get("saveResultAs")
            if save_as:
                context.variables[str(save_as)] = dict(result.data)

            if result.waiting_for_input:
                context.waiting_for_input = True
                context.status = ExecutionStatus.SUSPENDED.value
                await self.store.save(context)
                self.logger.info(
                    "workflow_suspended",
                    node_id=node.id,
                    expected_input_type=context.expected_input_type,
                    dispatches=guard.total,
                )
                return BurstOutcome(ExecutionStatus.SUSPENDED, node_id=node.id)

            edge = self.router.next_edge(
                workflow,
                node.id,
                context.variables,
                guarded_only=not result.should_continue,
            )
            if edge is None:
                return await self._complete(context)

            self.logger.debug(
                "workflow_edge_taken",
                edge_id=edge.id,
                source_node_id=node.id,
                target_node_id=edge.target_node_id,
            )
            context.current_node_id = edge.target_node_id
            await self.store.save(context)

    async def _complete(self, context: ExecutionContext) -> BurstOutcome:
        await self.store.delete(context.conversation_id)
        self.logger.info(
            "workflow_completed",
            node_id=context.current_node_id,
            total_dispatches=context.total_dispatches,
        )
        return BurstOutcome(ExecutionStatus.COMPLETED, node_id=context.current_node_id)

    async def _fail(self, context: ExecutionContext, exc: ServiceError) -> None:
        await self.store.delete(context.conversation_id)
        self.logger.error(
            "workflow_failed",
            node_id=context.current_node_id,
            error_code=exc.error_code,
            error=exc.message,
            detail=exc.detail,
        )

    # =========================================================================
    # Node dispatch policy
    # =========================================================================

    def _node_timeout_ms(self, node: Node) -> int:
        config = node.config or {}
        configured = config.get("timeout")
        if configured:
            timeout_ms = int(configured)
        else:
            timeout_ms = DEFAULT_NODE_TIMEOUT_MS
            if node.type in _DURATION_NODE_TYPES:
                timeout_ms += int(config.get("duration") or config.get("delayMs") or 0)
        return max(1, min(timeout_ms, self.max_node_timeout_ms))

    async def _execute_node_with_retry(
        self, node: Node, context: ExecutionContext
    ) -> NodeExecutionResult:
        """Run one node under its timeout and retry policy.

        ``retryOnError`` enables retries; ``maxRetries`` (default 3) is then the
        total number of attempts. Backoff between attempts doubles each time,
        starting from the configured base. Exhausted retries either yield a synthesized failed
        result (``continueOnError``) or raise NodeExecutionError.
        """
        config = node.config or {}
        # Unknown types fail here, before any attempt is counted
        self.executor.handler_for(node)
        attempts = (
            max(1, int(config.get("maxRetries", DEFAULT_NODE_MAX_RETRIES)))
            if config.get("retryOnError")
            else 1
        )
        timeout_ms = self._node_timeout_ms(node)
        last_error = "unknown error"
        attempt = 0

        while attempt < attempts:
            attempt += 1
            try:
                result = await asyncio.wait_for(
                    self.executor.execute(node, context), timeout=timeout_ms / 1000.0
                )
                if result.success:
                    if attempt > 1:
                        self.logger.info("workflow_node_recovered", node_id=node.id, attempt=attempt)
                    return result
                last_error = result.error or "node reported failure"
                self.logger.warning(
                    "workflow_node_retry", node_id=node.id, attempt=attempt, error=last_error
                )
            except WorkflowDefinitionError:
                raise
            except EgressBlockedError as exc:
                # Policy refusals are deterministic; retrying cannot help
                last_error = f"egress blocked: {exc}"
                self.logger.warning("workflow_node_egress_blocked", node_id=node.id, error=str(exc))
                break
            except asyncio.TimeoutError:
                last_error = f"node timed out after {timeout_ms}ms"
                self.logger.warning(
                    "workflow_node_timeout", node_id=node.id, attempt=attempt, timeout_ms=timeout_ms
                )
            except Exception as exc:
                last_error = str(exc) or type(exc).__name__
                self.logger.warning(
                    "workflow_node_retry",
                    node_id=node.id,
                    attempt=attempt,
                    max_attempts=attempts,
                    error_type=type(exc).__name__,
                    error=last_error,
                )

            if attempt < attempts:
                backoff_ms = self.backoff_ms * 2 ** (attempt - 1)
                self.logger.info(
                    "workflow_node_backoff", node_id=node.id, attempt=attempt, backoff_ms=backoff_ms
                )
                await self._sleep(backoff_ms / 1000.0)

        self.logger.error(
            "workflow_node_retries_exhausted",
            node_id=node.id,
            attempts=attempt,
            error=last_error,
        )
        if config.get("continueOnError"):
            failed = NodeExecutionResult.failed(last_error, should_continue=True)
            failed.data = {"lastError": last_error, "lastErrorNodeId": node.id}
            return failed
        raise NodeExecutionError(node.id, last_error, attempts=attempt)


def build_engine_summary(context: ExecutionContext) -> dict[str, Any]:
    """Operator-facing view of a live context."""
    return {
        "conversation_id": context.conversation_id,
        "workflow_id": context.workflow_id,
        "execution_id": context.execution_id,
        "current_node_id": context.current_node_id,
        "status": context.status,
        "waiting_for_input": context.waiting_for_input,
        "expected_input_type": context.expected_input_type,
        "variables": context.variables,
        "node_visits": context.node_visits,
        "total_dispatches": context.total_dispatches,
        "started_at": context.started_at.isoformat(),
        "updated_at": context.updated_at.isoformat(),
    }
