from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from convoflow.config import get_settings, reset_settings_cache
from convoflow.logging import get_logger
from convoflow.service.capabilities import Capabilities, StoreBackedCollaborators
from convoflow.service.email import EmailService
from convoflow.service.llm import AIService, OpenAIBackend
from convoflow.service.locking import ExecutionLock
from convoflow.service.network import GuardedHttpClient, build_egress_policy
from convoflow.service.nodes import NodeExecutor
from convoflow.service.state import ExecutionContextStore
from convoflow.service.workflow import WorkflowEngine
from convoflow.storage.memory import MemoryCache, MemoryStore
from convoflow.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )

        self.cache: RedisCache | MemoryCache
        redis_error: Exception | None = None
        cache: RedisCache | MemoryCache | None = None
        if not self.settings.use_memory_cache and self.settings.redis_url:
            try:
                candidate = RedisCache(self.settings.redis_url)
                candidate.verify_connection()
                cache = candidate
            except Exception as exc:
                redis_error = exc

        if cache is None:
            if self.settings.use_memory_cache:
                fallback_mode = "USE_MEMORY_CACHE"
            elif self.settings.test_mode:
                fallback_mode = "TEST_MODE"
            elif self.settings.allow_redis_fallback_dev:
                fallback_mode = "ALLOW_REDIS_FALLBACK_DEV"
            else:
                raise RuntimeError(
                    "Redis is required for workflow state and execution locks; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "memory_cache_requested",
                message=(
                    f"Running without Redis under {fallback_mode}; workflow state and locks "
                    "are process-local, so only a single instance may serve traffic."
                ),
                mode=fallback_mode,
            )
            cache = MemoryCache()
        self.cache = cache

        self.store = MemoryStore()
        collaborators = StoreBackedCollaborators(self.store)
        self.ai = AIService(
            OpenAIBackend(
                self.settings.ai_model,
                api_key=None if self.settings.test_mode else self.settings.openai_api_key,
                base_url=self.settings.openai_base_url,
            ),
            default_model=self.settings.ai_model,
        )
        self.http = GuardedHttpClient(
            build_egress_policy(
                allowlist=self.settings.http_allowlist,
                proxy_url=self.settings.http_proxy_url,
                connect_timeout=self.settings.http_connect_timeout,
                total_timeout=self.settings.http_total_timeout,
            )
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.capabilities = Capabilities(
            definitions=collaborators,
            messenger=collaborators,
            ai=self.ai,
            knowledge=collaborators,
            handoff=collaborators,
            directory=collaborators,
            http=self.http,
            email=self.email,
        )
        self.states = ExecutionContextStore(
            self.cache,
            ttl_seconds=self.settings.workflow_state_ttl_seconds,
            tenant_id=self.settings.default_tenant_id,
        )
        self.lock = ExecutionLock(
            self.cache,
            ttl_seconds=self.settings.lock_ttl_seconds,
            retries=self.settings.lock_retries,
            wait_ms=self.settings.lock_wait_ms,
        )
        self.workflow = WorkflowEngine(
            self.states,
            self.lock,
            NodeExecutor(self.capabilities),
            collaborators,
            settings=self.settings,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            ai_mode=self.ai.backend.mode,
            email_configured=self.email.is_configured,
            http_allowlist=len(self.settings.http_allowlist),
        )

    async def shutdown(self) -> None:
        await self.workflow.drain()
        self.ai.shutdown(wait=False)
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists; the slow path re-checks under the lock before creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.ai.shutdown(wait=False)
            if isinstance(runtime.cache, RedisCache):
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
