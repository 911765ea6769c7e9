import asyncio
import inspect
import os
import sys
from pathlib import Path

# Runtime settings must be in place before anything imports the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from convoflow.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeAI:
    """Deterministic AI capability; records every call."""

    def __init__(self, *, intent=None, sentiment="neutral", reply="Happy to help with that."):
        self.intent = intent
        self.sentiment = sentiment
        self.reply = reply
        self.calls = []

    async def complete(self, prompt, *, system_prompt=None, context=None, model=None,
                       temperature=0.7, max_tokens=None):
        self.calls.append(("complete", prompt))
        return self.reply

    async def classify_intent(self, text, intents):
        self.calls.append(("classify_intent", text))
        return {"intent": self.intent or (intents[0] if intents else "general"), "confidence": 0.95}

    async def analyze_sentiment(self, text):
        self.calls.append(("analyze_sentiment", text))
        return {"sentiment": self.sentiment, "score": 0.5}

    async def extract_fields(self, text, fields):
        self.calls.append(("extract_fields", text))
        return {"email": "jane@example.com", "unrequested": "x"}

    async def validate_format(self, text, expected_format):
        self.calls.append(("validate_format", text))
        return {"valid": True, "reason": "looks fine"}

    async def summarize(self, text, *, max_length=None):
        self.calls.append(("summarize", text))
        return "summary: " + text[:40]


class FakeHttp:
    def __init__(self, response=None, error=None):
        self.response = response or {"status_code": 200, "ok": True, "body": {"ok": True}}
        self.error = error
        self.requests = []

    async def request(self, method, url, *, headers=None, json=None, timeout=None):
        self.requests.append({"method": method, "url": url, "headers": headers, "json": json})
        if self.error is not None:
            raise self.error
        return self.response


class FakeEmail:
    def __init__(self, result=True):
        self.result = result
        self.sent = []
        self.headers = []

    async def send(self, to_email, subject, body, *, reply_to=None, conversation_id=None):
        self.sent.append((to_email, subject, body))
        self.headers.append({"reply_to": reply_to, "conversation_id": conversation_id})
        return self.result


class RecordingSleep:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class EngineHarness:
    """A WorkflowEngine wired to in-memory collaborators and fakes."""

    def __init__(self, *, ai=None, http=None, email=None, settings=None, clock=None, lock_retries=50,
                 lock_ttl=30):
        from convoflow.service.capabilities import Capabilities, StoreBackedCollaborators
        from convoflow.service.locking import ExecutionLock
        from convoflow.service.nodes import NodeExecutor
        from convoflow.service.state import ExecutionContextStore
        from convoflow.service.workflow import WorkflowEngine
        from convoflow.storage.memory import MemoryCache, MemoryStore

        self.cache = MemoryCache()
        self.store = MemoryStore()
        self.collaborators = StoreBackedCollaborators(self.store)
        self.ai = ai or FakeAI()
        self.http = http or FakeHttp()
        self.email = email or FakeEmail()
        self.node_sleep = RecordingSleep()
        self.retry_sleep = RecordingSleep()
        self.capabilities = Capabilities(
            definitions=self.collaborators,
            messenger=self.collaborators,
            ai=self.ai,
            knowledge=self.collaborators,
            handoff=self.collaborators,
            directory=self.collaborators,
            http=self.http,
            email=self.email,
        )
        executor_kwargs = {"sleep": self.node_sleep}
        if clock is not None:
            executor_kwargs["clock"] = clock
        self.executor = NodeExecutor(self.capabilities, **executor_kwargs)
        self.states = ExecutionContextStore(self.cache, ttl_seconds=60)
        self.lock = ExecutionLock(self.cache, ttl_seconds=lock_ttl, retries=lock_retries, wait_ms=1)
        self.engine = WorkflowEngine(
            self.states,
            self.lock,
            self.executor,
            self.collaborators,
            settings=settings,
            sleep=self.retry_sleep,
        )

    def add_workflow(self, definition):
        return self.store.save_workflow(definition)

    def sent_messages(self, conversation_id):
        return [
            m.content
            for m in self.store.list_messages(conversation_id)
            if m.role == "assistant"
        ]

    async def start(self, conversation_id, workflow_id, variables=None):
        execution_id = await self.engine.initialize(conversation_id, workflow_id, variables)
        await self.engine.drain()
        return execution_id


@pytest.fixture
def harness():
    return EngineHarness()


@pytest.fixture
def make_harness():
    return EngineHarness
